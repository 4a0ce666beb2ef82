"""
Heartbeat Ingest.

Agents poll every ~30s. A heartbeat always updates liveness; the optional
location/features/sim/step sub-documents are applied best-effort, and a
malformed one is logged and skipped rather than failing the request.
"""
import time
from sqlalchemy import or_
from sqlalchemy.orm import Session
from typing import Any, Optional

from commands import take_pending_command
from config import config
from db_utils import dump_json, load_json
from device_lifecycle import get_customer_device
from enrollment import INSTALL_STEPS, apply_sim_details, merge_steps, resolve_steps
from errors import NotFound, ValidationFailed
from models import Customer, Device, SimChange, utcnow, STATUS_ONLINE, STATE_REMOVED
from observability import structured_logger, metrics


def resolve_heartbeat_customer(db: Session, customer_id: Optional[str], device_id: Optional[str]) -> Optional[Customer]:
    if customer_id:
        customer = db.get(Customer, customer_id)
        if customer:
            return customer
    if device_id:
        customer = db.query(Customer).filter(
            or_(Customer.imei1 == device_id, Customer.id == device_id)
        ).first()
        if customer:
            return customer
        device = db.get(Device, device_id)
        if device and device.assigned_customer_id:
            return db.get(Customer, device.assigned_customer_id)
    return None


def _skip(customer_id: str, field: str, value: Any, reason: str) -> None:
    metrics.inc_counter("heartbeat_fields_skipped_total", {"field": field})
    structured_logger.log_event(
        "heartbeat.field_skipped",
        level="WARN",
        customer_id=customer_id,
        field=field,
        reason=reason,
        value=repr(value)[:200]
    )


def _coerce_coordinate(value: Any, bound: float) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not -bound <= number <= bound:
        return None
    return number


def apply_location(customer: Customer, location: Any, now) -> bool:
    if location is None:
        return False
    if not isinstance(location, dict):
        _skip(customer.id, "location", location, "not an object")
        return False

    lat = _coerce_coordinate(location.get("lat", location.get("latitude")), 90)
    lng = _coerce_coordinate(location.get("lng", location.get("longitude")), 180)
    if lat is None or lng is None:
        _skip(customer.id, "location", location, "lat/lng missing or out of range")
        return False

    customer.location_lat = lat
    customer.location_lng = lng
    if isinstance(location.get("address"), str):
        customer.location_address = location["address"]
    customer.location_updated_at = now
    return True


def apply_features(customer: Customer, features: Any) -> bool:
    if features is None:
        return False
    if not isinstance(features, dict):
        _skip(customer.id, "features", features, "not an object")
        return False
    merged = load_json(customer.features, {}) or {}
    merged.update(features)
    customer.features = dump_json(merged)
    return True


def apply_sim(db: Session, customer: Customer, sim: Any, now, ip_address: Optional[str]) -> bool:
    """Returns True when a SIM swap was detected"""
    if sim is None:
        return False
    if not isinstance(sim, dict):
        _skip(customer.id, "sim", sim, "not an object")
        return False

    serial = sim.get("serialNumber")
    swapped = bool(customer.sim_serial and serial and serial != customer.sim_serial)
    if swapped:
        db.add(SimChange(
            customer_id=customer.id,
            previous_serial=customer.sim_serial,
            serial_number=serial,
            operator=sim.get("operator"),
            detected_at=now,
            ip_address=ip_address,
        ))
        structured_logger.log_security_event(
            "SIM_CHANGED",
            customer_id=customer.id,
            previous_serial=customer.sim_serial,
            serial=serial,
            client_ip=ip_address
        )
    apply_sim_details(customer, sim, now)
    return swapped


def ingest_heartbeat(db: Session, payload, ip_address: Optional[str] = None) -> dict:
    """
    Record liveness for the reporting device and hand out its pending command.

    Raises:
        ValidationFailed: neither customerId nor deviceId present
        NotFound(DEVICE_NOT_FOUND): no customer matches
    """
    start = time.time()

    if not payload.customer_id and not payload.device_id:
        raise ValidationFailed("VALIDATION_FAILED", "customerId or deviceId is required", field="customerId")

    customer = resolve_heartbeat_customer(db, payload.customer_id, payload.device_id)
    if not customer:
        metrics.inc_counter("heartbeats_rejected_total", {"reason": "unknown_device"})
        structured_logger.log_event(
            "heartbeat.unknown_device",
            level="WARN",
            customer_id=payload.customer_id,
            device_id=payload.device_id
        )
        raise NotFound(
            "DEVICE_NOT_FOUND",
            "No enrolled device matches this heartbeat",
            customer_id=payload.customer_id,
            device_id=payload.device_id,
        )

    now = utcnow()
    customer.status = STATUS_ONLINE
    customer.last_seen = now

    location_updated = apply_location(customer, payload.location, now)
    apply_features(customer, payload.features)
    sim_swapped = apply_sim(db, customer, payload.sim, now, ip_address)

    steps = set()
    if payload.step is not None:
        try:
            steps.update(resolve_steps(str(payload.step)))
        except ValidationFailed:
            _skip(customer.id, "step", payload.step, "unknown step")
    if payload.app_installed is True:
        steps.update(INSTALL_STEPS[1:])

    device = get_customer_device(db, customer.id)
    if device is not None and device.state != STATE_REMOVED:
        device.last_seen = now
        if isinstance(payload.sim, dict):
            device.sim_operator = payload.sim.get("operator") or device.sim_operator
            device.sim_iccid = payload.sim.get("serialNumber") or device.sim_iccid

    db.flush()
    merge_steps(db, customer.id, steps)
    pending = take_pending_command(db, customer.id)
    db.commit()
    db.refresh(customer)

    latency_ms = (time.time() - start) * 1000
    metrics.inc_counter("heartbeats_ingested_total")
    metrics.observe_histogram("heartbeat_latency_ms", latency_ms)
    if pending:
        metrics.inc_counter("commands_delivered_total", {"command": pending["command"]})

    structured_logger.log_event(
        "heartbeat.ingest",
        customer_id=customer.id,
        device_id=payload.device_id,
        reported_status=payload.status,
        is_locked=customer.is_locked,
        location_updated=location_updated,
        sim_swapped=sim_swapped,
        command=pending["command"] if pending else None,
        command_id=pending["commandId"] if pending else None,
        latency_ms=round(latency_ms, 2)
    )

    return {
        "ok": True,
        "isLocked": customer.is_locked,
        "status": customer.status,
        "command": pending["command"] if pending else None,
        "commandId": pending["commandId"] if pending else None,
        "commandPayload": pending["payload"] if pending else None,
        "nextHeartbeatSeconds": config.get_heartbeat_interval_seconds(),
    }
