"""
Enrollment Reconciler.

Merges three independent, possibly out-of-order signal sources into the
Customer.deviceStatus projection and the Device lifecycle:

- client progress reports (QR scanned, installed, ...): set-true-only step merges
- the enrollment callback: the only writer of technical facts and of imei1
- the verification callback: flags IMEI/SIM anomalies without blocking heartbeats

Steps are merged with single-statement ``UPDATE ... SET step = TRUE`` so the
merge is commutative and idempotent under concurrent delivery. Technical facts
are last-write-wins by the agent-reported timestamp, enforced in the UPDATE's
WHERE clause.
"""
import secrets
from datetime import datetime, timezone
from sqlalchemy import update, case, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Any, Iterable, Optional

from config import config
from db_utils import ensure_utc, isoformat, parse_client_timestamp, record_audit
from device_lifecycle import allocate_device, get_customer_device, transition
from errors import Conflict, FleetError, InvalidTransition, NotFound, ValidationFailed
from models import (
    Customer, Device, SimChange, utcnow, ENROLLMENT_STEPS, DEVICE_STATUSES,
    STATUS_ADMIN_INSTALLED, STATUS_CONNECTED, STATUS_ERROR, STATUS_INSTALLING, STATUS_OFFLINE,
    STATUS_ONLINE, STATE_UNASSIGNED, STATE_PENDING, STATE_ACTIVE, STATE_LOCKED, STATE_REMOVED,
)
from observability import structured_logger, metrics

STEP_COLUMNS = dict(ENROLLMENT_STEPS)

# Steps completed once the admin DPC is installed
INSTALL_STEPS = ("qrScanned", "appInstalled", "appLaunched", "permissionsGranted", "detailsFetched")

STEP_ALIASES = {
    "qr_scanned": ("qrScanned",),
    "installed": ("appInstalled",),
    "launched": ("appLaunched",),
    "permissions": ("permissionsGranted",),
    "details": ("detailsFetched",),
    "imei_verified": ("imeiVerified",),
    "device_bound": tuple(STEP_COLUMNS),
    "deviceBound": tuple(STEP_COLUMNS),
}

VERIFICATION_VERIFIED = "VERIFIED"
VERIFICATION_MISMATCH = "MISMATCH"
VERIFICATION_SIM_MISMATCH = "SIM_MISMATCH"

TECHNICAL_FIELDS = {
    "brand": "tech_brand",
    "model": "tech_model",
    "osVersion": "tech_os_version",
    "androidId": "tech_android_id",
    "serial": "tech_serial",
}


def resolve_steps(step: Optional[str]) -> tuple:
    """
    Map a reported step name to the checklist steps it completes.

    Accepts both the agent's short names (``qr_scanned``, ``installed``...) and
    the checklist names (``qrScanned``...). ``deviceBound`` completes all steps.

    Raises:
        ValidationFailed: unknown step name
    """
    if not step:
        return ()
    if step in STEP_ALIASES:
        return STEP_ALIASES[step]
    if step in STEP_COLUMNS:
        return (step,)
    raise ValidationFailed(
        "VALIDATION_FAILED",
        f"Unknown enrollment step '{step}'",
        field="step",
        allowed=sorted(set(STEP_ALIASES) | set(STEP_COLUMNS)),
    )


def merge_steps(db: Session, customer_id: str, steps: Iterable[str]) -> bool:
    """
    Set the given checklist steps to true. Never writes false, so applying an
    older or repeated report after a newer one changes nothing.
    """
    values = {STEP_COLUMNS[name]: True for name in steps}
    if not values:
        return False
    result = db.execute(
        update(Customer)
        .where(Customer.id == customer_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def merge_install_progress(db: Session, customer_id: str, progress: Optional[int]) -> None:
    """Install progress only moves forward"""
    if progress is None:
        return
    progress = max(0, min(100, int(progress)))
    db.execute(
        update(Customer)
        .where(Customer.id == customer_id)
        .values(install_progress=case(
            (Customer.install_progress < progress, progress),
            else_=Customer.install_progress,
        ))
        .execution_options(synchronize_session=False)
    )


def apply_technical_facts(db: Session, customer_id: str, facts: dict, reported_at: datetime) -> bool:
    """
    Last-write-wins update of deviceStatus.technical keyed by the agent's report
    time. Returns False when a newer report has already landed.
    """
    values = {TECHNICAL_FIELDS[k]: v for k, v in facts.items() if k in TECHNICAL_FIELDS and v is not None}
    values["technical_reported_at"] = reported_at
    result = db.execute(
        update(Customer)
        .where(
            Customer.id == customer_id,
            or_(Customer.technical_reported_at.is_(None), Customer.technical_reported_at <= reported_at)
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def effective_status(customer: Customer, now: Optional[datetime] = None) -> str:
    """Online devices read as offline once heartbeats stop arriving"""
    if customer.status == STATUS_ONLINE and customer.last_seen:
        now = now or utcnow()
        silence = (now - ensure_utc(customer.last_seen)).total_seconds()
        if silence > config.get_offline_after_seconds():
            return STATUS_OFFLINE
    return customer.status


def serialize_device_status(customer: Customer) -> dict:
    return {
        "status": effective_status(customer),
        "lastSeen": isoformat(customer.last_seen),
        "lastStatusUpdate": isoformat(customer.last_status_update),
        "installProgress": customer.install_progress,
        "errorMessage": customer.error_message,
        "verificationStatus": customer.verification_status,
        "technical": {
            "brand": customer.tech_brand,
            "model": customer.tech_model,
            "osVersion": customer.tech_os_version,
            "androidId": customer.tech_android_id,
            "serial": customer.tech_serial,
            "reportedAt": isoformat(customer.technical_reported_at),
        },
        "steps": {name: bool(getattr(customer, column)) for name, column in ENROLLMENT_STEPS},
    }


def _get_customer(db: Session, customer_id: str) -> Customer:
    customer = db.get(Customer, customer_id)
    if not customer:
        raise NotFound("CUSTOMER_NOT_FOUND", f"Customer {customer_id} not found", customer_id=customer_id)
    return customer


def apply_status_report(
    db: Session,
    customer_id: str,
    status: Optional[str] = None,
    step: Optional[str] = None,
    install_progress: Optional[int] = None,
    error_message: Optional[str] = None
) -> Customer:
    """
    Merge a client progress report. Technical facts are not accepted here; the
    enrollment callback is their only writer.
    """
    customer = _get_customer(db, customer_id)

    status = status or STATUS_INSTALLING
    if status not in DEVICE_STATUSES:
        raise ValidationFailed(
            "VALIDATION_FAILED",
            f"Unknown device status '{status}'",
            field="status",
            allowed=list(DEVICE_STATUSES),
        )

    steps = set(resolve_steps(step))
    if status == STATUS_ADMIN_INSTALLED:
        steps.update(INSTALL_STEPS)

    now = utcnow()
    merge_steps(db, customer_id, steps)
    merge_install_progress(db, customer_id, install_progress)

    values = {"status": status, "last_status_update": now, "last_seen": now}
    if error_message:
        values["error_message"] = error_message
    db.execute(
        update(Customer)
        .where(Customer.id == customer_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(customer)

    structured_logger.log_event(
        "enrollment.status_report",
        customer_id=customer_id,
        status=status,
        step=step,
        steps_merged=sorted(steps),
        install_progress=install_progress
    )
    return customer


def resolve_enrolling_customer(
    db: Session,
    customer_id: Optional[str],
    imei: Optional[str],
    device_id: Optional[str]
) -> Optional[Customer]:
    """
    Explicit customerId wins; without it fall back to IMEI-based provisioning
    (imei, then deviceId as a Device id or an IMEI). Never creates customers.
    """
    if customer_id:
        return db.get(Customer, customer_id)

    for key in (imei, device_id):
        if not key:
            continue
        customer = db.query(Customer).filter(
            or_(Customer.imei1 == key, Customer.expected_imei == key)
        ).first()
        if customer:
            return customer

    if device_id:
        device = db.get(Device, device_id)
        if device and device.assigned_customer_id:
            return db.get(Customer, device.assigned_customer_id)

    return None


def _check_enrollment_token(device: Device, token: Optional[str], customer_id: str) -> None:
    if not token:
        return

    reason = None
    if device.enrollment_token != token:
        reason = "token_mismatch"
    elif device.enrollment_token_used_at is None and device.enrollment_token_expires_at:
        if ensure_utc(device.enrollment_token_expires_at) < utcnow():
            reason = "token_expired"

    if reason:
        metrics.inc_counter("enrollment_token_rejections_total", {"reason": reason})
        structured_logger.log_security_event(
            "ENROLLMENT_TOKEN_REJECTED",
            customer_id=customer_id,
            device_id=device.device_id,
            reason=reason
        )
        raise ValidationFailed("INVALID_ENROLLMENT_TOKEN", field="enrollmentToken", reason=reason)


def _duplicate_imei(imei: Optional[str]) -> Conflict:
    return Conflict(
        "DUPLICATE_IMEI",
        f"IMEI {imei} is already bound to another customer",
        field="imei1",
        value=imei,
    )


def _activate_device(db: Session, device: Device, customer: Customer, token_used: bool) -> None:
    if device.state == STATE_UNASSIGNED:
        transition(db, device, STATE_PENDING, "enrolled without a token (IMEI-based provisioning)")
    if device.state == STATE_PENDING:
        transition(db, device, STATE_ACTIVE, "enrollment callback")
        if customer.is_locked:
            transition(db, device, STATE_LOCKED, "lock state applied at enrollment")

    if token_used and device.enrollment_token_used_at is None:
        device.enrollment_token_used_at = utcnow()


def enroll_device(db: Session, report) -> tuple[Customer, Device]:
    """
    Apply the enrollment callback.

    ``report`` carries customerId (optional), deviceId, imei, technical facts,
    enrolledAt and an optional enrollmentToken. Every failure is logged with
    the attempted identifiers.

    Raises:
        NotFound(CUSTOMER_NOT_FOUND): no customer matches
        ValidationFailed(INVALID_ENROLLMENT_TOKEN): wrong or expired token
        InvalidTransition: the device identity was removed
        Conflict(DUPLICATE_IMEI): the reported IMEI belongs to another customer
    """
    try:
        return _enroll_device(db, report)
    except FleetError as e:
        db.rollback()
        metrics.inc_counter("enrollments_total", {"result": e.code.lower()})
        structured_logger.log_event(
            "enrollment.failed",
            level="WARN",
            customer_id=report.customer_id,
            device_id=report.device_id,
            imei=report.imei,
            error=e.code,
            message=e.message
        )
        raise


def _enroll_device(db: Session, report) -> tuple[Customer, Device]:
    customer = resolve_enrolling_customer(db, report.customer_id, report.imei, report.device_id)
    if not customer:
        attempted = report.customer_id or report.imei or report.device_id
        raise NotFound(
            "CUSTOMER_NOT_FOUND",
            f"No customer matches {attempted}; create the customer before enrolling hardware",
            customer_id=report.customer_id,
        )

    device = get_customer_device(db, customer.id)
    if device is None:
        device = allocate_device(db, customer, reason="allocated at enrollment")
    if device.state == STATE_REMOVED:
        raise InvalidTransition(STATE_REMOVED, STATE_ACTIVE, device.device_id)

    _check_enrollment_token(device, report.enrollment_token, customer.id)

    now = utcnow()
    reported_at = parse_client_timestamp(report.enrolled_at) or now
    previous_state = device.state

    imei = (report.imei or "").strip() or None

    facts = {
        "brand": report.brand,
        "model": report.model,
        "osVersion": report.android_version,
        "androidId": report.android_id,
        "serial": report.serial,
    }
    # Stale reports leave the IMEI alone too
    applied = apply_technical_facts(db, customer.id, facts, reported_at)

    if applied and imei and imei != customer.imei1:
        if not customer.expected_imei:
            customer.expected_imei = customer.imei1
        customer.imei1 = imei

    customer.is_enrolled = True
    customer.status = STATUS_ADMIN_INSTALLED
    customer.last_status_update = now
    customer.last_seen = now
    customer.error_message = None
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise _duplicate_imei(imei)

    merge_steps(db, customer.id, INSTALL_STEPS)

    if applied:
        device.brand = report.brand or device.brand
        device.model = report.model or device.model
        device.manufacturer = report.manufacturer or device.manufacturer
        device.os_version = report.android_version or device.os_version
        device.sdk_int = report.sdk_int if report.sdk_int is not None else device.sdk_int
        device.android_id = report.android_id or device.android_id
        device.serial = report.serial or device.serial
        device.imei1 = imei or device.imei1
        device.imei2 = report.imei2 or device.imei2
        device.meid = report.meid or device.meid
    if device.enrolled_at is None:
        device.enrolled_at = reported_at
    device.last_seen = now

    _activate_device(db, device, customer, token_used=bool(report.enrollment_token))

    record_audit(
        db, None, "device.enrolled", "customer", customer.id,
        dealer_id=customer.dealer_id,
        details={"device_id": device.device_id, "imei": imei, "technical_applied": applied}
    )

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise _duplicate_imei(imei)

    db.refresh(customer)
    db.refresh(device)

    metrics.inc_counter("enrollments_total", {"result": "success"})
    structured_logger.log_event(
        "enrollment.success",
        customer_id=customer.id,
        device_id=device.device_id,
        imei=imei,
        previous_state=previous_state,
        state=device.state,
        technical_applied=applied,
        reported_status=report.status
    )
    return customer, device


def _offline_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def verify_device(
    db: Session,
    customer_id: str,
    actual_imei: Optional[str] = None,
    sim_details: Optional[dict] = None,
    model_details: Optional[str] = None,
    ip_address: Optional[str] = None
) -> dict:
    """
    Compare the agent-reported IMEI and SIM against what the admin recorded.

    A mismatch is flagged (status ``error`` plus verificationStatus), never
    fatal: heartbeats keep flowing and earlier steps stay true.
    """
    customer = _get_customer(db, customer_id)
    now = utcnow()

    if model_details:
        customer.mobile_model = model_details

    sim_changed = False
    if sim_details:
        serial = sim_details.get("serialNumber")
        if customer.sim_serial and serial and serial != customer.sim_serial:
            sim_changed = True
            db.add(SimChange(
                customer_id=customer.id,
                previous_serial=customer.sim_serial,
                serial_number=serial,
                operator=sim_details.get("operator"),
                detected_at=now,
                ip_address=ip_address,
            ))
        apply_sim_details(customer, sim_details, now)

    if not customer.offline_lock_token:
        customer.offline_lock_token = _offline_code()
    if not customer.offline_unlock_token:
        customer.offline_unlock_token = _offline_code()

    expected = (customer.expected_imei or customer.imei1 or "").strip()
    reported = (actual_imei or "").strip()
    steps = ["detailsFetched"]

    if reported and expected and reported != expected:
        result = VERIFICATION_MISMATCH
        message = f"IMEI Mismatch! Admin Expects: {expected}, Device Reports: {reported}"
    elif sim_changed:
        result = VERIFICATION_SIM_MISMATCH
        message = "Unauthorized SIM Card Detected"
    else:
        result = VERIFICATION_VERIFIED
        message = "Device Verified"
        steps += ["imeiVerified", "deviceBound"]

    if result == VERIFICATION_VERIFIED:
        customer.status = STATUS_CONNECTED
        customer.error_message = None
    else:
        customer.status = STATUS_ERROR
        customer.error_message = message

    customer.verification_status = result
    customer.last_seen = now
    customer.last_status_update = now
    db.flush()
    merge_steps(db, customer.id, steps)
    db.commit()
    db.refresh(customer)

    metrics.inc_counter("verifications_total", {"result": result.lower()})
    structured_logger.log_event(
        "enrollment.verify",
        level="INFO" if result == VERIFICATION_VERIFIED else "WARN",
        customer_id=customer.id,
        result=result,
        expected_imei=expected,
        reported_imei=reported or None,
        sim_changed=sim_changed
    )

    return {
        "status": result,
        "message": message,
        "offlineLockToken": customer.offline_lock_token,
        "offlineUnlockToken": customer.offline_unlock_token,
    }


def apply_sim_details(customer: Customer, sim: dict, now: Optional[datetime] = None) -> None:
    """Best-effort copy of a reported SIM sub-document; absent keys stay unchanged"""
    mapping = {
        "operator": "sim_operator",
        "serialNumber": "sim_serial",
        "phoneNumber": "sim_phone_number",
        "imsi": "sim_imsi",
        "isAuthorized": "sim_is_authorized",
    }
    for key, column in mapping.items():
        value: Any = sim.get(key)
        if value is not None:
            setattr(customer, column, value)
    customer.sim_updated_at = now or datetime.now(timezone.utc)
