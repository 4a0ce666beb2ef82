"""
Device lifecycle state machine.

    UNASSIGNED --(enrollment token issued)--> PENDING
    PENDING    --(enrollment callback)------> ACTIVE
    ACTIVE     --(lock applied)-------------> LOCKED
    LOCKED     --(unlock applied)-----------> ACTIVE
    ACTIVE|LOCKED --(device removed)--------> REMOVED   (terminal)

Every transition is a conditional UPDATE on the current state, so two racing
writers cannot both move the same device, and every accepted transition
appends a DeviceStateHistory row in the caller's transaction.
"""
import secrets
from datetime import timedelta
from sqlalchemy import update
from sqlalchemy.orm import Session
from typing import Optional

from config import config
from errors import InvalidTransition
from models import (
    Customer, Device, DeviceStateHistory, AdminUser, utcnow,
    STATE_UNASSIGNED, STATE_PENDING, STATE_ACTIVE, STATE_LOCKED, STATE_REMOVED,
)
from observability import structured_logger, metrics

ALLOWED_TRANSITIONS = {
    STATE_UNASSIGNED: {STATE_PENDING},
    STATE_PENDING: {STATE_ACTIVE},
    STATE_ACTIVE: {STATE_LOCKED, STATE_REMOVED},
    STATE_LOCKED: {STATE_ACTIVE, STATE_REMOVED},
    STATE_REMOVED: set(),
}


def can_transition(from_state: str, to_state: str) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, set())


def _actor_label(actor) -> Optional[str]:
    if actor is None:
        return None
    if isinstance(actor, AdminUser):
        return actor.id
    return str(actor)


def transition(
    db: Session,
    device: Device,
    to_state: str,
    reason: str,
    changed_by=None
) -> DeviceStateHistory:
    """
    Move ``device`` to ``to_state`` and record the history entry.

    Raises:
        InvalidTransition: the edge is not in the state machine, or another
            writer moved the device first
    """
    from_state = device.state
    if not can_transition(from_state, to_state):
        metrics.inc_counter("device_transitions_rejected_total", {"from": from_state, "to": to_state})
        structured_logger.log_event(
            "lifecycle.transition_rejected",
            level="WARN",
            device_id=device.device_id,
            from_state=from_state,
            to_state=to_state,
            reason=reason
        )
        raise InvalidTransition(from_state, to_state, device.device_id)

    db.flush()
    now = utcnow()
    result = db.execute(
        update(Device)
        .where(Device.device_id == device.device_id, Device.state == from_state)
        .values(state=to_state, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(device)
        raise InvalidTransition(device.state, to_state, device.device_id)

    device.state = to_state
    entry = DeviceStateHistory(
        device_id=device.device_id,
        state=to_state,
        previous_state=from_state,
        changed_at=now,
        reason=reason,
        changed_by=_actor_label(changed_by),
    )
    db.add(entry)

    metrics.inc_counter("device_transitions_total", {"from": from_state, "to": to_state})
    structured_logger.log_event(
        "lifecycle.transition",
        device_id=device.device_id,
        from_state=from_state,
        to_state=to_state,
        reason=reason,
        changed_by=entry.changed_by
    )
    return entry


def allocate_device(
    db: Session,
    customer: Customer,
    changed_by=None,
    reason: str = "created with customer"
) -> Device:
    """Create a fresh UNASSIGNED device identity bound to ``customer``"""
    device = Device(
        state=STATE_UNASSIGNED,
        dealer_id=customer.dealer_id,
        assigned_customer_id=customer.id,
        imei1=customer.imei1,
        imei2=customer.imei2,
    )
    db.add(device)
    db.flush()
    db.add(DeviceStateHistory(
        device_id=device.device_id,
        state=STATE_UNASSIGNED,
        previous_state=None,
        changed_at=utcnow(),
        reason=reason,
        changed_by=_actor_label(changed_by),
    ))
    return device


def get_customer_device(db: Session, customer_id: str) -> Optional[Device]:
    """
    The device projection currently representing a customer: the newest
    non-removed identity, else the newest removed one.
    """
    devices = db.query(Device).filter(
        Device.assigned_customer_id == customer_id
    ).order_by(Device.created_at.desc()).all()

    for device in devices:
        if device.state != STATE_REMOVED:
            return device
    return devices[0] if devices else None


def issue_enrollment_token(db: Session, customer: Customer, actor: AdminUser) -> Device:
    """
    Bind a fresh single-use token to the customer's device and move it to
    PENDING. A PENDING device gets its token rotated; a REMOVED device is
    replaced by a new identity (which counts against the dealer's quota).
    """
    device = get_customer_device(db, customer.id)

    if device is None or device.state == STATE_REMOVED:
        from device_limit import check_device_limit
        check_device_limit(db, actor)
        reason = "replacement for removed device" if device else "created for enrollment"
        device = allocate_device(db, customer, changed_by=actor, reason=reason)

    if device.state in (STATE_ACTIVE, STATE_LOCKED):
        raise InvalidTransition(device.state, STATE_PENDING, device.device_id)

    token = secrets.token_urlsafe(24)
    device.enrollment_token = token
    device.enrollment_token_expires_at = utcnow() + timedelta(hours=config.get_enrollment_token_ttl_hours())
    device.enrollment_token_used_at = None
    customer.enrollment_token = token

    if device.state == STATE_UNASSIGNED:
        transition(db, device, STATE_PENDING, "enrollment token issued", actor)
    else:
        structured_logger.log_event(
            "lifecycle.token_rotated",
            device_id=device.device_id,
            customer_id=customer.id
        )

    return device


def sync_lock_projection(
    db: Session,
    device: Optional[Device],
    is_locked: bool,
    reason: str,
    changed_by=None
) -> Optional[DeviceStateHistory]:
    """
    Bring Device.state in line with the authoritative Customer.is_locked.

    Only ACTIVE/LOCKED devices carry lock state; UNASSIGNED/PENDING devices
    pick it up when enrollment activates them. A REMOVED device rejects it.
    """
    if device is None:
        return None
    if device.state == STATE_REMOVED:
        raise InvalidTransition(STATE_REMOVED, STATE_LOCKED if is_locked else STATE_ACTIVE, device.device_id)
    if is_locked and device.state == STATE_ACTIVE:
        return transition(db, device, STATE_LOCKED, reason, changed_by)
    if not is_locked and device.state == STATE_LOCKED:
        return transition(db, device, STATE_ACTIVE, reason, changed_by)
    return None


def remove_device(db: Session, device: Device, actor=None, reason: str = "removed by admin") -> DeviceStateHistory:
    entry = transition(db, device, STATE_REMOVED, reason, actor)
    device.enrollment_token = None
    device.enrollment_token_expires_at = None
    return entry
