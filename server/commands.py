"""
Command Dispatcher.

Each customer has a single pending-command slot. Issuing a command overwrites
whatever is still undelivered; delivery is pull-based on the next heartbeat.

Delivery uses a compare-and-swap on ``remote_command_id``:

    UPDATE customers SET remote_command = NULL, ...
     WHERE id = :customer_id AND remote_command_id = :seen_id

Of two heartbeats racing for the same slot exactly one UPDATE matches a row,
so a command is handed out once and never lost.
"""
import re
import time
import uuid
from sqlalchemy import select, update
from sqlalchemy.orm import Session
from typing import Optional

from db_utils import dump_json, isoformat, load_json, log_db_operation, record_audit
from device_lifecycle import get_customer_device, sync_lock_projection
from errors import Conflict, ValidationFailed
from models import AdminUser, Customer, LockEvent, utcnow, STATE_REMOVED
from observability import structured_logger, metrics

VALID_COMMANDS = ("lock", "unlock", "wipe", "setWallpaper", "setPin", "alarm")
LOCK_COMMANDS = {"lock": True, "unlock": False}

PIN_PATTERN = re.compile(r"^\d{4,8}$")
MAX_ALARM_SECONDS = 300


def validate_command(command: str, payload: Optional[dict]) -> dict:
    """Check the command name and its parameters, returning the normalized payload"""
    if command not in VALID_COMMANDS:
        raise ValidationFailed(
            "INVALID_COMMAND",
            f"Unsupported command '{command}'",
            field="command",
            allowed=list(VALID_COMMANDS),
        )

    payload = dict(payload or {})

    if command == "setPin":
        pin = str(payload.get("pin", ""))
        if not PIN_PATTERN.match(pin):
            raise ValidationFailed("INVALID_COMMAND", "setPin requires a 4-8 digit pin", field="pin")
        payload["pin"] = pin
    elif command == "setWallpaper":
        url = payload.get("url")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise ValidationFailed("INVALID_COMMAND", "setWallpaper requires an image url", field="url")
    elif command == "alarm":
        duration = payload.get("durationSeconds", 30)
        if not isinstance(duration, int) or isinstance(duration, bool) or not 1 <= duration <= MAX_ALARM_SECONDS:
            raise ValidationFailed(
                "INVALID_COMMAND",
                f"alarm durationSeconds must be between 1 and {MAX_ALARM_SECONDS}",
                field="durationSeconds",
            )
        payload["durationSeconds"] = duration

    return payload


def issue_command(
    db: Session,
    customer: Customer,
    command: str,
    actor: Optional[AdminUser],
    payload: Optional[dict] = None,
    reason: Optional[str] = None
) -> dict:
    """
    Store ``command`` in the customer's pending slot, replacing any undelivered
    one. lock/unlock also flip the authoritative ``is_locked`` flag right away,
    append to the lock history and move the device projection.
    """
    payload = validate_command(command, payload)

    device = get_customer_device(db, customer.id)
    if device is not None and device.state == STATE_REMOVED:
        raise Conflict(
            "INVALID_TRANSITION",
            f"Device {device.device_id} was removed; issue a new enrollment token first",
            device_id=device.device_id,
            from_state=STATE_REMOVED,
        )

    now = utcnow()
    superseded = customer.remote_command
    command_id = str(uuid.uuid4())

    customer.remote_command = command
    customer.remote_command_id = command_id
    customer.remote_command_payload = dump_json(payload) if payload else None
    customer.remote_command_at = now

    if command in LOCK_COMMANDS:
        locked = LOCK_COMMANDS[command]
        customer.is_locked = locked
        db.add(LockEvent(
            customer_id=customer.id,
            action="locked" if locked else "unlocked",
            reason=reason or f"{command} command issued",
            actor_id=actor.id if actor else None,
            timestamp=now,
        ))
        sync_lock_projection(db, device, locked, reason or f"{command} command", actor)

    record_audit(
        db, actor, f"command.{command}", "customer", customer.id,
        dealer_id=customer.dealer_id,
        details={"command_id": command_id, "payload": payload or None, "superseded": superseded, "reason": reason}
    )
    db.commit()
    db.refresh(customer)

    metrics.inc_counter("commands_issued_total", {"command": command})
    if superseded:
        metrics.inc_counter("commands_superseded_total", {"command": superseded})
    structured_logger.log_event(
        "command.issued",
        customer_id=customer.id,
        command=command,
        command_id=command_id,
        superseded=superseded,
        actor_id=actor.id if actor else None
    )

    return {
        "commandId": command_id,
        "command": command,
        "payload": payload or None,
        "issuedAt": isoformat(now),
        "superseded": superseded,
        "isLocked": customer.is_locked,
    }


def peek_pending_command(db: Session, customer_id: str) -> Optional[dict]:
    """Read the slot straight from the store, bypassing the session identity map"""
    row = db.execute(
        select(Customer.remote_command, Customer.remote_command_id, Customer.remote_command_payload)
        .where(Customer.id == customer_id)
    ).first()
    if row is None or not row.remote_command or not row.remote_command_id:
        return None
    return {
        "command": row.remote_command,
        "commandId": row.remote_command_id,
        "payload": load_json(row.remote_command_payload),
    }


def claim_pending_command(db: Session, customer_id: str, command_id: str) -> bool:
    """Clear the slot only if it still holds ``command_id``. The caller commits."""
    start = time.time()
    result = db.execute(
        update(Customer)
        .where(Customer.id == customer_id, Customer.remote_command_id == command_id)
        .values(
            remote_command=None,
            remote_command_id=None,
            remote_command_payload=None,
            remote_command_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    claimed = result.rowcount == 1
    log_db_operation(
        "claim", "customers",
        {"customer_id": customer_id, "command_id": command_id, "claimed": claimed},
        round((time.time() - start) * 1000, 2)
    )
    return claimed


def take_pending_command(db: Session, customer_id: str, attempts: int = 3) -> Optional[dict]:
    """
    Read-and-clear the pending slot. Returns the claimed command, or None when
    the slot is empty or another poll claimed it first.
    """
    for _ in range(attempts):
        pending = peek_pending_command(db, customer_id)
        if pending is None:
            return None
        if claim_pending_command(db, customer_id, pending["commandId"]):
            return pending
        # Slot changed under us: either claimed elsewhere or overwritten by a newer command
        metrics.inc_counter("command_claim_conflicts_total")
    return None
