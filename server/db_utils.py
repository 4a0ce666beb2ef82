"""
Database utility functions shared by the fleet components: timestamp
normalization, JSON column helpers and the audit trail writer.
"""
from datetime import datetime, timezone
from sqlalchemy.orm import Session
from typing import Any, Optional
import json
import logging

from models import AuditLog, AdminUser, utcnow

logger = logging.getLogger(__name__)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert naive datetime to timezone-aware UTC datetime (stores drop tzinfo)."""
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    dt = ensure_utc(dt)
    return dt.isoformat() if dt else None


def parse_client_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp reported by a device agent.

    Agents send either epoch milliseconds (``Date.now()``/``System.currentTimeMillis()``),
    epoch seconds, or an ISO-8601 string. Anything unparseable yields None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return parse_client_timestamp(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return ensure_utc(parsed)
    return None


def load_json(raw: Optional[str], default: Any = None) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"db_operation event=json_decode_failed raw={raw[:80]!r}")
        return default


def dump_json(value: Any) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def log_db_operation(event: str, entity: str, keys: dict, latency_ms: float):
    """
    Structured logging for database operations.

    Args:
        event: Operation type (create, update, delete, claim)
        entity: Table/entity name
        keys: Dictionary of identifying keys
        latency_ms: Operation latency in milliseconds
    """
    logger.info(
        f"db_operation event={event} entity={entity} keys={keys} latency_ms={latency_ms}"
    )


def record_audit(
    db: Session,
    actor: Optional[AdminUser],
    action: str,
    target_type: str,
    target_id: Optional[str],
    dealer_id: Optional[str] = None,
    details: Optional[dict] = None
) -> AuditLog:
    """
    Append an audit entry. The caller owns the transaction: the entry is
    committed together with the change it describes.
    """
    entry = AuditLog(
        actor_id=actor.id if actor else None,
        actor_role=actor.role if actor else None,
        action=action,
        target_type=target_type,
        target_id=target_id,
        dealer_id=dealer_id,
        details=dump_json(details),
        created_at=utcnow(),
    )
    db.add(entry)
    return entry
