"""
Device Limit Guard.

Request-time quota check for mutations that add a device to an admin's fleet
(customer creation, allocating a replacement device). SUPER_ADMIN bypasses
the check entirely; for an ADMIN a ``device_limit`` of 0 means zero capacity,
never "unlimited".
"""
from dataclasses import dataclass, asdict
from fastapi import Depends, Request
from sqlalchemy.orm import Session
from typing import Optional

from auth import get_current_admin
from errors import QuotaExceeded
from models import AdminUser, Device, ROLE_SUPER_ADMIN, STATE_REMOVED, get_db
from observability import structured_logger, metrics


@dataclass
class DeviceStats:
    current: int
    limit: int
    remaining: int

    def as_dict(self) -> dict:
        return asdict(self)


def count_dealer_devices(db: Session, dealer_id: str) -> int:
    """Devices counting against a dealer's quota; REMOVED devices free their slot"""
    return db.query(Device).filter(
        Device.dealer_id == dealer_id,
        Device.state != STATE_REMOVED
    ).count()


def device_usage(db: Session, admin: AdminUser) -> Optional[DeviceStats]:
    """Current usage for an ADMIN, None for SUPER_ADMIN (unlimited)"""
    if admin.role == ROLE_SUPER_ADMIN:
        return None
    limit = admin.device_limit or 0
    current = count_dealer_devices(db, admin.id)
    return DeviceStats(current=current, limit=limit, remaining=limit - current)


def check_device_limit(db: Session, admin: AdminUser) -> Optional[DeviceStats]:
    """
    Allow or deny one more device for ``admin``.

    Returns the pre-mutation stats on success (None for SUPER_ADMIN). The
    stats are informational: they go stale by one as soon as the mutation
    commits.

    Raises:
        QuotaExceeded: the admin already holds ``device_limit`` devices
    """
    stats = device_usage(db, admin)
    if stats is None:
        return None

    if stats.current >= stats.limit:
        metrics.inc_counter("quota_refusals_total")
        structured_logger.log_security_event(
            "DEVICE_LIMIT_REACHED",
            admin_id=admin.id,
            admin_email=admin.email,
            current_count=stats.current,
            limit=stats.limit
        )
        raise QuotaExceeded(current=stats.current, limit=stats.limit)

    return stats


async def enforce_device_limit(
    request: Request,
    admin: AdminUser = Depends(get_current_admin),
    db: Session = Depends(get_db)
) -> AdminUser:
    """FastAPI dependency: runs the guard and attaches stats to request.state"""
    stats = check_device_limit(db, admin)
    request.state.device_stats = stats.as_dict() if stats else None
    return admin
