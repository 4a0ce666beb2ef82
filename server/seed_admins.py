#!/usr/bin/env python3
"""
Declarative admin seed.

Brings one admin account to the requested state: creates it when missing,
otherwise reconciles role, limit, name and passcode. Running it twice with
the same arguments changes nothing the second time.

Usage:
    python seed_admins.py --email admin@example.com --passcode 1234 \
        [--name "Super Admin"] [--role SUPER_ADMIN|ADMIN] [--device-limit N] [--phone ...]
"""

import sys
import argparse
from sqlalchemy.orm import Session
from typing import Optional

from auth import hash_passcode, validate_passcode, verify_passcode
from db_utils import record_audit
from errors import ValidationFailed
from models import AdminUser, SessionLocal, init_db, ROLE_ADMIN, ROLE_SUPER_ADMIN
from observability import structured_logger


def seed_admin(
    db: Session,
    email: str,
    passcode: str,
    name: str = "Super Admin",
    role: str = ROLE_SUPER_ADMIN,
    device_limit: int = 0,
    phone: Optional[str] = None
) -> tuple[AdminUser, str]:
    """
    Create or reconcile an admin account.

    Returns:
        tuple: (admin, action) where action is "created", "updated" or "unchanged"
    """
    validate_passcode(passcode)
    if role not in (ROLE_SUPER_ADMIN, ROLE_ADMIN):
        raise ValidationFailed("VALIDATION_FAILED", f"Unknown role {role}", field="role")
    if device_limit < 0:
        raise ValidationFailed("VALIDATION_FAILED", "device limit must be non-negative", field="deviceLimit")

    email = email.strip().lower()
    admin = db.query(AdminUser).filter(AdminUser.email == email).first()

    if admin is None:
        admin = AdminUser(
            name=name,
            email=email,
            phone=phone,
            passcode_hash=hash_passcode(passcode),
            role=role,
            device_limit=device_limit,
            is_active=True,
            created_by="seed",
        )
        db.add(admin)
        db.flush()
        record_audit(db, None, "admin.seeded", "admin", admin.id, details={"email": email, "role": role})
        db.commit()
        structured_logger.log_system_event("ADMIN_SEEDED", admin_id=admin.id, email=email, role=role)
        return admin, "created"

    changed = []
    if admin.name != name:
        admin.name = name
        changed.append("name")
    if admin.role != role:
        admin.role = role
        changed.append("role")
    if admin.device_limit != device_limit:
        admin.device_limit = device_limit
        changed.append("device_limit")
    if phone is not None and admin.phone != phone:
        admin.phone = phone
        changed.append("phone")
    if not admin.is_active:
        admin.is_active = True
        changed.append("is_active")
    if not verify_passcode(passcode, admin.passcode_hash):
        admin.passcode_hash = hash_passcode(passcode)
        changed.append("passcode")

    if not changed:
        return admin, "unchanged"

    record_audit(db, None, "admin.reconciled", "admin", admin.id, details={"fields": changed})
    db.commit()
    structured_logger.log_system_event("ADMIN_RECONCILED", admin_id=admin.id, email=email, fields=changed)
    return admin, "updated"


def main():
    parser = argparse.ArgumentParser(description='Create or reconcile an admin account')
    parser.add_argument('--email', required=True)
    parser.add_argument('--passcode', required=True, help='4-digit passcode')
    parser.add_argument('--name', default='Super Admin')
    parser.add_argument('--role', default=ROLE_SUPER_ADMIN, choices=[ROLE_SUPER_ADMIN, ROLE_ADMIN])
    parser.add_argument('--device-limit', type=int, default=0, help='Device quota for ADMIN accounts')
    parser.add_argument('--phone', default=None)

    args = parser.parse_args()

    init_db()
    db = SessionLocal()
    try:
        admin, action = seed_admin(
            db,
            email=args.email,
            passcode=args.passcode,
            name=args.name,
            role=args.role,
            device_limit=args.device_limit,
            phone=args.phone
        )
        print(f"{action}: {admin.email} ({admin.role}, device limit {admin.device_limit})")
    except ValidationFailed as e:
        print(f"Error: {e.message}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
