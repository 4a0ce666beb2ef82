#!/usr/bin/env python3
"""
Customer/Device drift reconciliation.

The Customer record is authoritative; the Device row is a projection of it.
This job finds and (unless --dry-run) repairs every way the two can disagree:

- customer_without_device: a customer has no device identity at all
- orphan_device: a live device points at a customer that no longer exists
- dealer_mismatch: device.dealer_id differs from its customer's dealer_id
- enrollment_mismatch: the customer is enrolled but its device never became ACTIVE
- lock_mismatch: Device.state disagrees with Customer.is_locked

Design:
- Idempotent: a second run over a repaired store finds nothing
- Reentrant: uses a PostgreSQL advisory lock so two runs never overlap

Usage:
    python reconciliation_job.py [--dry-run]
"""

import sys
import argparse
from collections import defaultdict
from datetime import datetime, timezone
from sqlalchemy import text
from sqlalchemy.orm import Session
from typing import Optional

from device_lifecycle import allocate_device, get_customer_device, remove_device, sync_lock_projection, transition
from models import (
    Customer, Device, SessionLocal,
    STATE_UNASSIGNED, STATE_PENDING, STATE_ACTIVE, STATE_LOCKED, STATE_REMOVED,
)
from observability import structured_logger, metrics

ADVISORY_LOCK_ID = 424242001
ACTOR = "reconciliation_job"


def find_drift(db: Session) -> list[dict]:
    """List every Customer/Device disagreement without changing anything"""
    issues = []

    customers = {c.id: c for c in db.query(Customer).all()}

    for customer in customers.values():
        device = get_customer_device(db, customer.id)
        if device is None:
            issues.append({"kind": "customer_without_device", "customer_id": customer.id,
                           "dealer_id": customer.dealer_id})
            continue
        if device.state == STATE_REMOVED:
            continue

        if device.dealer_id != customer.dealer_id:
            issues.append({"kind": "dealer_mismatch", "customer_id": customer.id, "device_id": device.device_id,
                           "dealer_id": customer.dealer_id, "device_dealer_id": device.dealer_id})

        if customer.is_enrolled and device.state in (STATE_UNASSIGNED, STATE_PENDING):
            issues.append({"kind": "enrollment_mismatch", "customer_id": customer.id,
                           "device_id": device.device_id, "dealer_id": customer.dealer_id,
                           "state": device.state})
        elif (device.state == STATE_ACTIVE and customer.is_locked) or \
                (device.state == STATE_LOCKED and not customer.is_locked):
            issues.append({"kind": "lock_mismatch", "customer_id": customer.id, "device_id": device.device_id,
                           "dealer_id": customer.dealer_id, "state": device.state,
                           "is_locked": customer.is_locked})

    orphans = db.query(Device).filter(Device.state != STATE_REMOVED).all()
    for device in orphans:
        if device.assigned_customer_id and device.assigned_customer_id not in customers:
            issues.append({"kind": "orphan_device", "device_id": device.device_id,
                           "customer_id": device.assigned_customer_id, "dealer_id": device.dealer_id,
                           "state": device.state})

    return issues


def repair_issue(db: Session, issue: dict) -> None:
    """Rebuild the Device projection from the authoritative Customer record"""
    kind = issue["kind"]

    if kind == "orphan_device":
        device = db.get(Device, issue["device_id"])
        if device.state in (STATE_ACTIVE, STATE_LOCKED):
            remove_device(db, device, ACTOR, reason="customer no longer exists")
        else:
            db.delete(device)
        return

    customer = db.get(Customer, issue["customer_id"])

    if kind == "customer_without_device":
        device = allocate_device(db, customer, changed_by=ACTOR, reason="rebuilt by reconciliation")
        if customer.is_enrolled:
            _activate(db, device, customer)
    elif kind == "dealer_mismatch":
        device = db.get(Device, issue["device_id"])
        device.dealer_id = customer.dealer_id
    elif kind == "enrollment_mismatch":
        _activate(db, db.get(Device, issue["device_id"]), customer)
    elif kind == "lock_mismatch":
        sync_lock_projection(db, db.get(Device, issue["device_id"]), customer.is_locked,
                             "lock state reconciled", ACTOR)


def _activate(db: Session, device: Device, customer: Customer) -> None:
    if device.state == STATE_UNASSIGNED:
        transition(db, device, STATE_PENDING, "enrollment reconciled", ACTOR)
    if device.state == STATE_PENDING:
        transition(db, device, STATE_ACTIVE, "enrollment reconciled", ACTOR)
    if customer.is_locked:
        sync_lock_projection(db, device, True, "lock state reconciled", ACTOR)


def run_reconciliation(dry_run: bool = False, db: Optional[Session] = None) -> dict:
    """
    Report drift per dealer and repair it unless ``dry_run``.

    Returns:
        dict: status, issues found, per-dealer counts and number repaired
    """
    owns_session = db is None
    db = db or SessionLocal()
    use_lock = db.get_bind().dialect.name == "postgresql"
    lock_acquired = False

    try:
        if use_lock:
            lock_acquired = bool(db.execute(
                text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": ADVISORY_LOCK_ID}
            ).scalar())
            if not lock_acquired:
                structured_logger.log_event("reconciliation.skipped", reason="lock_held")
                return {"status": "skipped", "reason": "lock_held"}

        start_time = datetime.now(timezone.utc)
        structured_logger.log_event("reconciliation.started", dry_run=dry_run)

        issues = find_drift(db)
        by_dealer = defaultdict(lambda: defaultdict(int))
        for issue in issues:
            by_dealer[issue.get("dealer_id") or "unassigned"][issue["kind"]] += 1
        by_dealer = {dealer: dict(kinds) for dealer, kinds in by_dealer.items()}

        repaired = 0
        if not dry_run:
            for issue in issues:
                repair_issue(db, issue)
                repaired += 1
            db.commit()

        elapsed_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000

        structured_logger.log_event(
            "reconciliation.completed",
            dry_run=dry_run,
            issues=len(issues),
            repaired=repaired,
            by_dealer=by_dealer,
            elapsed_ms=round(elapsed_ms, 2)
        )
        metrics.inc_counter("reconciliation_runs_total", {"status": "dry_run" if dry_run else "success"})
        metrics.inc_counter("reconciliation_issues_total", {}, len(issues))
        metrics.observe_histogram("reconciliation_duration_ms", elapsed_ms, {})
        metrics.set_gauge("reconciliation_open_issues", len(issues) - repaired)

        return {
            "status": "dry_run" if dry_run else "completed",
            "issues": issues,
            "by_dealer": by_dealer,
            "repaired": repaired,
            "elapsed_ms": round(elapsed_ms, 2),
        }

    except Exception as e:
        db.rollback()
        structured_logger.log_event(
            "reconciliation.failed",
            level="ERROR",
            error=str(e),
            error_type=type(e).__name__
        )
        metrics.inc_counter("reconciliation_runs_total", {"status": "error"})
        raise

    finally:
        if lock_acquired:
            db.execute(text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": ADVISORY_LOCK_ID})
        if owns_session:
            db.close()


def main():
    parser = argparse.ArgumentParser(description='Report and repair Customer/Device drift')
    parser.add_argument('--dry-run', action='store_true', help='Report drift without repairing it')

    args = parser.parse_args()

    try:
        result = run_reconciliation(dry_run=args.dry_run)
    except Exception as e:
        print(f"Reconciliation failed: {e}")
        sys.exit(1)

    if result["status"] == "skipped":
        print("Skipped: another reconciliation run holds the lock")
        sys.exit(0)

    print(f"Found {len(result['issues'])} issue(s)")
    for dealer, kinds in sorted(result["by_dealer"].items()):
        summary = ", ".join(f"{kind}={count}" for kind, count in sorted(kinds.items()))
        print(f"   {dealer}: {summary}")
    if args.dry_run:
        print("Dry run: nothing repaired")
    else:
        print(f"Repaired {result['repaired']} issue(s)")
    sys.exit(0)


if __name__ == "__main__":
    main()
