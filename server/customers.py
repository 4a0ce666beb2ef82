"""
Customer CRUD and device views, scoped to the calling admin's tenant.

A Customer is the authoritative record (lock state included); its Device row
is a lifecycle projection created in the same transaction, so the quota
count (devices) and the customer count cannot drift.
"""
import uuid
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import List, Optional

from db_utils import dump_json, isoformat, load_json, record_audit
from device_lifecycle import (
    allocate_device, get_customer_device, issue_enrollment_token, remove_device,
)
from enrollment import serialize_device_status
from errors import Conflict, NotFound
from models import (
    AdminUser, Customer, Device, DeviceStateHistory, LockEvent, SimChange,
    ROLE_SUPER_ADMIN, STATE_ACTIVE, STATE_LOCKED, STATE_REMOVED,
)
from observability import structured_logger, metrics

# API field -> Customer column for admin-editable fields
EDITABLE_FIELDS = {
    "name": "name",
    "phone_no": "phone_no",
    "aadhar_no": "aadhar_no",
    "address": "address",
    "photo_url": "photo_url",
    "imei1": "imei1",
    "expected_imei": "expected_imei",
    "imei2": "imei2",
    "mobile_model": "mobile_model",
    "device_name": "device_name",
    "finance_name": "finance_name",
    "total_amount": "total_amount",
    "emi_amount": "emi_amount",
    "emi_date": "emi_date",
    "total_emis": "total_emis",
    "paid_emis": "paid_emis",
}
JSON_FIELDS = {"documents": "documents", "emi_schedule": "emi_schedule"}


def is_super_admin(admin: AdminUser) -> bool:
    return admin.role == ROLE_SUPER_ADMIN


def scoped_customers(db: Session, admin: AdminUser):
    query = db.query(Customer)
    if not is_super_admin(admin):
        query = query.filter(Customer.dealer_id == admin.id)
    return query


def scoped_devices(db: Session, admin: AdminUser):
    query = db.query(Device)
    if not is_super_admin(admin):
        query = query.filter(Device.dealer_id == admin.id)
    return query


def get_customer_for_admin(db: Session, admin: AdminUser, customer_id: str) -> Customer:
    """Other tenants' customers read as not found"""
    customer = scoped_customers(db, admin).filter(Customer.id == customer_id).first()
    if not customer:
        raise NotFound("CUSTOMER_NOT_FOUND", f"Customer {customer_id} not found", customer_id=customer_id)
    return customer


def get_device_for_admin(db: Session, admin: AdminUser, device_id: str) -> Device:
    device = scoped_devices(db, admin).filter(Device.device_id == device_id).first()
    if not device:
        raise NotFound("DEVICE_NOT_FOUND", f"Device {device_id} not found", device_id=device_id)
    return device


def _duplicate_error(db: Session, customer_id: str, imei1: Optional[str]) -> Conflict:
    if db.get(Customer, customer_id) is not None:
        return Conflict(
            "DUPLICATE_CUSTOMER_ID",
            f"A customer with ID {customer_id} already exists",
            field="id",
            value=customer_id,
        )
    return Conflict(
        "DUPLICATE_IMEI",
        f"A device with IMEI {imei1} is already registered to another customer",
        field="imei1",
        value=imei1,
    )


def _apply_fields(customer: Customer, fields: dict) -> List[str]:
    changed = []
    for key, value in fields.items():
        if key in EDITABLE_FIELDS:
            setattr(customer, EDITABLE_FIELDS[key], value)
        elif key in JSON_FIELDS:
            setattr(customer, JSON_FIELDS[key], dump_json(value))
        else:
            continue
        changed.append(key)
    return changed


def create_customer(db: Session, admin: AdminUser, data) -> Customer:
    """
    Create a Customer and its UNASSIGNED Device projection in one transaction.
    The device limit is checked by the caller before this runs.

    Raises:
        Conflict(DUPLICATE_IMEI | DUPLICATE_CUSTOMER_ID): unique constraint hit
    """
    fields = data.model_dump(exclude_unset=True, exclude={"id", "dealer_id"})
    customer_id = data.id or str(uuid.uuid4())

    if is_super_admin(admin):
        dealer_id = data.dealer_id
    else:
        dealer_id = admin.id

    customer = Customer(id=customer_id, dealer_id=dealer_id)
    _apply_fields(customer, fields)
    db.add(customer)

    try:
        db.flush()
        device = allocate_device(db, customer, changed_by=admin)
        record_audit(
            db, admin, "customer.created", "customer", customer_id,
            dealer_id=dealer_id,
            details={"imei1": customer.imei1, "device_id": device.device_id}
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        metrics.inc_counter("customer_conflicts_total")
        error = _duplicate_error(db, customer_id, data.imei1)
        structured_logger.log_event(
            "customer.create_conflict",
            level="WARN",
            admin_id=admin.id,
            customer_id=customer_id,
            imei1=data.imei1,
            error=error.code
        )
        raise error

    db.refresh(customer)
    metrics.inc_counter("customers_created_total")
    structured_logger.log_event(
        "customer.created",
        admin_id=admin.id,
        customer_id=customer.id,
        dealer_id=dealer_id,
        device_id=device.device_id
    )
    return customer


def update_customer(db: Session, admin: AdminUser, customer_id: str, data) -> Customer:
    """Partial update of admin-editable fields only"""
    customer = get_customer_for_admin(db, admin, customer_id)
    fields = data.model_dump(exclude_unset=True)

    changed = _apply_fields(customer, fields)
    if not changed:
        return customer

    record_audit(
        db, admin, "customer.updated", "customer", customer.id,
        dealer_id=customer.dealer_id,
        details={"fields": changed}
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if "imei1" not in fields:
            raise
        raise Conflict(
            "DUPLICATE_IMEI",
            f"A device with IMEI {fields.get('imei1')} is already registered to another customer",
            field="imei1",
            value=fields.get("imei1"),
        )

    db.refresh(customer)
    structured_logger.log_event("customer.updated", admin_id=admin.id, customer_id=customer.id, fields=changed)
    return customer


def delete_customer(db: Session, admin: AdminUser, customer_id: str) -> dict:
    """
    Hard-delete the customer with its lock and SIM history. An enrolled device
    moves to REMOVED; a never-enrolled one is deleted outright.
    """
    customer = get_customer_for_admin(db, admin, customer_id)

    removed, deleted = [], []
    devices = db.query(Device).filter(
        Device.assigned_customer_id == customer.id,
        Device.state != STATE_REMOVED
    ).all()
    for device in devices:
        if device.state in (STATE_ACTIVE, STATE_LOCKED):
            remove_device(db, device, admin, reason="customer deleted")
            removed.append(device.device_id)
        else:
            db.delete(device)
            deleted.append(device.device_id)

    db.query(LockEvent).filter(LockEvent.customer_id == customer.id).delete(synchronize_session=False)
    db.query(SimChange).filter(SimChange.customer_id == customer.id).delete(synchronize_session=False)
    db.delete(customer)

    record_audit(
        db, admin, "customer.deleted", "customer", customer_id,
        dealer_id=customer.dealer_id,
        details={"removed_devices": removed, "deleted_devices": deleted}
    )
    db.commit()

    metrics.inc_counter("customers_deleted_total")
    structured_logger.log_event(
        "customer.deleted",
        admin_id=admin.id,
        customer_id=customer_id,
        removed_devices=removed,
        deleted_devices=deleted
    )
    return {"customerId": customer_id, "removedDevices": removed, "deletedDevices": deleted}


def issue_token_for_customer(db: Session, admin: AdminUser, customer_id: str) -> dict:
    customer = get_customer_for_admin(db, admin, customer_id)
    device = issue_enrollment_token(db, customer, admin)
    record_audit(
        db, admin, "device.enrollment_token_issued", "device", device.device_id,
        dealer_id=customer.dealer_id,
        details={"customer_id": customer.id}
    )
    db.commit()
    db.refresh(device)

    return {
        "customerId": customer.id,
        "deviceId": device.device_id,
        "state": device.state,
        "enrollmentToken": device.enrollment_token,
        "expiresAt": isoformat(device.enrollment_token_expires_at),
    }


def remove_device_for_admin(db: Session, admin: AdminUser, device_id: str) -> Device:
    device = get_device_for_admin(db, admin, device_id)
    remove_device(db, device, admin)
    record_audit(
        db, admin, "device.removed", "device", device.device_id,
        dealer_id=device.dealer_id,
        details={"customer_id": device.assigned_customer_id}
    )
    db.commit()
    db.refresh(device)
    return device


def serialize_customer(
    customer: Customer,
    device: Optional[Device] = None,
    lock_history: Optional[List[LockEvent]] = None,
    sim_history: Optional[List[SimChange]] = None
) -> dict:
    data = {
        "id": customer.id,
        "dealerId": customer.dealer_id,
        "name": customer.name,
        "phoneNo": customer.phone_no,
        "aadharNo": customer.aadhar_no,
        "address": customer.address,
        "photoUrl": customer.photo_url,
        "documents": load_json(customer.documents, []),
        "imei1": customer.imei1,
        "expectedIMEI": customer.expected_imei,
        "imei2": customer.imei2,
        "mobileModel": customer.mobile_model,
        "deviceName": customer.device_name,
        "financeName": customer.finance_name,
        "totalAmount": customer.total_amount,
        "emiAmount": customer.emi_amount,
        "emiDate": customer.emi_date,
        "totalEmis": customer.total_emis,
        "paidEmis": customer.paid_emis,
        "emiSchedule": load_json(customer.emi_schedule, []),
        "isLocked": customer.is_locked,
        "isEnrolled": customer.is_enrolled,
        "enrollmentToken": customer.enrollment_token,
        "offlineLockToken": customer.offline_lock_token,
        "offlineUnlockToken": customer.offline_unlock_token,
        "location": {
            "lat": customer.location_lat,
            "lng": customer.location_lng,
            "address": customer.location_address,
            "lastUpdated": isoformat(customer.location_updated_at),
        },
        "simDetails": {
            "operator": customer.sim_operator,
            "serialNumber": customer.sim_serial,
            "phoneNumber": customer.sim_phone_number,
            "imsi": customer.sim_imsi,
            "isAuthorized": customer.sim_is_authorized,
            "updatedAt": isoformat(customer.sim_updated_at),
        },
        "features": load_json(customer.features, {}),
        "deviceStatus": serialize_device_status(customer),
        "remoteCommand": {
            "command": customer.remote_command,
            "commandId": customer.remote_command_id,
            "timestamp": isoformat(customer.remote_command_at),
        } if customer.remote_command else None,
        "createdAt": isoformat(customer.created_at),
        "updatedAt": isoformat(customer.updated_at),
    }
    if device is not None:
        data["device"] = {"deviceId": device.device_id, "state": device.state}
    if lock_history is not None:
        data["lockHistory"] = [
            {
                "id": event.id,
                "action": event.action,
                "reason": event.reason,
                "actorId": event.actor_id,
                "timestamp": isoformat(event.timestamp),
            }
            for event in lock_history
        ]
    if sim_history is not None:
        data["simChangeHistory"] = [
            {
                "previousSerial": change.previous_serial,
                "serialNumber": change.serial_number,
                "operator": change.operator,
                "detectedAt": isoformat(change.detected_at),
                "ipAddress": change.ip_address,
            }
            for change in sim_history
        ]
    return data


def customer_detail(db: Session, customer: Customer) -> dict:
    lock_history = db.query(LockEvent).filter(
        LockEvent.customer_id == customer.id
    ).order_by(LockEvent.timestamp.asc()).all()
    sim_history = db.query(SimChange).filter(
        SimChange.customer_id == customer.id
    ).order_by(SimChange.detected_at.asc()).all()
    device = get_customer_device(db, customer.id)
    return serialize_customer(customer, device, lock_history, sim_history)


def serialize_device(device: Device, history: Optional[List[DeviceStateHistory]] = None) -> dict:
    data = {
        "deviceId": device.device_id,
        "platform": device.platform,
        "state": device.state,
        "dealerId": device.dealer_id,
        "assignedCustomerId": device.assigned_customer_id,
        "brand": device.brand,
        "model": device.model,
        "manufacturer": device.manufacturer,
        "osVersion": device.os_version,
        "sdkInt": device.sdk_int,
        "imei1": device.imei1,
        "imei2": device.imei2,
        "meid": device.meid,
        "androidId": device.android_id,
        "serial": device.serial,
        "simOperator": device.sim_operator,
        "simIccid": device.sim_iccid,
        "enrollmentTokenExpiresAt": isoformat(device.enrollment_token_expires_at),
        "enrolledAt": isoformat(device.enrolled_at),
        "lastSeen": isoformat(device.last_seen),
        "createdAt": isoformat(device.created_at),
    }
    if history is not None:
        data["stateHistory"] = [
            {
                "state": entry.state,
                "previousState": entry.previous_state,
                "changedAt": isoformat(entry.changed_at),
                "reason": entry.reason,
                "changedBy": entry.changed_by,
            }
            for entry in history
        ]
    return data


def device_detail(db: Session, device: Device) -> dict:
    history = db.query(DeviceStateHistory).filter(
        DeviceStateHistory.device_id == device.device_id
    ).order_by(DeviceStateHistory.id.asc()).all()
    return serialize_device(device, history)
