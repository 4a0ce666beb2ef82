from fastapi import FastAPI, Depends, Request, Response, Query
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import func, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from datetime import datetime, timezone
from typing import Optional
import os
import time
import uuid

from models import AdminUser, AuditLog, Customer, Device, ROLE_ADMIN, ROLE_SUPER_ADMIN, get_db, init_db
from schemas import (
    AdminCreateRequest, AdminLoginRequest, AdminUpdateRequest, CommandRequest, CustomerCreate,
    CustomerUpdate, DeviceLimitUpdate, EnrollmentReport, HeartbeatPayload, HeartbeatResponse,
    StatusReport, VerifyRequest,
)
from auth import (
    authenticate_admin, client_ip, create_jwt_token, get_current_admin, hash_passcode,
    require_super_admin, validate_passcode,
)
from commands import issue_command
from config import config
from customers import (
    create_customer, customer_detail, delete_customer, device_detail, get_customer_for_admin,
    get_device_for_admin, issue_token_for_customer, remove_device_for_admin, scoped_customers,
    scoped_devices, serialize_customer, serialize_device, update_customer,
)
from db_utils import isoformat, load_json, record_audit
from device_limit import device_usage, enforce_device_limit
from device_lifecycle import get_customer_device
from enrollment import apply_status_report, enroll_device, serialize_device_status, verify_device
from errors import Conflict, FleetError, InfrastructureError, NotFound, ValidationFailed
from heartbeat import ingest_heartbeat
from observability import structured_logger, metrics, request_id_var
from provisioning import generate_provisioning_payload

app = FastAPI(title="EMI Fleet API")

backend_start_time = datetime.now(timezone.utc)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """
    Generate/extract request_id for correlation across logs.
    Also tracks HTTP request metrics per route template.
    """
    req_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(req_id)

    start_time = time.time()

    response = await call_next(request)

    latency_ms = (time.time() - start_time) * 1000

    route = getattr(request.scope.get("route"), "path", request.url.path)

    metrics.inc_counter("http_requests_total", {
        "route": route,
        "method": request.method,
        "status_code": str(response.status_code)
    })

    metrics.observe_histogram("http_request_latency_ms", latency_ms, {
        "route": route
    })

    response.headers["X-Request-ID"] = req_id

    return response


@app.middleware("http")
async def exception_guard_middleware(request: Request, call_next):
    """
    Turn any unhandled exception into a logged 500 so a single failed request
    never takes the process down.
    """
    try:
        return await call_next(request)
    except Exception as e:
        structured_logger.log_event(
            "http.unhandled_exception",
            level="ERROR",
            path=request.url.path,
            method=request.method,
            error=str(e),
            error_type=type(e).__name__
        )

        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "INTERNAL_ERROR",
                "message": "An unexpected error occurred. Please try again later."
            }
        )


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"

    forwarded_proto = request.headers.get("x-forwarded-proto", request.url.scheme)
    if forwarded_proto == "https":
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Agent APK downloads referenced by provisioning payloads
app.mount("/downloads", StaticFiles(directory=config.get_apk_download_dir(), check_dir=False), name="downloads")


@app.exception_handler(FleetError)
async def fleet_error_handler(request: Request, exc: FleetError):
    """Render typed component errors with their stable code and details"""
    structured_logger.log_event(
        "http.fleet_error",
        level="ERROR" if exc.status_code >= 500 else "WARN",
        path=request.url.path,
        method=request.method,
        status_code=exc.status_code,
        error=exc.code,
        message=exc.message,
        details=exc.details
    )
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.as_dict()))


@app.exception_handler(OperationalError)
async def store_unavailable_handler(request: Request, exc: OperationalError):
    metrics.inc_counter("store_errors_total")
    error = InfrastructureError(
        "STORE_UNAVAILABLE",
        "Data store is unavailable. Please try again later.",
        hint=str(exc.orig)[:200]
    )
    return await fleet_error_handler(request, error)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    structured_logger.log_event(
        "validation.error",
        level="WARN",
        path=request.url.path,
        method=request.method,
        errors=exc.errors()
    )

    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(exc.errors())}
    )


def validate_configuration():
    """Refuse to start on configuration errors; log warnings"""
    is_valid, errors, warnings = config.validate()

    for warning in warnings:
        structured_logger.log_event("startup.config_warning", level="WARN", warning=warning)

    if not is_valid:
        for error in errors:
            structured_logger.log_event("startup.config_error", level="ERROR", error=error)
        raise RuntimeError("Configuration validation failed: " + "; ".join(errors))


@app.on_event("startup")
async def startup_event():
    """
    Fail fast: a store that cannot be initialised or an invalid configuration
    aborts startup instead of serving from a half-initialised process.
    """
    structured_logger.log_event("startup.begin", started_at=backend_start_time.isoformat())

    validate_configuration()

    try:
        init_db()
    except Exception as e:
        structured_logger.log_event(
            "startup.database_failed",
            level="ERROR",
            error=str(e),
            error_type=type(e).__name__
        )
        raise

    structured_logger.log_event(
        "startup.complete",
        provisioning_base_url=config.provisioning_base_url,
        apk_path=config.get_apk_path(),
        heartbeat_interval_seconds=config.get_heartbeat_interval_seconds()
    )


@app.get("/healthz")
async def health_check():
    """
    Liveness check - returns 200 if process is alive.
    Does not check dependencies (use /readyz for that).
    """
    uptime_seconds = (datetime.now(timezone.utc) - backend_start_time).total_seconds()
    return {
        "status": "healthy",
        "uptime_seconds": int(uptime_seconds),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/readyz")
async def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check - 200 when the store answers, 503 otherwise.
    APK presence is reported but does not gate readiness.
    """
    checks = {"database": False, "apk": False}
    errors = []

    try:
        checks["database"] = db.execute(text("SELECT 1")).scalar() == 1
    except Exception as e:
        errors.append(f"database: {str(e)[:100]}")

    checks["apk"] = os.path.isfile(config.get_apk_path())

    ready = checks["database"]
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "ready": ready,
            "checks": checks,
            "errors": errors or None,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


@app.get("/metrics")
async def prometheus_metrics(admin: AdminUser = Depends(require_super_admin)):
    """Prometheus-compatible metrics endpoint (SUPER_ADMIN only)"""
    structured_logger.log_event("metrics.scrape", admin_id=admin.id)
    return Response(
        content=metrics.get_prometheus_text(),
        media_type="text/plain; version=0.0.4"
    )


# --- Admin users ---

def serialize_admin(admin: AdminUser) -> dict:
    return {
        "id": admin.id,
        "name": admin.name,
        "email": admin.email,
        "phone": admin.phone,
        "role": admin.role,
        "deviceLimit": admin.device_limit,
        "isActive": admin.is_active,
        "createdBy": admin.created_by,
        "lastLogin": isoformat(admin.last_login),
        "createdAt": isoformat(admin.created_at),
    }


def usage_percentage(current: int, limit: int) -> float:
    if limit <= 0:
        return 100.0 if current else 0.0
    return round(current * 100.0 / limit, 1)


def _get_admin_or_404(db: Session, admin_id: str) -> AdminUser:
    admin = db.get(AdminUser, admin_id)
    if not admin:
        raise NotFound("ADMIN_NOT_FOUND", f"Admin {admin_id} not found", admin_id=admin_id)
    return admin


@app.post("/api/admin/login")
async def admin_login(payload: AdminLoginRequest, request: Request, db: Session = Depends(get_db)):
    validate_passcode(payload.passcode)
    admin = authenticate_admin(db, payload.email, payload.passcode, client_ip(request))
    token = create_jwt_token(admin)

    structured_logger.log_event("admin.login", admin_id=admin.id, role=admin.role)

    response = {"success": True, "token": token, "user": serialize_admin(admin)}
    stats = device_usage(db, admin)
    if stats is not None:
        response["deviceStats"] = stats.as_dict()
    return response


@app.get("/api/admin/me")
async def admin_me(admin: AdminUser = Depends(get_current_admin), db: Session = Depends(get_db)):
    response = {"success": True, "user": serialize_admin(admin)}
    stats = device_usage(db, admin)
    if stats is not None:
        response["deviceStats"] = stats.as_dict()
    return response


@app.post("/api/admin/users", status_code=201)
async def create_admin_user(
    payload: AdminCreateRequest,
    creator: AdminUser = Depends(require_super_admin),
    db: Session = Depends(get_db)
):
    if db.query(AdminUser).filter(AdminUser.email == payload.email).first():
        raise Conflict("DUPLICATE_EMAIL", f"Email {payload.email} is already registered", field="email")

    admin = AdminUser(
        name=payload.name,
        email=payload.email,
        phone=payload.phone,
        passcode_hash=hash_passcode(payload.passcode),
        role=ROLE_ADMIN,
        device_limit=payload.device_limit,
        is_active=True,
        created_by=creator.id,
    )
    db.add(admin)
    try:
        db.flush()
        record_audit(db, creator, "admin.created", "admin", admin.id, details={"email": admin.email, "device_limit": admin.device_limit})
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("DUPLICATE_EMAIL", f"Email {payload.email} is already registered", field="email")
    db.refresh(admin)

    structured_logger.log_system_event("ADMIN_CREATED", admin_id=admin.id, created_by=creator.id, device_limit=admin.device_limit)
    return {"success": True, "user": serialize_admin(admin)}


@app.get("/api/admin/users")
async def list_admin_users(_: AdminUser = Depends(require_super_admin), db: Session = Depends(get_db)):
    admins = db.query(AdminUser).filter(AdminUser.role == ROLE_ADMIN).order_by(AdminUser.created_at.desc()).all()

    customer_counts = dict(
        db.query(Customer.dealer_id, func.count(Customer.id)).group_by(Customer.dealer_id).all()
    )

    users = []
    for admin in admins:
        stats = device_usage(db, admin)
        data = serialize_admin(admin)
        data["deviceUsage"] = {
            **stats.as_dict(),
            "percentage": usage_percentage(stats.current, stats.limit),
        }
        data["customerCount"] = customer_counts.get(admin.id, 0)
        users.append(data)

    return {"success": True, "users": users}


@app.put("/api/admin/users/{admin_id}/limit")
async def update_device_limit(
    admin_id: str,
    payload: DeviceLimitUpdate,
    actor: AdminUser = Depends(require_super_admin),
    db: Session = Depends(get_db)
):
    admin = _get_admin_or_404(db, admin_id)
    if admin.role != ROLE_ADMIN:
        raise ValidationFailed("VALIDATION_FAILED", "Device limits apply to ADMIN users only", field="deviceLimit")

    previous = admin.device_limit
    admin.device_limit = payload.device_limit
    record_audit(db, actor, "admin.limit_updated", "admin", admin.id, details={"from": previous, "to": payload.device_limit})
    db.commit()
    db.refresh(admin)

    structured_logger.log_system_event("DEVICE_LIMIT_UPDATED", admin_id=admin.id, previous=previous, limit=admin.device_limit)

    stats = device_usage(db, admin)
    return {"success": True, "user": serialize_admin(admin), "deviceStats": stats.as_dict()}


@app.put("/api/admin/users/{admin_id}")
async def update_admin_user(
    admin_id: str,
    payload: AdminUpdateRequest,
    actor: AdminUser = Depends(require_super_admin),
    db: Session = Depends(get_db)
):
    admin = _get_admin_or_404(db, admin_id)
    fields = payload.model_dump(exclude_unset=True)

    if "email" in fields and fields["email"] != admin.email:
        if db.query(AdminUser).filter(AdminUser.email == fields["email"]).first():
            raise Conflict("DUPLICATE_EMAIL", f"Email {fields['email']} is already registered", field="email")
        admin.email = fields["email"]
    for key in ("name", "phone", "is_active"):
        if key in fields and fields[key] is not None:
            setattr(admin, key, fields[key])
    if fields.get("passcode"):
        admin.passcode_hash = hash_passcode(fields["passcode"])

    record_audit(db, actor, "admin.updated", "admin", admin.id, details={"fields": sorted(fields)})
    db.commit()
    db.refresh(admin)

    structured_logger.log_system_event("ADMIN_UPDATED", admin_id=admin.id, fields=sorted(fields))
    return {"success": True, "user": serialize_admin(admin)}


@app.delete("/api/admin/users/{admin_id}")
async def deactivate_admin_user(
    admin_id: str,
    actor: AdminUser = Depends(require_super_admin),
    db: Session = Depends(get_db)
):
    admin = _get_admin_or_404(db, admin_id)
    if admin.role == ROLE_SUPER_ADMIN:
        raise ValidationFailed("VALIDATION_FAILED", "SUPER_ADMIN accounts cannot be deactivated here")

    admin.is_active = False
    record_audit(db, actor, "admin.deactivated", "admin", admin.id)
    db.commit()

    structured_logger.log_system_event("ADMIN_DEACTIVATED", admin_id=admin.id, actor_id=actor.id)
    return {"success": True, "message": "Admin deactivated"}


@app.get("/api/admin/stats")
async def admin_stats(admin: AdminUser = Depends(get_current_admin), db: Session = Depends(get_db)):
    devices_by_state = dict(
        scoped_devices(db, admin).with_entities(Device.state, func.count(Device.device_id)).group_by(Device.state).all()
    )
    customers = scoped_customers(db, admin)

    stats = {
        "totalCustomers": customers.count(),
        "lockedCustomers": customers.filter(Customer.is_locked.is_(True)).count(),
        "enrolledCustomers": customers.filter(Customer.is_enrolled.is_(True)).count(),
        "devicesByState": devices_by_state,
    }

    if admin.role == ROLE_SUPER_ADMIN:
        stats["totalAdmins"] = db.query(AdminUser).filter(AdminUser.role == ROLE_ADMIN).count()
        stats["activeAdmins"] = db.query(AdminUser).filter(
            AdminUser.role == ROLE_ADMIN, AdminUser.is_active.is_(True)
        ).count()
    else:
        usage = device_usage(db, admin)
        stats["deviceLimit"] = usage.limit
        stats["devicesUsed"] = usage.current
        stats["remaining"] = usage.remaining
        stats["usagePercentage"] = usage_percentage(usage.current, usage.limit)

    return {"success": True, "stats": stats}


# --- Customers ---

@app.get("/api/customers")
async def list_customers(admin: AdminUser = Depends(get_current_admin), db: Session = Depends(get_db)):
    customers = scoped_customers(db, admin).order_by(Customer.created_at.desc()).all()
    return [serialize_customer(c) for c in customers]


@app.post("/api/customers", status_code=201)
async def create_customer_endpoint(
    payload: CustomerCreate,
    request: Request,
    admin: AdminUser = Depends(enforce_device_limit),
    db: Session = Depends(get_db)
):
    customer = create_customer(db, admin, payload)
    device = get_customer_device(db, customer.id)
    return {
        "success": True,
        "customer": serialize_customer(customer, device),
        "deviceStats": request.state.device_stats,
    }


@app.post("/api/customers/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(payload: HeartbeatPayload, request: Request, db: Session = Depends(get_db)):
    return ingest_heartbeat(db, payload, client_ip(request))


@app.get("/api/customers/{customer_id}")
async def get_customer(customer_id: str, admin: AdminUser = Depends(get_current_admin), db: Session = Depends(get_db)):
    customer = get_customer_for_admin(db, admin, customer_id)
    return customer_detail(db, customer)


@app.patch("/api/customers/{customer_id}")
async def patch_customer(
    customer_id: str,
    payload: CustomerUpdate,
    admin: AdminUser = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    customer = update_customer(db, admin, customer_id, payload)
    return serialize_customer(customer)


@app.delete("/api/customers/{customer_id}")
async def delete_customer_endpoint(
    customer_id: str,
    admin: AdminUser = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    result = delete_customer(db, admin, customer_id)
    return {"success": True, "message": "Customer deleted", **result}


@app.post("/api/customers/{customer_id}/enrollment-token")
async def issue_enrollment_token_endpoint(
    customer_id: str,
    admin: AdminUser = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    return {"success": True, **issue_token_for_customer(db, admin, customer_id)}


@app.post("/api/customers/{customer_id}/status")
async def report_status(customer_id: str, payload: StatusReport, db: Session = Depends(get_db)):
    customer = apply_status_report(
        db,
        customer_id,
        status=payload.status,
        step=payload.step,
        install_progress=payload.install_progress,
        error_message=payload.error_message
    )
    return {"success": True, "customerId": customer.id, "deviceStatus": serialize_device_status(customer)}


@app.post("/api/customers/{customer_id}/verify")
async def verify_customer_device(
    customer_id: str,
    payload: VerifyRequest,
    request: Request,
    db: Session = Depends(get_db)
):
    return verify_device(
        db,
        customer_id,
        actual_imei=payload.actual_imei,
        sim_details=payload.sim_details,
        model_details=payload.model_details,
        ip_address=client_ip(request)
    )


@app.post("/api/customers/{customer_id}/command")
async def send_command(
    customer_id: str,
    payload: CommandRequest,
    admin: AdminUser = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    customer = get_customer_for_admin(db, admin, customer_id)
    result = issue_command(db, customer, payload.command, admin, payload=payload.payload, reason=payload.reason)
    return {"success": True, "message": f"Command {payload.command} queued for device", **result}


# --- Devices ---

@app.post("/api/devices/enrolled")
async def device_enrolled(payload: EnrollmentReport, db: Session = Depends(get_db)):
    customer, device = enroll_device(db, payload)
    return {
        "success": True,
        "customerId": customer.id,
        "deviceId": device.device_id,
        "deviceState": device.state,
        "isEnrolled": customer.is_enrolled,
        "isLocked": customer.is_locked,
        "deviceStatus": serialize_device_status(customer),
    }


@app.get("/api/devices")
async def list_devices(
    state: Optional[str] = Query(None),
    admin: AdminUser = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    query = scoped_devices(db, admin)
    if state:
        query = query.filter(Device.state == state.upper())
    devices = query.order_by(Device.created_at.desc()).all()
    return {"success": True, "devices": [serialize_device(d) for d in devices]}


@app.get("/api/devices/{device_id}")
async def get_device(device_id: str, admin: AdminUser = Depends(get_current_admin), db: Session = Depends(get_db)):
    device = get_device_for_admin(db, admin, device_id)
    return device_detail(db, device)


@app.delete("/api/devices/{device_id}")
async def remove_device_endpoint(
    device_id: str,
    admin: AdminUser = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    device = remove_device_for_admin(db, admin, device_id)
    return {"success": True, "device": serialize_device(device)}


# --- Provisioning ---

@app.get("/api/provisioning/payload/{customer_id}")
async def provisioning_payload(
    customer_id: str,
    request: Request,
    admin: AdminUser = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    customer = get_customer_for_admin(db, admin, customer_id)
    host = request.headers.get("x-forwarded-host") or request.headers.get("host")
    return await generate_provisioning_payload(customer.id, host)


# --- Audit ---

@app.get("/api/audit-logs")
async def list_audit_logs(
    limit: int = Query(100, ge=1, le=1000),
    target_id: Optional[str] = Query(None, alias="targetId"),
    admin: AdminUser = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    query = db.query(AuditLog)
    if admin.role != ROLE_SUPER_ADMIN:
        query = query.filter(AuditLog.dealer_id == admin.id)
    if target_id:
        query = query.filter(AuditLog.target_id == target_id)
    entries = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()

    return {
        "success": True,
        "logs": [
            {
                "id": entry.id,
                "actorId": entry.actor_id,
                "actorRole": entry.actor_role,
                "action": entry.action,
                "targetType": entry.target_type,
                "targetId": entry.target_id,
                "dealerId": entry.dealer_id,
                "details": load_json(entry.details),
                "createdAt": isoformat(entry.created_at),
            }
            for entry in entries
        ],
    }
