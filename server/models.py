from datetime import datetime, timezone
from sqlalchemy import String, DateTime, Text, create_engine, Integer, Float, Index, Boolean
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from typing import Optional
import uuid

from config import config


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# Customer.status values
STATUS_PENDING = "pending"
STATUS_INSTALLING = "installing"
STATUS_CONNECTED = "connected"
STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"
STATUS_ERROR = "error"
STATUS_ADMIN_INSTALLED = "ADMIN_INSTALLED"

DEVICE_STATUSES = (
    STATUS_PENDING, STATUS_INSTALLING, STATUS_CONNECTED, STATUS_ONLINE,
    STATUS_OFFLINE, STATUS_ERROR, STATUS_ADMIN_INSTALLED,
)

# Ordered onboarding checklist: API name -> Customer column
ENROLLMENT_STEPS = (
    ("qrScanned", "step_qr_scanned"),
    ("appInstalled", "step_app_installed"),
    ("appLaunched", "step_app_launched"),
    ("permissionsGranted", "step_permissions_granted"),
    ("detailsFetched", "step_details_fetched"),
    ("imeiVerified", "step_imei_verified"),
    ("deviceBound", "step_device_bound"),
)

ROLE_SUPER_ADMIN = "SUPER_ADMIN"
ROLE_ADMIN = "ADMIN"


class AdminUser(Base):
    __tablename__ = "admin_users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    passcode_hash: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str] = mapped_column(String, nullable=False, default=ROLE_ADMIN)
    device_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_admin_role', 'role', 'is_active'),
    )


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    dealer_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)

    name: Mapped[str] = mapped_column(String, nullable=False)
    phone_no: Mapped[str] = mapped_column(String, nullable=False)
    aadhar_no: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    photo_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    documents: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Device facts
    imei1: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    expected_imei: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    imei2: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    mobile_model: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    device_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Finance
    finance_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    total_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    emi_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    emi_date: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_emis: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    paid_emis: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    emi_schedule: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lock state
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    offline_lock_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    offline_unlock_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Location
    location_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    location_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    location_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    location_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # SIM
    sim_operator: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    sim_serial: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    sim_phone_number: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    sim_imsi: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    sim_is_authorized: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    sim_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    features: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Enrollment state (deviceStatus)
    is_enrolled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    enrollment_token: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=STATUS_PENDING)
    last_seen: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    last_status_update: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    install_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    verification_status: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    tech_brand: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    tech_model: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    tech_os_version: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    tech_android_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    tech_serial: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    technical_reported_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    step_qr_scanned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    step_app_installed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    step_app_launched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    step_permissions_granted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    step_details_fetched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    step_imei_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    step_device_bound: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Single pending command slot
    remote_command: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    remote_command_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    remote_command_payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    remote_command_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_customer_dealer_created', 'dealer_id', 'created_at'),
    )


# Device.state values
STATE_UNASSIGNED = "UNASSIGNED"
STATE_PENDING = "PENDING"
STATE_ACTIVE = "ACTIVE"
STATE_LOCKED = "LOCKED"
STATE_REMOVED = "REMOVED"


class Device(Base):
    __tablename__ = "devices"

    device_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    platform: Mapped[str] = mapped_column(String, nullable=False, default="android")
    state: Mapped[str] = mapped_column(String, nullable=False, default=STATE_UNASSIGNED)
    dealer_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    assigned_customer_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)

    brand: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    model: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    manufacturer: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    os_version: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    sdk_int: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    imei1: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    imei2: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    meid: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    android_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    serial: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    sim_operator: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    sim_iccid: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    enrollment_token: Mapped[Optional[str]] = mapped_column(String, nullable=True, unique=True)
    enrollment_token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    enrollment_token_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    enrolled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_seen: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_device_dealer_state', 'dealer_id', 'state'),
    )


class DeviceStateHistory(Base):
    __tablename__ = "device_state_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    state: Mapped[str] = mapped_column(String, nullable=False)
    previous_state: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    __table_args__ = (
        Index('idx_state_history_device', 'device_id', 'changed_at'),
    )


class LockEvent(Base):
    __tablename__ = "lock_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    customer_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class SimChange(Base):
    __tablename__ = "sim_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    previous_serial: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    serial_number: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    operator: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    target_type: Mapped[str] = mapped_column(String, nullable=False)
    target_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    dealer_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_audit_target', 'target_type', 'target_id'),
    )


DATABASE_URL = config.get_database_url()

if "sqlite" in DATABASE_URL:
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=20,
        max_overflow=20,
        pool_pre_ping=True,    # Verify connections before use
        pool_recycle=3600,
        pool_timeout=30
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
