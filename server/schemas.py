from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Any, Optional
import re

IMEI_PATTERN = re.compile(r"^\d{14,16}$")


class CamelModel(BaseModel):
    """Request/response models speak camelCase on the wire"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _stringify(v):
    # Agents sometimes send ids and versions as numbers
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    return v


def _check_imei(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if not IMEI_PATTERN.match(v):
        raise ValueError('IMEI must be 14-16 digits')
    return v


# --- Customers ---

class CustomerCreate(CamelModel):
    id: Optional[str] = Field(None, min_length=1, max_length=100)
    dealer_id: Optional[str] = Field(None, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    phone_no: str = Field(..., min_length=1, max_length=30)
    aadhar_no: Optional[str] = Field(None, max_length=30)
    address: Optional[str] = Field(None, max_length=1000)
    photo_url: Optional[str] = Field(None, max_length=1000)
    documents: Optional[list] = None
    imei1: str
    expected_imei: Optional[str] = Field(None, alias="expectedIMEI")
    imei2: Optional[str] = None
    mobile_model: Optional[str] = Field(None, max_length=200)
    device_name: Optional[str] = Field(None, max_length=200)
    finance_name: Optional[str] = Field(None, max_length=200)
    total_amount: Optional[float] = Field(None, ge=0)
    emi_amount: Optional[float] = Field(None, ge=0)
    emi_date: Optional[int] = Field(None, ge=1, le=31)
    total_emis: Optional[int] = Field(None, ge=0)
    paid_emis: Optional[int] = Field(None, ge=0)
    emi_schedule: Optional[list] = None

    @field_validator('imei1', 'expected_imei', 'imei2')
    @classmethod
    def validate_imei(cls, v):
        return _check_imei(v)


class CustomerUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    phone_no: Optional[str] = Field(None, min_length=1, max_length=30)
    aadhar_no: Optional[str] = Field(None, max_length=30)
    address: Optional[str] = Field(None, max_length=1000)
    photo_url: Optional[str] = Field(None, max_length=1000)
    documents: Optional[list] = None
    imei1: Optional[str] = None
    expected_imei: Optional[str] = Field(None, alias="expectedIMEI")
    imei2: Optional[str] = None
    mobile_model: Optional[str] = Field(None, max_length=200)
    device_name: Optional[str] = Field(None, max_length=200)
    finance_name: Optional[str] = Field(None, max_length=200)
    total_amount: Optional[float] = Field(None, ge=0)
    emi_amount: Optional[float] = Field(None, ge=0)
    emi_date: Optional[int] = Field(None, ge=1, le=31)
    total_emis: Optional[int] = Field(None, ge=0)
    paid_emis: Optional[int] = Field(None, ge=0)
    emi_schedule: Optional[list] = None

    @field_validator('name', 'phone_no', 'imei1')
    @classmethod
    def reject_null(cls, v):
        # May be omitted, but never cleared
        if v is None:
            raise ValueError('field cannot be null')
        return v

    @field_validator('imei1', 'expected_imei', 'imei2')
    @classmethod
    def validate_imei(cls, v):
        return _check_imei(v)


# --- Device-side reports ---

class StatusReport(CamelModel):
    status: Optional[str] = Field(None, max_length=50)
    step: Optional[str] = Field(None, max_length=50)
    install_progress: Optional[int] = Field(None, ge=0, le=100)
    error_message: Optional[str] = Field(None, max_length=1000)


class EnrollmentReport(CamelModel):
    customer_id: Optional[str] = Field(None, max_length=100)
    device_id: Optional[str] = Field(None, max_length=100)
    enrollment_token: Optional[str] = Field(None, max_length=200)
    brand: Optional[str] = Field(None, max_length=100)
    model: Optional[str] = Field(None, max_length=100)
    manufacturer: Optional[str] = Field(None, max_length=100)
    android_version: Optional[str] = Field(None, max_length=50)
    sdk_int: Optional[int] = None
    android_id: Optional[str] = Field(None, max_length=100)
    serial: Optional[str] = Field(None, max_length=100)
    imei: Optional[str] = Field(None, max_length=50)
    imei2: Optional[str] = Field(None, max_length=50)
    meid: Optional[str] = Field(None, max_length=50)
    enrolled_at: Any = None  # epoch ms, epoch s or ISO-8601
    status: Optional[str] = Field(None, max_length=50)

    @field_validator('customer_id', 'device_id', 'android_version', 'imei', 'imei2', 'meid', mode='before')
    @classmethod
    def coerce_numbers(cls, v):
        return _stringify(v)

    @field_validator('imei', 'imei2')
    @classmethod
    def validate_imei(cls, v):
        # Android 10+ agents often cannot read the IMEI and send it blank
        if v is not None and not v.strip():
            return None
        return _check_imei(v)


class VerifyRequest(CamelModel):
    actual_imei: Optional[str] = Field(None, alias="actualIMEI", max_length=50)
    sim_details: Optional[dict] = None
    model_details: Optional[str] = Field(None, max_length=200)

    @field_validator('actual_imei', mode='before')
    @classmethod
    def coerce_numbers(cls, v):
        return _stringify(v)


class HeartbeatPayload(CamelModel):
    # Only the id is required; every optional sub-document is applied best-effort
    customer_id: Optional[str] = Field(None, max_length=100)
    device_id: Optional[str] = Field(None, max_length=100)
    status: Optional[Any] = None
    location: Optional[Any] = None
    features: Optional[Any] = None
    sim: Optional[Any] = None
    step: Optional[Any] = None
    app_installed: Optional[Any] = None
    last_seen: Optional[Any] = None

    @field_validator('customer_id', 'device_id', mode='before')
    @classmethod
    def coerce_numbers(cls, v):
        return _stringify(v)


class HeartbeatResponse(CamelModel):
    ok: bool
    is_locked: bool
    status: Optional[str] = None
    command: Optional[str] = None
    command_id: Optional[str] = None
    command_payload: Optional[dict] = None
    next_heartbeat_seconds: int


class CommandRequest(CamelModel):
    command: str = Field(..., min_length=1, max_length=50)
    payload: Optional[dict] = None
    reason: Optional[str] = Field(None, max_length=500)


# --- Admin users ---

class AdminLoginRequest(CamelModel):
    email: str = Field(..., min_length=3, max_length=255)
    passcode: str = Field(..., max_length=10)


class AdminCreateRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=255)
    phone: Optional[str] = Field(None, max_length=30)
    passcode: str = Field(..., pattern=r"^\d{4}$")
    device_limit: int = Field(0, ge=0)

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        if '@' not in v:
            raise ValueError('Invalid email format')
        return v.strip().lower()


class AdminUpdateRequest(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    email: Optional[str] = Field(None, min_length=3, max_length=255)
    phone: Optional[str] = Field(None, max_length=30)
    passcode: Optional[str] = Field(None, pattern=r"^\d{4}$")
    is_active: Optional[bool] = None

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        if v is not None and '@' not in v:
            raise ValueError('Invalid email format')
        return v.strip().lower() if v else v


class DeviceLimitUpdate(CamelModel):
    device_limit: int = Field(..., ge=0)
