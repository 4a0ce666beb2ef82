import bcrypt
import jwt
import re
import time
from collections import defaultdict
from datetime import datetime, timezone, timedelta
from fastapi import Depends, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional

from config import config
from errors import AuthenticationFailed, PermissionDenied, ValidationFailed
from models import AdminUser, ROLE_SUPER_ADMIN, get_db
from observability import structured_logger, metrics

security = HTTPBearer(auto_error=False)

JWT_ALGORITHM = "HS256"
PASSCODE_PATTERN = re.compile(r"^\d{4}$")


class LoginRateLimiter:
    """Blocks an IP after repeated failed logins within a sliding window"""

    def __init__(self, max_failures=10, window_seconds=300, block_duration=900):
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self.block_duration = block_duration
        self.failures = defaultdict(list)
        self.blocked_until = {}

    def record_failure(self, ip: str) -> bool:
        now = time.time()
        window_start = now - self.window_seconds

        self.failures[ip] = [t for t in self.failures[ip] if t > window_start]
        self.failures[ip].append(now)

        if len(self.failures[ip]) >= self.max_failures:
            self.blocked_until[ip] = now + self.block_duration
            return True
        return False

    def is_blocked(self, ip: str) -> bool:
        if ip in self.blocked_until:
            if time.time() < self.blocked_until[ip]:
                return True
            del self.blocked_until[ip]
        return False

    def reset(self):
        self.failures.clear()
        self.blocked_until.clear()


login_rate_limiter = LoginRateLimiter()


def validate_passcode(passcode: str) -> None:
    if not passcode or not PASSCODE_PATTERN.match(passcode):
        raise ValidationFailed("VALIDATION_FAILED", "Passcode must be exactly 4 digits", field="passcode")


def hash_passcode(passcode: str) -> str:
    return bcrypt.hashpw(passcode.encode(), bcrypt.gensalt()).decode()


def verify_passcode(passcode: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(passcode.encode(), hashed.encode())
    except (ValueError, AttributeError):
        # Malformed hash - treat as mismatch
        return False


def create_jwt_token(admin: AdminUser) -> str:
    """Create a signed bearer token for an admin"""
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": admin.id,
        "role": admin.role,
        "exp": now + timedelta(hours=config.get_jwt_expires_hours()),
        "iat": now,
    }
    return jwt.encode(payload, config.get_jwt_secret(), algorithm=JWT_ALGORITHM)


def verify_jwt_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationFailed("NOT_AUTHENTICATED", "Token has expired")
    except jwt.InvalidTokenError:
        raise AuthenticationFailed("NOT_AUTHENTICATED", "Invalid token")


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def authenticate_admin(db: Session, email: str, passcode: str, ip: str) -> AdminUser:
    """
    Check email + passcode and stamp last_login.

    Raises AuthenticationFailed with a deliberately generic message for both an
    unknown email and a wrong passcode.
    """
    if login_rate_limiter.is_blocked(ip):
        metrics.inc_counter("admin_login_failures_total", {"reason": "ip_blocked"})
        raise AuthenticationFailed("INVALID_CREDENTIALS", "Too many failed logins. Try again later.")

    admin = db.query(AdminUser).filter(AdminUser.email == email.lower()).first()

    reason = None
    if not admin:
        reason = "user_not_found"
    elif not admin.is_active:
        reason = "account_deactivated"
    elif not verify_passcode(passcode, admin.passcode_hash):
        reason = "invalid_passcode"

    if reason:
        login_rate_limiter.record_failure(ip)
        metrics.inc_counter("admin_login_failures_total", {"reason": reason})
        structured_logger.log_security_event("LOGIN_FAILED", email=email, reason=reason, client_ip=ip)
        if reason == "account_deactivated":
            raise AuthenticationFailed("INVALID_CREDENTIALS", "Account is deactivated")
        raise AuthenticationFailed("INVALID_CREDENTIALS", "Invalid credentials")

    admin.last_login = datetime.now(timezone.utc)
    db.commit()
    db.refresh(admin)
    return admin


async def get_current_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
    db: Session = Depends(get_db)
) -> AdminUser:
    """Resolve the bearer token to an active admin"""
    if not credentials:
        raise AuthenticationFailed("NOT_AUTHENTICATED", "Not authenticated")

    payload = verify_jwt_token(credentials.credentials)
    user_id = payload.get("user_id")
    if not user_id:
        raise AuthenticationFailed("NOT_AUTHENTICATED", "Invalid token payload")

    admin = db.query(AdminUser).filter(AdminUser.id == user_id).first()
    if not admin or not admin.is_active:
        raise AuthenticationFailed("NOT_AUTHENTICATED", "User not found or deactivated")

    return admin


async def require_super_admin(admin: AdminUser = Depends(get_current_admin)) -> AdminUser:
    if admin.role != ROLE_SUPER_ADMIN:
        raise PermissionDenied("FORBIDDEN", "This action requires SUPER_ADMIN")
    return admin
