"""
Pytest configuration and shared fixtures for the fleet API tests.
"""
import pytest
import os
import sys
from typing import Callable, Dict, Generator
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from models import Base, get_db, AdminUser, ROLE_ADMIN, ROLE_SUPER_ADMIN
from main import app
from auth import hash_passcode, create_jwt_token, login_rate_limiter
from config import config
from observability import metrics
from provisioning import checksum_cache

PASSCODE = "1234"


@pytest.fixture(autouse=True)
def reset_process_state():
    """Process-wide singletons must not leak between tests"""
    login_rate_limiter.reset()
    metrics.reset()
    checksum_cache.clear()
    config.reset()
    yield
    config.reset()


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a clean test database for each test.
    Uses in-memory SQLite for fast test execution.
    """
    SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(tmp_path):
    """
    File-backed SQLite shared by several independent sessions, for tests that
    interleave two writers.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'fleet.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Create a test client with dependency overrides.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()


def _make_admin(db: Session, admin_id: str, email: str, role: str, device_limit: int = 0) -> AdminUser:
    admin = AdminUser(
        id=admin_id,
        name=f"Test {admin_id}",
        email=email,
        passcode_hash=hash_passcode(PASSCODE),
        role=role,
        device_limit=device_limit,
        is_active=True,
    )
    db.add(admin)
    db.commit()
    db.refresh(admin)
    return admin


@pytest.fixture(scope="function")
def super_admin(test_db: Session) -> AdminUser:
    return _make_admin(test_db, "super-1", "root@test.com", ROLE_SUPER_ADMIN)


@pytest.fixture(scope="function")
def dealer(test_db: Session) -> AdminUser:
    """ADMIN with room for two devices"""
    return _make_admin(test_db, "dealer-1", "dealer@test.com", ROLE_ADMIN, device_limit=2)


@pytest.fixture(scope="function")
def other_dealer(test_db: Session) -> AdminUser:
    return _make_admin(test_db, "dealer-2", "other@test.com", ROLE_ADMIN, device_limit=5)


@pytest.fixture(scope="function")
def super_auth(client: TestClient, super_admin: AdminUser) -> Dict[str, str]:
    """
    Return super admin authentication headers.
    """
    response = client.post("/api/admin/login", json={
        "email": "root@test.com",
        "passcode": PASSCODE
    })
    assert response.status_code == 200
    token = response.json()["token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def auth_for() -> Callable[[AdminUser], Dict[str, str]]:
    """Bearer headers for any admin without going through login"""
    def _auth(admin: AdminUser) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_jwt_token(admin)}"}
    return _auth


@pytest.fixture(scope="function")
def dealer_auth(dealer: AdminUser, auth_for) -> Dict[str, str]:
    return auth_for(dealer)


def customer_payload(customer_id: str, imei1: str, **extra) -> dict:
    payload = {
        "id": customer_id,
        "name": f"Customer {customer_id}",
        "phoneNo": "9876543210",
        "imei1": imei1,
        "financeName": "Bajaj Finance",
        "emiAmount": 1500,
        "totalEmis": 12,
    }
    payload.update(extra)
    return payload


@pytest.fixture(scope="function")
def create_customer_via_api(client: TestClient):
    """Factory: POST /api/customers and return the response"""
    def _create(headers: Dict[str, str], customer_id: str, imei1: str, **extra):
        return client.post("/api/customers", json=customer_payload(customer_id, imei1, **extra), headers=headers)
    return _create


@pytest.fixture(scope="function")
def enrolled_customer(client: TestClient, super_auth, create_customer_via_api) -> str:
    """A customer whose device went through the enrollment callback"""
    response = create_customer_via_api(super_auth, "C-ENR", "356938035643809", dealerId="dealer-1")
    assert response.status_code == 201

    response = client.post("/api/devices/enrolled", json={
        "customerId": "C-ENR",
        "imei": "356938035643809",
        "brand": "samsung",
        "model": "SM-A145F",
        "androidVersion": "14",
        "sdkInt": 34,
        "enrolledAt": 1760860800000,
    })
    assert response.status_code == 200
    return "C-ENR"


@pytest.fixture(scope="function")
def apk_file(tmp_path, monkeypatch):
    """Agent APK on disk, with the download directory pointed at it"""
    download_dir = tmp_path / "downloads"
    download_dir.mkdir()
    apk = download_dir / "agent.apk"
    apk.write_bytes(b"PK\x03\x04" + bytes(range(256)) * 64)

    monkeypatch.setenv("APK_DOWNLOAD_DIR", str(download_dir))
    monkeypatch.setenv("APK_FILE_NAME", "agent.apk")
    monkeypatch.delenv("PROVISIONING_BASE_URL", raising=False)
    monkeypatch.delenv("SERVER_URL", raising=False)
    config.reset()
    checksum_cache.clear()
    return apk


@pytest.fixture(scope="function")
def capture_logs(monkeypatch):
    """
    Capture structured logs emitted during tests.
    """
    logs = []

    from observability import StructuredLogger

    original_log_event = StructuredLogger.log_event

    def capture_log_event(self, event: str, level: str = "INFO", **fields):
        logs.append({
            "event": event,
            "level": level,
            **fields
        })
        original_log_event(self, event, level, **fields)

    monkeypatch.setattr(StructuredLogger, "log_event", capture_log_event)

    return logs
