"""
Tests for the enrollment reconciler: status reports, the enrollment callback
and the verification callback.
"""
import pytest
from datetime import timedelta
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from device_lifecycle import get_customer_device
from enrollment import effective_status, resolve_steps
from errors import ValidationFailed
from models import Customer, SimChange, utcnow, STATE_ACTIVE, STATE_LOCKED

IMEI = "356938035643809"


@pytest.fixture
def customer_id(client: TestClient, super_auth, create_customer_via_api) -> str:
    response = create_customer_via_api(super_auth, "C1", IMEI, dealerId="dealer-1")
    assert response.status_code == 201
    return "C1"


def steps_of(client: TestClient, headers, customer_id: str) -> dict:
    return client.get(f"/api/customers/{customer_id}", headers=headers).json()["deviceStatus"]["steps"]


class TestStatusReports:

    def test_steps_never_regress(self, client: TestClient, super_auth, customer_id):
        client.post(f"/api/customers/{customer_id}/status", json={"step": "details", "installProgress": 60})
        response = client.post(f"/api/customers/{customer_id}/status", json={"step": "qr_scanned", "installProgress": 20})

        assert response.status_code == 200
        status = response.json()["deviceStatus"]
        assert status["steps"]["detailsFetched"] is True
        assert status["steps"]["qrScanned"] is True
        assert status["installProgress"] == 60

    def test_merge_is_order_independent(self, client: TestClient, super_auth, create_customer_via_api):
        create_customer_via_api(super_auth, "A", "356938035643810")
        create_customer_via_api(super_auth, "B", "356938035643811")

        for step in ("qrScanned", "permissionsGranted", "qrScanned"):
            client.post("/api/customers/A/status", json={"step": step})
        for step in ("permissionsGranted", "qrScanned"):
            client.post("/api/customers/B/status", json={"step": step})

        assert steps_of(client, super_auth, "A") == steps_of(client, super_auth, "B")

    def test_admin_installed_completes_install_steps(self, client: TestClient, super_auth, customer_id):
        client.post(f"/api/customers/{customer_id}/status", json={"status": "ADMIN_INSTALLED"})

        steps = steps_of(client, super_auth, customer_id)
        assert steps["qrScanned"] and steps["appInstalled"] and steps["detailsFetched"]
        assert steps["imeiVerified"] is False

    def test_unknown_step_is_validation_error(self, client: TestClient, customer_id):
        response = client.post(f"/api/customers/{customer_id}/status", json={"step": "teleported"})

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_FAILED"

    def test_unknown_customer_is_not_found(self, client: TestClient):
        response = client.post("/api/customers/ghost/status", json={"step": "qr_scanned"})

        assert response.status_code == 404
        assert response.json()["error"] == "CUSTOMER_NOT_FOUND"

    def test_device_bound_alias_completes_everything(self):
        assert set(resolve_steps("deviceBound")) == {
            "qrScanned", "appInstalled", "appLaunched", "permissionsGranted",
            "detailsFetched", "imeiVerified", "deviceBound",
        }
        with pytest.raises(ValidationFailed):
            resolve_steps("bogus")


class TestEnrollmentCallback:

    def test_enrollment_marks_customer_enrolled(self, client: TestClient, super_auth, customer_id):
        response = client.post("/api/devices/enrolled", json={
            "customerId": customer_id,
            "imei": IMEI,
            "brand": "samsung",
            "model": "SM-A145F",
            "manufacturer": "Samsung",
            "androidVersion": 14,
            "sdkInt": 34,
            "androidId": "a1b2c3",
            "serial": "R58T90XYZ",
            "enrolledAt": "2026-10-19T08:00:00Z",
            "status": "enrolled",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["isEnrolled"] is True
        assert data["deviceState"] == STATE_ACTIVE
        status = data["deviceStatus"]
        assert status["status"] == "ADMIN_INSTALLED"
        assert status["technical"]["brand"] == "samsung"
        assert status["technical"]["osVersion"] == "14"
        assert status["steps"]["appInstalled"] is True
        assert status["steps"]["deviceBound"] is False

    def test_unknown_customer_fails_and_is_logged(self, client: TestClient, capture_logs):
        response = client.post("/api/devices/enrolled", json={"customerId": "ghost", "imei": IMEI})

        assert response.status_code == 404
        assert response.json()["error"] == "CUSTOMER_NOT_FOUND"
        failures = [log for log in capture_logs if log["event"] == "enrollment.failed"]
        assert failures and failures[0]["customer_id"] == "ghost"

    def test_imei_based_fallback(self, client: TestClient, customer_id):
        response = client.post("/api/devices/enrolled", json={"imei": IMEI, "brand": "xiaomi"})

        assert response.status_code == 200
        assert response.json()["customerId"] == customer_id

    def test_fallback_never_creates_customers(self, client: TestClient, test_db: Session):
        response = client.post("/api/devices/enrolled", json={"imei": "111111111111111"})

        assert response.status_code == 404
        assert test_db.query(Customer).count() == 0

    def test_repeated_enrollment_is_idempotent(self, client: TestClient, test_db: Session, customer_id):
        body = {"customerId": customer_id, "imei": IMEI, "enrolledAt": 1760860800000}
        first = client.post("/api/devices/enrolled", json=body)
        second = client.post("/api/devices/enrolled", json=body)

        assert first.status_code == second.status_code == 200
        assert second.json()["deviceState"] == STATE_ACTIVE
        assert first.json()["deviceId"] == second.json()["deviceId"]

    def test_older_technical_report_does_not_clobber_newer(self, client: TestClient, customer_id):
        client.post("/api/devices/enrolled", json={
            "customerId": customer_id, "imei": IMEI, "model": "NEW", "enrolledAt": "2026-10-19T10:00:00Z",
        })
        response = client.post("/api/devices/enrolled", json={
            "customerId": customer_id, "imei": IMEI, "model": "OLD", "enrolledAt": "2026-10-19T09:00:00Z",
        })

        technical = response.json()["deviceStatus"]["technical"]
        assert technical["model"] == "NEW"
        assert technical["reportedAt"].startswith("2026-10-19T10:00:00")

    def test_older_report_keeps_newer_imei_on_customer_and_device(self, client: TestClient, super_auth,
                                                                   test_db: Session, customer_id):
        client.post("/api/devices/enrolled", json={
            "customerId": customer_id, "imei": "356938035643111", "model": "NEW", "enrolledAt": "2026-10-19T10:00:00Z",
        })
        response = client.post("/api/devices/enrolled", json={
            "customerId": customer_id, "imei": "356938035643222", "model": "OLD", "enrolledAt": "2026-10-19T09:00:00Z",
        })

        assert response.status_code == 200
        assert response.json()["deviceStatus"]["technical"]["model"] == "NEW"
        data = client.get(f"/api/customers/{customer_id}", headers=super_auth).json()
        assert data["imei1"] == "356938035643111"
        assert data["expectedIMEI"] == IMEI
        assert get_customer_device(test_db, customer_id).imei1 == "356938035643111"

    @pytest.mark.parametrize("field", ["imei", "imei2"])
    def test_malformed_reported_imei_is_rejected(self, client: TestClient, super_auth, customer_id, field):
        response = client.post("/api/devices/enrolled", json={"customerId": customer_id, field: "not-an-imei"})

        assert response.status_code == 422
        data = client.get(f"/api/customers/{customer_id}", headers=super_auth).json()
        assert data["imei1"] == IMEI
        assert data["isEnrolled"] is False

    def test_blank_imei_reads_as_absent(self, client: TestClient, super_auth, customer_id):
        response = client.post("/api/devices/enrolled", json={"customerId": customer_id, "imei": "  "})

        assert response.status_code == 200
        assert client.get(f"/api/customers/{customer_id}", headers=super_auth).json()["imei1"] == IMEI

    def test_real_imei_overwrites_and_keeps_expected(self, client: TestClient, super_auth, customer_id):
        client.post("/api/devices/enrolled", json={"customerId": customer_id, "imei": "356938035643999"})

        data = client.get(f"/api/customers/{customer_id}", headers=super_auth).json()
        assert data["imei1"] == "356938035643999"
        assert data["expectedIMEI"] == IMEI

    def test_reported_imei_of_another_customer_conflicts(self, client: TestClient, super_auth, customer_id,
                                                          create_customer_via_api):
        create_customer_via_api(super_auth, "C2", "356938035643810")

        response = client.post("/api/devices/enrolled", json={"customerId": "C2", "imei": IMEI})

        assert response.status_code == 409
        assert response.json()["error"] == "DUPLICATE_IMEI"

    def test_locked_customer_enrolls_into_locked(self, client: TestClient, super_auth, customer_id):
        client.post(f"/api/customers/{customer_id}/command", json={"command": "lock"}, headers=super_auth)

        response = client.post("/api/devices/enrolled", json={"customerId": customer_id, "imei": IMEI})

        assert response.json()["deviceState"] == STATE_LOCKED
        assert response.json()["isLocked"] is True

    def test_removed_device_cannot_reenroll(self, client: TestClient, super_auth, test_db: Session, customer_id):
        client.post("/api/devices/enrolled", json={"customerId": customer_id, "imei": IMEI})
        device_id = get_customer_device(test_db, customer_id).device_id
        client.delete(f"/api/devices/{device_id}", headers=super_auth)

        response = client.post("/api/devices/enrolled", json={"customerId": customer_id, "imei": IMEI})

        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_TRANSITION"


class TestEnrollmentToken:

    def test_matching_token_is_accepted_and_marked_used(self, client: TestClient, super_auth, test_db: Session, customer_id):
        token = client.post(f"/api/customers/{customer_id}/enrollment-token", headers=super_auth).json()["enrollmentToken"]

        response = client.post("/api/devices/enrolled", json={
            "customerId": customer_id, "imei": IMEI, "enrollmentToken": token,
        })

        assert response.status_code == 200
        assert get_customer_device(test_db, customer_id).enrollment_token_used_at is not None

    def test_wrong_token_is_rejected(self, client: TestClient, super_auth, customer_id):
        client.post(f"/api/customers/{customer_id}/enrollment-token", headers=super_auth)

        response = client.post("/api/devices/enrolled", json={
            "customerId": customer_id, "imei": IMEI, "enrollmentToken": "not-the-token",
        })

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_ENROLLMENT_TOKEN"
        assert response.json()["reason"] == "token_mismatch"

    def test_expired_token_is_rejected(self, client: TestClient, super_auth, test_db: Session, customer_id):
        token = client.post(f"/api/customers/{customer_id}/enrollment-token", headers=super_auth).json()["enrollmentToken"]
        device = get_customer_device(test_db, customer_id)
        device.enrollment_token_expires_at = utcnow() - timedelta(hours=1)
        test_db.commit()

        response = client.post("/api/devices/enrolled", json={
            "customerId": customer_id, "imei": IMEI, "enrollmentToken": token,
        })

        assert response.status_code == 400
        assert response.json()["reason"] == "token_expired"


class TestVerification:

    def test_verified_device_is_connected(self, client: TestClient, super_auth, enrolled_customer):
        response = client.post(f"/api/customers/{enrolled_customer}/verify", json={
            "actualIMEI": "356938035643809",
            "simDetails": {"operator": "Jio", "serialNumber": "8991000000000000001"},
        })

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "VERIFIED"
        assert len(data["offlineLockToken"]) == 6
        assert len(data["offlineUnlockToken"]) == 6

        status = client.get(f"/api/customers/{enrolled_customer}", headers=super_auth).json()["deviceStatus"]
        assert status["status"] == "connected"
        assert status["steps"]["imeiVerified"] is True
        assert status["steps"]["deviceBound"] is True

    def test_mismatch_is_flagged_not_fatal(self, client: TestClient, super_auth, enrolled_customer):
        response = client.post(f"/api/customers/{enrolled_customer}/verify", json={"actualIMEI": "999999999999999"})

        assert response.status_code == 200
        assert response.json()["status"] == "MISMATCH"

        status = client.get(f"/api/customers/{enrolled_customer}", headers=super_auth).json()["deviceStatus"]
        assert status["status"] == "error"
        assert status["verificationStatus"] == "MISMATCH"
        assert "999999999999999" in status["errorMessage"]
        assert status["steps"]["appInstalled"] is True
        assert status["steps"]["imeiVerified"] is False

        heartbeat = client.post("/api/customers/heartbeat", json={"customerId": enrolled_customer})
        assert heartbeat.status_code == 200
        assert heartbeat.json()["ok"] is True

    def test_sim_swap_is_flagged(self, client: TestClient, test_db: Session, enrolled_customer):
        client.post(f"/api/customers/{enrolled_customer}/verify", json={
            "actualIMEI": "356938035643809", "simDetails": {"serialNumber": "SIM-A"},
        })
        response = client.post(f"/api/customers/{enrolled_customer}/verify", json={
            "actualIMEI": "356938035643809", "simDetails": {"serialNumber": "SIM-B", "operator": "Airtel"},
        })

        assert response.json()["status"] == "SIM_MISMATCH"
        change = test_db.query(SimChange).filter(SimChange.customer_id == enrolled_customer).one()
        assert change.previous_serial == "SIM-A"
        assert change.serial_number == "SIM-B"

    def test_offline_tokens_are_stable(self, client: TestClient, enrolled_customer):
        first = client.post(f"/api/customers/{enrolled_customer}/verify", json={}).json()
        second = client.post(f"/api/customers/{enrolled_customer}/verify", json={}).json()

        assert first["offlineLockToken"] == second["offlineLockToken"]


class TestEffectiveStatus:

    def test_online_goes_offline_after_silence(self, monkeypatch):
        monkeypatch.setenv("OFFLINE_AFTER_SECONDS", "90")
        customer = Customer(status="online", last_seen=utcnow() - timedelta(seconds=120))

        assert effective_status(customer) == "offline"

    def test_recent_heartbeat_stays_online(self, monkeypatch):
        monkeypatch.setenv("OFFLINE_AFTER_SECONDS", "90")
        customer = Customer(status="online", last_seen=utcnow() - timedelta(seconds=10))

        assert effective_status(customer) == "online"
