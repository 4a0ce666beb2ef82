"""
Customer CRUD tests: uniqueness, tenant scoping and delete semantics.
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from customers import update_customer
from device_lifecycle import get_customer_device
from models import Customer, Device, DeviceStateHistory, LockEvent, STATE_REMOVED, STATE_UNASSIGNED
from schemas import CustomerUpdate

IMEI = "356938035643809"


class TestCreateCustomer:

    def test_create_allocates_unassigned_device(self, client: TestClient, super_auth, test_db: Session, create_customer_via_api):
        response = create_customer_via_api(super_auth, "C1", IMEI, dealerId="dealer-1", expectedIMEI=IMEI)

        assert response.status_code == 201
        customer = response.json()["customer"]
        assert customer["id"] == "C1"
        assert customer["dealerId"] == "dealer-1"
        assert customer["expectedIMEI"] == IMEI
        assert customer["isEnrolled"] is False
        assert customer["device"]["state"] == STATE_UNASSIGNED
        assert customer["deviceStatus"]["status"] == "pending"

        device = test_db.query(Device).filter(Device.assigned_customer_id == "C1").one()
        assert device.dealer_id == "dealer-1"
        assert test_db.query(DeviceStateHistory).filter(DeviceStateHistory.device_id == device.device_id).count() == 1

    def test_duplicate_imei_is_rejected(self, client: TestClient, super_auth, test_db: Session, create_customer_via_api):
        assert create_customer_via_api(super_auth, "C1", IMEI).status_code == 201

        response = create_customer_via_api(super_auth, "C2", IMEI)

        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "DUPLICATE_IMEI"
        assert data["field"] == "imei1"
        assert IMEI in data["message"]
        assert test_db.query(Customer).filter(Customer.imei1 == IMEI).count() == 1
        assert test_db.query(Device).count() == 1

    def test_malformed_imei_is_rejected(self, client: TestClient, super_auth, create_customer_via_api):
        response = create_customer_via_api(super_auth, "C1", "12345")

        assert response.status_code == 422

    def test_generated_id_when_omitted(self, client: TestClient, super_auth):
        response = client.post("/api/customers", json={"name": "Anon", "phoneNo": "1", "imei1": IMEI}, headers=super_auth)

        assert response.status_code == 201
        assert response.json()["customer"]["id"]

    def test_admin_cannot_create_for_another_dealer(self, client: TestClient, dealer, dealer_auth, create_customer_via_api):
        response = create_customer_via_api(dealer_auth, "C1", IMEI, dealerId="dealer-2")

        assert response.status_code == 201
        assert response.json()["customer"]["dealerId"] == dealer.id

    def test_requires_authentication(self, client: TestClient, create_customer_via_api):
        response = create_customer_via_api({}, "C1", IMEI)

        assert response.status_code == 401
        assert response.json()["error"] == "NOT_AUTHENTICATED"


class TestReadAndUpdate:

    def test_list_is_tenant_scoped(self, client: TestClient, super_auth, dealer_auth, other_dealer, auth_for,
                                   create_customer_via_api):
        create_customer_via_api(dealer_auth, "MINE", IMEI)
        create_customer_via_api(auth_for(other_dealer), "THEIRS", "356938035643810")

        mine = client.get("/api/customers", headers=dealer_auth).json()
        everything = client.get("/api/customers", headers=super_auth).json()

        assert [c["id"] for c in mine] == ["MINE"]
        assert {c["id"] for c in everything} == {"MINE", "THEIRS"}

    def test_other_tenant_reads_as_not_found(self, client: TestClient, dealer_auth, other_dealer, auth_for,
                                             create_customer_via_api):
        create_customer_via_api(dealer_auth, "C1", IMEI)

        response = client.get("/api/customers/C1", headers=auth_for(other_dealer))

        assert response.status_code == 404
        assert response.json()["error"] == "CUSTOMER_NOT_FOUND"

    def test_patch_is_partial(self, client: TestClient, super_auth, create_customer_via_api):
        create_customer_via_api(super_auth, "C1", IMEI)

        response = client.patch("/api/customers/C1", json={"name": "Renamed", "paidEmis": 3}, headers=super_auth)

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Renamed"
        assert data["paidEmis"] == 3
        assert data["financeName"] == "Bajaj Finance"
        assert data["imei1"] == IMEI

    def test_patch_to_duplicate_imei_conflicts(self, client: TestClient, super_auth, create_customer_via_api):
        create_customer_via_api(super_auth, "C1", IMEI)
        create_customer_via_api(super_auth, "C2", "356938035643810")

        response = client.patch("/api/customers/C2", json={"imei1": IMEI}, headers=super_auth)

        assert response.status_code == 409
        assert response.json()["error"] == "DUPLICATE_IMEI"

    @pytest.mark.parametrize("field", ["imei1", "name", "phoneNo"])
    def test_patch_cannot_clear_required_fields(self, client: TestClient, super_auth, create_customer_via_api, field):
        create_customer_via_api(super_auth, "C1", IMEI)

        response = client.patch("/api/customers/C1", json={field: None}, headers=super_auth)

        assert response.status_code == 422
        assert client.get("/api/customers/C1", headers=super_auth).json()["imei1"] == IMEI

    def test_constraint_failure_without_imei_change_is_not_a_duplicate(self, test_db: Session, super_admin,
                                                                        create_customer_via_api, super_auth):
        create_customer_via_api(super_auth, "C1", IMEI)
        data = CustomerUpdate.model_construct(_fields_set={"name"}, name=None)

        with pytest.raises(IntegrityError):
            update_customer(test_db, super_admin, "C1", data)

    def test_detail_includes_histories(self, client: TestClient, super_auth, enrolled_customer):
        client.post(f"/api/customers/{enrolled_customer}/command", json={"command": "lock"}, headers=super_auth)

        data = client.get(f"/api/customers/{enrolled_customer}", headers=super_auth).json()

        assert data["device"]["state"] == "LOCKED"
        assert len(data["lockHistory"]) == 1
        assert data["simChangeHistory"] == []
        assert data["remoteCommand"]["command"] == "lock"


class TestDeleteCustomer:

    def test_enrolled_device_is_removed_not_deleted(self, client: TestClient, super_auth, test_db: Session, enrolled_customer):
        device_id = get_customer_device(test_db, enrolled_customer).device_id
        client.post(f"/api/customers/{enrolled_customer}/command", json={"command": "lock"}, headers=super_auth)

        response = client.delete(f"/api/customers/{enrolled_customer}", headers=super_auth)

        assert response.status_code == 200
        assert response.json()["removedDevices"] == [device_id]
        assert test_db.get(Customer, enrolled_customer) is None
        assert test_db.get(Device, device_id).state == STATE_REMOVED
        assert test_db.query(LockEvent).count() == 0
        states = [h.state for h in test_db.query(DeviceStateHistory).filter(
            DeviceStateHistory.device_id == device_id).order_by(DeviceStateHistory.id)]
        assert states[-1] == STATE_REMOVED

    def test_never_enrolled_device_is_deleted(self, client: TestClient, super_auth, test_db: Session, create_customer_via_api):
        create_customer_via_api(super_auth, "C1", IMEI)
        device_id = get_customer_device(test_db, "C1").device_id

        response = client.delete("/api/customers/C1", headers=super_auth)

        assert response.json()["deletedDevices"] == [device_id]
        assert test_db.get(Device, device_id) is None

    def test_imei_is_reusable_after_delete(self, client: TestClient, super_auth, create_customer_via_api):
        create_customer_via_api(super_auth, "C1", IMEI)
        client.delete("/api/customers/C1", headers=super_auth)

        assert create_customer_via_api(super_auth, "C2", IMEI).status_code == 201

    def test_delete_unknown_is_not_found(self, client: TestClient, super_auth):
        response = client.delete("/api/customers/ghost", headers=super_auth)

        assert response.status_code == 404
