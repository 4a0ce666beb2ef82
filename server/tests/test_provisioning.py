"""
Tests for the Device Owner provisioning payload.
"""
import base64
import hashlib
import json
import pytest
from fastapi.testclient import TestClient

from config import Config
from errors import InfrastructureError
from provisioning import (
    KEY_ADMIN_EXTRAS, KEY_COMPONENT_NAME, KEY_DOWNLOAD_LOCATION, KEY_LEAVE_SYSTEM_APPS,
    KEY_PACKAGE_CHECKSUM, KEY_SKIP_ENCRYPTION, build_provisioning_payload, checksum_cache,
    compute_apk_checksum, resolve_base_url,
)


class TestChecksum:

    def test_checksum_is_deterministic_and_url_safe(self, apk_file):
        first = compute_apk_checksum(str(apk_file))
        second = compute_apk_checksum(str(apk_file))

        assert first == second
        assert "+" not in first
        assert "/" not in first
        assert "=" not in first

    def test_checksum_matches_sha256(self, apk_file):
        expected = base64.b64encode(hashlib.sha256(apk_file.read_bytes()).digest()).decode()
        expected = expected.replace("+", "-").replace("/", "_").rstrip("=")

        assert compute_apk_checksum(str(apk_file)) == expected

    def test_missing_apk_raises_apk_not_found(self, tmp_path):
        with pytest.raises(InfrastructureError) as exc_info:
            compute_apk_checksum(str(tmp_path / "missing.apk"))

        assert exc_info.value.code == "APK_NOT_FOUND"
        assert exc_info.value.status_code == 500
        assert "hint" in exc_info.value.details

    def test_cache_hits_until_file_changes(self, apk_file):
        checksum = checksum_cache.get_or_compute(str(apk_file))
        assert checksum_cache.get_or_compute(str(apk_file)) == checksum
        assert checksum_cache.hits == 1

        apk_file.write_bytes(b"a different build")
        assert checksum_cache.get_or_compute(str(apk_file)) != checksum


class TestHttpsForcing:

    @pytest.mark.parametrize("url,expected", [
        ("http://fleet.example.com", "https://fleet.example.com"),
        ("https://fleet.example.com/", "https://fleet.example.com"),
        ("fleet.example.com", "https://fleet.example.com"),
    ])
    def test_force_https(self, url, expected):
        assert Config.force_https(url) == expected

    def test_configured_base_url_is_forced_to_https(self, apk_file, monkeypatch):
        monkeypatch.setenv("PROVISIONING_BASE_URL", "http://proxy.example.com")

        assert resolve_base_url("internal-host:8000") == "https://proxy.example.com"

    def test_request_host_used_when_unconfigured(self, apk_file):
        assert resolve_base_url("fleet.example.com") == "https://fleet.example.com"

    def test_no_host_at_all_is_misconfiguration(self, apk_file):
        with pytest.raises(InfrastructureError) as exc_info:
            resolve_base_url(None)

        assert exc_info.value.code == "PROVISIONING_MISCONFIGURED"


class TestPayload:

    def test_payload_shape(self, apk_file):
        payload = build_provisioning_payload("C1", "http://fleet.example.com", "abc_-")

        assert payload[KEY_DOWNLOAD_LOCATION] == "https://fleet.example.com/downloads/agent.apk"
        assert payload[KEY_PACKAGE_CHECKSUM] == "abc_-"
        assert payload[KEY_SKIP_ENCRYPTION] is True
        assert payload[KEY_LEAVE_SYSTEM_APPS] is True
        assert payload[KEY_COMPONENT_NAME].endswith("DeviceAdminReceiver")
        assert payload[KEY_ADMIN_EXTRAS] == {"customerId": "C1", "serverUrl": "https://fleet.example.com"}

    def test_endpoint_is_idempotent(self, client: TestClient, apk_file, super_auth, create_customer_via_api):
        create_customer_via_api(super_auth, "C1", "356938035643809")

        first = client.get("/api/provisioning/payload/C1", headers=super_auth)
        second = client.get("/api/provisioning/payload/C1", headers=super_auth)

        assert first.status_code == 200
        assert first.content == second.content
        data = first.json()
        assert data[KEY_DOWNLOAD_LOCATION] == "https://testserver/downloads/agent.apk"
        assert data[KEY_ADMIN_EXTRAS]["customerId"] == "C1"
        assert json.dumps(data)

    def test_endpoint_missing_apk_is_5xx_with_hint(self, client: TestClient, apk_file, super_auth, create_customer_via_api):
        create_customer_via_api(super_auth, "C1", "356938035643809")
        apk_file.unlink()

        response = client.get("/api/provisioning/payload/C1", headers=super_auth)

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "APK_NOT_FOUND"
        assert "agent.apk" in data["hint"]

    def test_endpoint_requires_auth(self, client: TestClient, apk_file):
        response = client.get("/api/provisioning/payload/C1")

        assert response.status_code == 401

    def test_other_tenant_cannot_provision(self, client: TestClient, apk_file, dealer_auth, other_dealer, auth_for,
                                           create_customer_via_api):
        create_customer_via_api(dealer_auth, "C1", "356938035643809")

        response = client.get("/api/provisioning/payload/C1", headers=auth_for(other_dealer))

        assert response.status_code == 404
        assert response.json()["error"] == "CUSTOMER_NOT_FOUND"
