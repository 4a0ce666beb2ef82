"""
Provisioning Payload Builder.

Builds the Android Device Owner provisioning JSON that a factory-reset phone
reads from the setup-wizard QR code. The APK checksum must be the SHA-256 of
the file, Base64 encoded with the URL-safe alphabet and no padding, and the
download location must be https.
"""
import asyncio
import base64
import hashlib
import os
from dataclasses import dataclass
from threading import Lock
from typing import Optional

from config import config, Config
from errors import InfrastructureError
from observability import structured_logger, metrics

EXTRA_PREFIX = "android.app.extra."
KEY_COMPONENT_NAME = EXTRA_PREFIX + "PROVISIONING_DEVICE_ADMIN_COMPONENT_NAME"
KEY_DOWNLOAD_LOCATION = EXTRA_PREFIX + "PROVISIONING_DEVICE_ADMIN_PACKAGE_DOWNLOAD_LOCATION"
KEY_PACKAGE_CHECKSUM = EXTRA_PREFIX + "PROVISIONING_DEVICE_ADMIN_PACKAGE_CHECKSUM"
KEY_SKIP_ENCRYPTION = EXTRA_PREFIX + "PROVISIONING_SKIP_ENCRYPTION"
KEY_LEAVE_SYSTEM_APPS = EXTRA_PREFIX + "PROVISIONING_LEAVE_ALL_SYSTEM_APPS_ENABLED"
KEY_ADMIN_EXTRAS = EXTRA_PREFIX + "PROVISIONING_ADMIN_EXTRAS_BUNDLE"

CHUNK_SIZE = 1024 * 1024


def _apk_not_found(path: str) -> InfrastructureError:
    return InfrastructureError(
        "APK_NOT_FOUND",
        "Agent APK is missing on the server",
        hint=f"Deploy {os.path.basename(path)} into the APK download directory",
        path=path,
    )


def compute_apk_checksum(path: str) -> str:
    """
    URL-safe, unpadded Base64 of the SHA-256 digest of ``path``.

    Raises:
        InfrastructureError(APK_NOT_FOUND): the file does not exist
    """
    if not os.path.isfile(path):
        raise _apk_not_found(path)

    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
            digest.update(chunk)

    # urlsafe alphabet maps '+' -> '-' and '/' -> '_'
    return base64.urlsafe_b64encode(digest.digest()).decode("ascii").rstrip("=")


@dataclass
class _ChecksumEntry:
    mtime_ns: int
    size: int
    checksum: str


class ChecksumCache:
    """
    Thread-safe checksum cache keyed by path and invalidated whenever the
    file's mtime or size changes, so a replaced APK is re-hashed.
    """

    def __init__(self):
        self._entries: dict[str, _ChecksumEntry] = {}
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def get_or_compute(self, path: str) -> str:
        try:
            stat = os.stat(path)
        except FileNotFoundError:
            raise _apk_not_found(path)

        with self._lock:
            entry = self._entries.get(path)
            if entry and entry.mtime_ns == stat.st_mtime_ns and entry.size == stat.st_size:
                self.hits += 1
                return entry.checksum
            self.misses += 1

        checksum = compute_apk_checksum(path)

        with self._lock:
            self._entries[path] = _ChecksumEntry(stat.st_mtime_ns, stat.st_size, checksum)
        return checksum

    def clear(self):
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0


checksum_cache = ChecksumCache()


async def get_apk_checksum(path: Optional[str] = None, timeout: Optional[float] = None) -> str:
    """
    Checksum of the agent APK, computed off the event loop under a deadline.

    Raises:
        InfrastructureError(APK_NOT_FOUND): missing artifact
        InfrastructureError(CHECKSUM_FAILED): read error or deadline exceeded
    """
    path = path or config.get_apk_path()
    timeout = timeout if timeout is not None else config.get_checksum_timeout_seconds()

    if not os.path.isfile(path):
        raise _apk_not_found(path)

    try:
        return await asyncio.wait_for(asyncio.to_thread(checksum_cache.get_or_compute, path), timeout)
    except asyncio.TimeoutError:
        metrics.inc_counter("checksum_failures_total", {"reason": "timeout"})
        raise InfrastructureError(
            "CHECKSUM_FAILED",
            "Timed out computing the agent APK checksum",
            hint=f"Checksum did not finish within {timeout}s",
            path=path,
        )
    except OSError as e:
        metrics.inc_counter("checksum_failures_total", {"reason": "io_error"})
        raise InfrastructureError(
            "CHECKSUM_FAILED",
            "Failed to read the agent APK",
            hint=str(e),
            path=path,
        )


def resolve_base_url(request_host: Optional[str]) -> str:
    """
    Base URL for APK links: PROVISIONING_BASE_URL / SERVER_URL when set,
    otherwise the host the request arrived on. Always https.
    """
    configured = config.provisioning_base_url
    if configured:
        return configured
    if not request_host:
        raise InfrastructureError(
            "PROVISIONING_MISCONFIGURED",
            "Cannot infer the public host for provisioning",
            hint="Set PROVISIONING_BASE_URL",
        )
    return Config.force_https(request_host)


def build_provisioning_payload(customer_id: str, base_url: str, checksum: str) -> dict:
    """
    Assemble the provisioning payload. Pure: the same inputs always yield an
    identical dict (and identical JSON).
    """
    base_url = Config.force_https(base_url)
    download_url = f"{base_url}/downloads/{config.get_apk_file_name()}"

    return {
        KEY_COMPONENT_NAME: config.get_device_admin_component(),
        KEY_DOWNLOAD_LOCATION: download_url,
        KEY_PACKAGE_CHECKSUM: checksum,
        KEY_SKIP_ENCRYPTION: True,
        KEY_LEAVE_SYSTEM_APPS: True,
        KEY_ADMIN_EXTRAS: {
            "customerId": customer_id,
            "serverUrl": base_url,
        },
    }


async def generate_provisioning_payload(customer_id: str, request_host: Optional[str]) -> dict:
    base_url = resolve_base_url(request_host)
    checksum = await get_apk_checksum()
    payload = build_provisioning_payload(customer_id, base_url, checksum)

    structured_logger.log_event(
        "provisioning.payload",
        customer_id=customer_id,
        download_url=payload[KEY_DOWNLOAD_LOCATION],
        checksum=checksum
    )
    metrics.inc_counter("provisioning_payloads_total")
    return payload
