"""
Environment configuration for the EMI device fleet backend.

Values are read lazily from the environment and cached on first access.
Every URL handed to a device for provisioning is forced to HTTPS: Android 12+
refuses Device Owner provisioning from cleartext APK sources.
"""
import os
from typing import Optional


DEFAULT_JWT_SECRET = "dev-secret-change-in-production"
DEFAULT_ADMIN_COMPONENT = "com.securefinance.emilock.admin/com.securefinance.emilock.DeviceAdminReceiver"


class Config:
    """Application configuration with lazy environment lookups"""

    def __init__(self):
        self._server_url: Optional[str] = None
        self._provisioning_base_url: Optional[str] = None

    def reset(self):
        """Drop cached values so the next access re-reads the environment"""
        self._server_url = None
        self._provisioning_base_url = None

    @property
    def server_url(self) -> Optional[str]:
        """
        Public URL of this backend, from SERVER_URL.

        Returns:
            str: normalized URL without trailing slash, or None when unset
        """
        if self._server_url is None:
            manual_url = os.getenv("SERVER_URL")
            if manual_url:
                self._server_url = self._normalize_url(manual_url)
        return self._server_url

    @property
    def provisioning_base_url(self) -> Optional[str]:
        """
        Base URL used for APK download links in provisioning payloads.

        Priority:
        1. PROVISIONING_BASE_URL (required behind reverse proxies)
        2. SERVER_URL
        3. None - the caller infers the host from the incoming request

        The result is always https.
        """
        if self._provisioning_base_url is not None:
            return self._provisioning_base_url

        override = os.getenv("PROVISIONING_BASE_URL") or self.server_url
        if override:
            self._provisioning_base_url = self.force_https(override)
        return self._provisioning_base_url

    @staticmethod
    def _normalize_url(url: str) -> str:
        """
        Normalize URL to ensure it has a protocol prefix and no trailing slash.

        Args:
            url: URL that may or may not have a protocol

        Returns:
            str: URL with a scheme (https unless one was given), without trailing slash
        """
        url = url.strip()
        if url.startswith("http://") or url.startswith("https://"):
            return url.rstrip("/")
        return f"https://{url}".rstrip("/")

    @classmethod
    def force_https(cls, url: str) -> str:
        """Normalize a URL or bare host and rewrite any http:// scheme to https://"""
        url = cls._normalize_url(url)
        if url.startswith("http://"):
            url = "https://" + url[len("http://"):]
        return url

    def get_database_url(self) -> str:
        return os.getenv("DATABASE_URL", "sqlite:///./data.db")

    def get_jwt_secret(self) -> str:
        return os.getenv("JWT_SECRET", DEFAULT_JWT_SECRET)

    def get_jwt_expires_hours(self) -> int:
        return int(os.getenv("JWT_EXPIRES_HOURS", "24"))

    def get_apk_download_dir(self) -> str:
        return os.getenv("APK_DOWNLOAD_DIR", os.path.join(".", "public", "downloads"))

    def get_apk_file_name(self) -> str:
        return os.getenv("APK_FILE_NAME", "securefinance-admin-v2.1.2.apk")

    def get_apk_path(self) -> str:
        return os.path.join(self.get_apk_download_dir(), self.get_apk_file_name())

    def get_device_admin_component(self) -> str:
        return os.getenv("DEVICE_ADMIN_COMPONENT", DEFAULT_ADMIN_COMPONENT)

    def get_heartbeat_interval_seconds(self) -> int:
        return int(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "30"))

    def get_offline_after_seconds(self) -> int:
        # Three missed heartbeats
        default = self.get_heartbeat_interval_seconds() * 3
        return int(os.getenv("OFFLINE_AFTER_SECONDS", str(default)))

    def get_enrollment_token_ttl_hours(self) -> int:
        return int(os.getenv("ENROLLMENT_TOKEN_TTL_HOURS", "24"))

    def get_checksum_timeout_seconds(self) -> float:
        return float(os.getenv("CHECKSUM_TIMEOUT_SECONDS", "10"))

    def validate(self) -> tuple[bool, list[str], list[str]]:
        """
        Validate configuration.

        Returns:
            tuple: (is_valid, list_of_errors, list_of_warnings)
        """
        errors = []
        warnings = []

        jwt_secret = self.get_jwt_secret()
        if jwt_secret == DEFAULT_JWT_SECRET:
            warnings.append("JWT_SECRET using default value - set JWT_SECRET for production security")
        elif len(jwt_secret) < 32:
            warnings.append("JWT_SECRET should be at least 32 characters for security")

        for name in ("JWT_EXPIRES_HOURS", "HEARTBEAT_INTERVAL_SECONDS",
                     "OFFLINE_AFTER_SECONDS", "ENROLLMENT_TOKEN_TTL_HOURS"):
            raw = os.getenv(name)
            if raw is not None and (not raw.isdigit() or int(raw) <= 0):
                errors.append(f"{name} must be a positive integer, got {raw!r}")

        raw_timeout = os.getenv("CHECKSUM_TIMEOUT_SECONDS")
        if raw_timeout is not None:
            try:
                if float(raw_timeout) <= 0:
                    errors.append("CHECKSUM_TIMEOUT_SECONDS must be positive")
            except ValueError:
                errors.append(f"CHECKSUM_TIMEOUT_SECONDS is not a number: {raw_timeout!r}")

        db_url = self.get_database_url()
        if "sqlite" in db_url.lower():
            warnings.append("SQLite database detected - PostgreSQL recommended for production")

        if not self.provisioning_base_url:
            warnings.append("PROVISIONING_BASE_URL not set - APK links will use the request host")

        if not os.path.exists(self.get_apk_path()):
            warnings.append(f"Agent APK not found at {self.get_apk_path()} - provisioning will fail")

        return (len(errors) == 0, errors, warnings)


# Global config instance
config = Config()
