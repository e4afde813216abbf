"""
Application Configuration

Environment-driven settings for certificate generation, mail dispatch
and the template drafting assistant. Database settings live in
database/connection.py.
"""

import os
from typing import Optional


class AppSettings:
    """Application settings read from environment variables"""

    def __init__(self):
        # Certificate links
        self.verification_base_url = os.getenv(
            "VERIFICATION_BASE_URL", "https://certify.example.com/verify"
        ).rstrip("/")
        self.certificate_base_url = os.getenv(
            "CERTIFICATE_BASE_URL", "https://certify.example.com/certificates"
        ).rstrip("/")

        # Dataset limits
        self.max_dataset_rows = int(os.getenv("MAX_DATASET_ROWS", "50000"))

        # Mail transport
        self.mail_transport = os.getenv("MAIL_TRANSPORT", "log").lower()
        self.mail_from = os.getenv("MAIL_FROM", "Certify <no-reply@certify.example.com>")
        self.smtp_host = os.getenv("SMTP_HOST", "localhost")
        self.smtp_port = int(os.getenv("SMTP_PORT", "587"))
        self.smtp_user = os.getenv("SMTP_USER")
        self.smtp_password = os.getenv("SMTP_PASSWORD")
        self.smtp_use_tls = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
        self.smtp_timeout = float(os.getenv("SMTP_TIMEOUT", "15"))

    def validate_config(self) -> tuple[bool, Optional[str]]:
        """Validate application configuration"""
        if self.mail_transport not in ("smtp", "log"):
            return False, f"Unknown MAIL_TRANSPORT: {self.mail_transport}"
        if self.mail_transport == "smtp" and not self.smtp_host:
            return False, "SMTP_HOST is required when MAIL_TRANSPORT=smtp"
        if self.max_dataset_rows <= 0:
            return False, f"Invalid MAX_DATASET_ROWS: {self.max_dataset_rows}"
        return True, None


_settings: Optional[AppSettings] = None


def get_settings() -> AppSettings:
    """Get or create global application settings"""
    global _settings
    if _settings is None:
        _settings = AppSettings()
    return _settings


def reset_settings():
    """Drop cached settings so the next call re-reads the environment"""
    global _settings
    _settings = None
