"""
Runtime configuration for the SHA claims service.

All settings come from environment variables so the same code runs in the API
process, the background worker and the test suite.  Defaults are suitable for
local development against SQLite and a sandbox SHA endpoint.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_api_keys(raw: str) -> Dict[str, str]:
    """Parse ``key:role,key:role`` into a mapping of API key to role."""
    keys: Dict[str, str] = {}
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair or ":" not in pair:
            continue
        key, role = pair.split(":", 1)
        keys[key.strip()] = role.strip()
    return keys


DEFAULT_API_KEYS = (
    "demo-admin-key:admin,"
    "demo-claims-key:claims_manager,"
    "demo-clinical-key:clinical_officer,"
    "demo-reception-key:receptionist"
)


@dataclass
class Settings:
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./sha_claims.db"))

    # SHA integration
    sha_api_url: str = field(default_factory=lambda: os.getenv("SHA_API_URL", "https://api.sha.go.ke"))
    sha_api_key: str = field(default_factory=lambda: os.getenv("SHA_API_KEY", ""))
    sha_provider_code: str = field(default_factory=lambda: os.getenv("SHA_PROVIDER_CODE", "CLINIC001"))
    sha_timeout: float = field(default_factory=lambda: float(os.getenv("SHA_TIMEOUT", "30")))
    sha_require_invoice: bool = field(default_factory=lambda: _env_bool("SHA_REQUIRE_INVOICE", True))

    # Facility details stamped on claims
    clinic_name: str = field(default_factory=lambda: os.getenv("CLINIC_NAME", "Seth Clinic"))
    facility_level: str = field(default_factory=lambda: os.getenv("FACILITY_LEVEL", "Level2"))

    # Background jobs
    admin_email: str = field(default_factory=lambda: os.getenv("ADMIN_EMAIL", "admin@sethclinic.com"))
    backup_path: str = field(default_factory=lambda: os.getenv("BACKUP_PATH", "/tmp"))
    upload_folder: str = field(default_factory=lambda: os.getenv("UPLOAD_FOLDER", "uploads"))
    worker_poll_interval: float = field(default_factory=lambda: float(os.getenv("WORKER_POLL_INTERVAL", "2")))
    job_stall_timeout: float = field(default_factory=lambda: float(os.getenv("JOB_STALL_TIMEOUT", "900")))

    # Auditing and access
    audit_file: str = field(default_factory=lambda: os.getenv("AUDIT_FILE", "audit_log.jsonl"))
    api_keys: Dict[str, str] = field(default_factory=lambda: _parse_api_keys(os.getenv("API_KEYS", DEFAULT_API_KEYS)))

    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))


settings = Settings()
