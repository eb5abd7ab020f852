"""Configuration management with validation.

Deployment settings come from the environment and are validated once at
startup. The role-action mapping itself lives in a YAML document (see
registry.py); this module only locates it.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_REGISTRY_PATH = "/config/role-actions.yaml"

DEFAULT_ACTION_TIMEOUT_SECONDS = 60
MIN_ACTION_TIMEOUT_SECONDS = 1
MAX_ACTION_TIMEOUT_SECONDS = 3600

# Bounded retries for transient Azure errors inside handlers
MAX_HANDLER_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 2

# Security constraints - enforced limits to prevent abuse
MAX_REGISTRY_FILE_SIZE_BYTES = 256 * 1024  # 256KB max role-action document
MAX_PAYLOAD_SIZE_BYTES = 1024 * 1024  # 1MB max webhook body
MAX_RECORDS_PER_NOTIFICATION = 100
MAX_RESOURCE_NAME_LENGTH = 80

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class SecurityConfig:
    """Security-related configuration with safe defaults.

    Authentication is always a managed identity (see security.py); the
    optional client id selects a user-assigned identity.
    """

    # User-assigned managed identity client id (None = system-assigned)
    managed_identity_client_id: str | None = None

    # Emit a security audit record for every executed action
    enable_audit_logging: bool = True


@dataclass(frozen=True)
class Config:
    """Responder configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing per event.
    """

    # Required fields
    subscription_id: str
    location: str

    # Role-action document
    registry_path: Path = field(default_factory=lambda: Path(DEFAULT_REGISTRY_PATH))

    # Behavior
    # Forces dry-run regardless of the document's settings.dryRun
    dry_run: bool = False
    log_level: str | None = None

    # Security configuration
    security: SecurityConfig = field(default_factory=SecurityConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if not self.registry_path.is_file():
            errors.append(f"Role-action document does not exist: {self.registry_path}")

        if self.log_level is not None and self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def log_level_value(self) -> int | None:
        """Numeric logging level for the LOG_LEVEL override, if set."""
        if self.log_level is None:
            return None
        return logging.getLevelName(self.log_level.upper())

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Subscription that hosts the bastion resources
            AZURE_LOCATION: Default region for created resources
            REGISTRY_PATH: Role-action YAML document (default: /config/role-actions.yaml)
            DRY_RUN: If "true", never mutate Azure resources (default: false)
            LOG_LEVEL: Overrides settings.logLevel from the document

        Security Variables:
            AZURE_CLIENT_ID: Client id of a user-assigned managed identity
            ENABLE_AUDIT_LOGGING: Emit security audit records (default: true)
        """

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            registry_path=Path(os.environ.get("REGISTRY_PATH", DEFAULT_REGISTRY_PATH)),
            dry_run=get_bool("DRY_RUN", False),
            log_level=os.environ.get("LOG_LEVEL") or None,
            security=SecurityConfig(
                managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
                enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
            ),
        )
