"""Pydantic models for the role-action configuration document.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. A plain, immutable Registry built from them in registry.py
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .config import (
    DEFAULT_ACTION_TIMEOUT_SECONDS,
    MAX_ACTION_TIMEOUT_SECONDS,
    MIN_ACTION_TIMEOUT_SECONDS,
    VALID_LOG_LEVELS,
)


class GlobalSettings(BaseModel):
    """Global toggles applied to every event."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    dry_run: bool = Field(False, alias="dryRun")
    log_level: str = Field("INFO", alias="logLevel")
    action_timeout_seconds: Annotated[
        int,
        Field(
            ge=MIN_ACTION_TIMEOUT_SECONDS,
            le=MAX_ACTION_TIMEOUT_SECONDS,
            alias="actionTimeoutSeconds",
        ),
    ] = DEFAULT_ACTION_TIMEOUT_SECONDS

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"logLevel must be one of {list(VALID_LOG_LEVELS)}")
        return level


class ActionConfig(BaseModel):
    """Per-action enable flag, timeout override and default parameters."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    enabled: bool = True
    timeout_seconds: Annotated[
        int | None,
        Field(
            ge=MIN_ACTION_TIMEOUT_SECONDS,
            le=MAX_ACTION_TIMEOUT_SECONDS,
            alias="timeoutSeconds",
        ),
    ] = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class RoleRuleConfig(BaseModel):
    """Actions to run when a given role is granted or revoked."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    role_id: Annotated[str, Field(min_length=1, alias="roleId")]
    display_name: str = Field("", alias="displayName")
    supported_resource_types: list[str] = Field(
        default_factory=list, alias="supportedResourceTypes"
    )
    actions_on_grant: list[str] = Field(default_factory=list, alias="actionsOnGrant")
    actions_on_revoke: list[str] = Field(default_factory=list, alias="actionsOnRevoke")

    @field_validator("role_id")
    @classmethod
    def validate_role_id(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("roleId cannot be blank")
        return stripped


class RoleActionDocument(BaseModel):
    """Top-level role-action configuration document."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    settings: GlobalSettings = Field(default_factory=GlobalSettings)
    actions: dict[str, ActionConfig] = Field(default_factory=dict)
    roles: list[RoleRuleConfig] = Field(default_factory=list)
