"""Role-action registry loading and lookup.

The registry maps role definition ids to the ordered actions to run when the
role is granted or revoked. It is loaded once at startup and is read-only
afterwards. Every problem in the document is a ConfigurationError raised at
load time; nothing is deferred until an event arrives.

Role ids are matched by suffix because the same role appears behind different
path prefixes depending on the event source:

    1c0163c0-47e6-4577-8991-ea5c82e286e4
    /subscriptions/{sub}/providers/Microsoft.Authorization/roleDefinitions/1c0163c0-...
    /providers/Microsoft.Authorization/roleDefinitions/1c0163c0-...

Two rules whose role ids are suffixes of one another would make lookup
ambiguous, so the loader rejects them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_REGISTRY_FILE_SIZE_BYTES, ConfigurationError
from .events import ResourceType
from .models import ActionConfig, RoleActionDocument

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleActionRule:
    """Configured response to changes of one role."""

    role_id: str
    display_name: str
    supported_resource_types: frozenset[str]
    actions_on_grant: tuple[str, ...]
    actions_on_revoke: tuple[str, ...]

    def matches(self, role_id: str) -> bool:
        """Check whether an event's role id ends with this rule's role id."""
        return role_id.strip().lower().endswith(self.role_id.lower())


@dataclass(frozen=True)
class ActionSettings:
    """Per-action settings resolved from the document."""

    name: str
    enabled: bool = True
    timeout_seconds: int | None = None
    parameters: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class Registry:
    """Immutable role-action registry."""

    rules: tuple[RoleActionRule, ...]
    actions: Mapping[str, ActionSettings]
    dry_run: bool = False
    log_level: str = "INFO"
    action_timeout_seconds: int = 60

    def lookup(self, role_id: str) -> RoleActionRule | None:
        """Find the rule whose role id is a suffix of the given role id.

        Load-time validation guarantees at most one rule matches.
        """
        for rule in self.rules:
            if rule.matches(role_id):
                return rule
        return None

    def action_settings(self, name: str) -> ActionSettings:
        """Settings for an action; unlisted actions are enabled with no parameters."""
        settings = self.actions.get(name)
        if settings is None:
            return ActionSettings(name=name)
        return settings

    def timeout_for(self, name: str) -> int:
        """Timeout in seconds for one invocation of the named action."""
        override = self.action_settings(name).timeout_seconds
        return override if override is not None else self.action_timeout_seconds

    @property
    def role_ids(self) -> list[str]:
        return [rule.role_id for rule in self.rules]


def _check_suffix_uniqueness(rules: list[RoleActionRule]) -> list[str]:
    errors: list[str] = []
    for i, first in enumerate(rules):
        for second in rules[i + 1:]:
            a = first.role_id.lower()
            b = second.role_id.lower()
            if a.endswith(b) or b.endswith(a):
                errors.append(
                    f"roleId '{first.role_id}' and roleId '{second.role_id}' are ambiguous: "
                    "one is a suffix of the other"
                )
    return errors


def load_registry(document: RoleActionDocument, handler_names: Iterable[str]) -> Registry:
    """Build a registry from a validated document.

    Args:
        document: Parsed configuration document.
        handler_names: Names of the registered action handlers.

    Returns:
        Immutable Registry.

    Raises:
        ConfigurationError: If an action is unknown, a resource type is not
            supported, or two role ids are ambiguous.
    """
    known_actions = frozenset(handler_names)
    known_types = ResourceType.values()
    errors: list[str] = []

    for action_name in document.actions:
        if action_name not in known_actions:
            errors.append(f"actions.{action_name}: no handler registered for this action")

    rules: list[RoleActionRule] = []
    for index, role in enumerate(document.roles):
        location = f"roles[{index}] ({role.display_name or role.role_id})"

        for action_name in [*role.actions_on_grant, *role.actions_on_revoke]:
            if action_name not in known_actions:
                errors.append(
                    f"{location}: unknown action '{action_name}'. "
                    f"Valid actions: {sorted(known_actions)}"
                )

        for resource_type in role.supported_resource_types:
            if resource_type not in known_types:
                errors.append(
                    f"{location}: unsupported resource type '{resource_type}'. "
                    f"Valid types: {sorted(known_types)}"
                )

        rules.append(
            RoleActionRule(
                role_id=role.role_id,
                display_name=role.display_name,
                supported_resource_types=frozenset(role.supported_resource_types),
                actions_on_grant=tuple(role.actions_on_grant),
                actions_on_revoke=tuple(role.actions_on_revoke),
            )
        )

    errors.extend(_check_suffix_uniqueness(rules))

    if errors:
        raise ConfigurationError(
            "Role-action registry validation failed:\n  - " + "\n  - ".join(errors)
        )

    actions = {
        name: _to_action_settings(name, action) for name, action in document.actions.items()
    }

    registry = Registry(
        rules=tuple(rules),
        actions=MappingProxyType(actions),
        dry_run=document.settings.dry_run,
        log_level=document.settings.log_level,
        action_timeout_seconds=document.settings.action_timeout_seconds,
    )
    logger.info(
        "Loaded role-action registry",
        extra={
            "rule_count": len(rules),
            "role_ids": registry.role_ids,
            "dry_run": registry.dry_run,
        },
    )
    return registry


def _to_action_settings(name: str, action: ActionConfig) -> ActionSettings:
    return ActionSettings(
        name=name,
        enabled=action.enabled,
        timeout_seconds=action.timeout_seconds,
        parameters=MappingProxyType(dict(action.parameters)),
    )


def parse_registry_document(raw_data: Any, source: str = "<document>") -> RoleActionDocument:
    """Validate raw YAML data into a RoleActionDocument.

    Supports both a flat document and a Kubernetes-style wrapper with
    apiVersion/kind/spec, in which case the spec section is used.

    Raises:
        ConfigurationError: If the data is not a valid document.
    """
    if not isinstance(raw_data, dict):
        raise ConfigurationError(f"Role-action document must be a YAML mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise ConfigurationError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = raw_data

    try:
        return RoleActionDocument.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise ConfigurationError(f"Validation failed for {source}:\n{error_list}") from e


def load_registry_file(path: Path, handler_names: Iterable[str]) -> Registry:
    """Load and validate the role-action document from YAML.

    Args:
        path: Path of the YAML document.
        handler_names: Names of the registered action handlers.

    Returns:
        Validated Registry.

    Raises:
        ConfigurationError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise ConfigurationError(f"Role-action document not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigurationError(f"Failed to stat role-action document {path}: {e}") from e

    if file_size > MAX_REGISTRY_FILE_SIZE_BYTES:
        raise ConfigurationError(
            f"Role-action document exceeds maximum size of "
            f"{MAX_REGISTRY_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read role-action document {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    document = parse_registry_document(raw_data, source=str(path))
    return load_registry(document, handler_names)
