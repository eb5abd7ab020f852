"""Role-assignment change notification normalizer.

Converts a provider notification into a RoleChangeEvent or a Rejection.
Notifications reach us as Azure activity-log records for
``Microsoft.Authorization/roleAssignments`` operations, optionally wrapped
in an Event Grid event and/or a Drasi continuous-query change:

    Event Grid event  {"eventType": ..., "data": <drasi change | record>}
    Drasi change      {"op": "i", "payload": {"before": ..., "after": <record>}}
    Drasi batch       {"addedResults": [<record>, ...], "updatedResults": [...]}
    Event Hub batch   {"records": [<record>, ...]}

The activity-log record carries the role assignment details inside
``requestBody``, a JSON document encoded as a string, so it is decoded in a
second pass. Delete operations usually omit the request body; for those the
details come from ``responseBody`` or from the resource path.

normalize() is a pure function. Field presence checks stay in this module;
the rest of the responder only sees RoleChangeEvent.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from .config import MAX_PAYLOAD_SIZE_BYTES, MAX_RECORDS_PER_NOTIFICATION
from .events import (
    UNKNOWN_PRINCIPAL,
    ChangeKind,
    Rejection,
    RejectionReason,
    ResourceType,
    RoleChangeEvent,
)

logger = logging.getLogger(__name__)

ROLE_ASSIGNMENT_OPERATION_PREFIX = "MICROSOFT.AUTHORIZATION/ROLEASSIGNMENTS/"

GUID_PATTERN = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
_ROLE_DEFINITION_RE = re.compile(rf"/roleDefinitions/({GUID_PATTERN})", re.IGNORECASE)
_GUID_RE = re.compile(GUID_PATTERN)
_ROLE_ASSIGNMENT_SUFFIX_RE = re.compile(
    r"/providers/Microsoft\.Authorization/roleAssignments/[^/]+/?$", re.IGNORECASE
)

# Status fields checked in order; the first one present decides
_STATUS_FIELDS = ("status", "resultType", "operationType", "resultSignature")

# Provider types (lowercased namespace/type) that map onto the known set
_PROVIDER_RESOURCE_TYPES: dict[str, ResourceType] = {
    "microsoft.compute/virtualmachines": ResourceType.VIRTUAL_MACHINE,
    "microsoft.management/managementgroups": ResourceType.MANAGEMENT_GROUP,
}

_MAX_ENVELOPE_DEPTH = 4


def _get(mapping: Mapping[str, Any], *names: str) -> Any:
    """Case-insensitive lookup of the first present key among names."""
    lowered = {str(k).lower(): v for k, v in mapping.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value is not None:
            return value
    return None


def _get_str(mapping: Mapping[str, Any], *names: str) -> str | None:
    value = _get(mapping, *names)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _decode_json(value: Any) -> Any:
    """Decode a JSON string, passing non-strings through unchanged."""
    if isinstance(value, bytes | bytearray):
        if len(value) > MAX_PAYLOAD_SIZE_BYTES:
            return None
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        if len(value) > MAX_PAYLOAD_SIZE_BYTES:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


def _decode_body(value: Any) -> Mapping[str, Any]:
    """Decode an embedded request/response body into a mapping (possibly empty)."""
    decoded = _decode_json(value)
    if isinstance(decoded, Mapping):
        return decoded
    return {}


def _assignment_properties(body: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return the role assignment properties from a decoded body.

    Bodies appear both as ``{"Properties": {...}}`` and flattened.
    """
    nested = _get(body, "properties")
    if isinstance(nested, Mapping):
        return nested
    return body


def _unwrap(raw: Any) -> Mapping[str, Any] | Rejection:
    """Peel Event Grid and Drasi envelopes off a single notification."""
    record = _decode_json(raw)
    if not isinstance(record, Mapping):
        return Rejection(
            reason=RejectionReason.MALFORMED_PAYLOAD,
            message="Notification is not a JSON object",
        )

    for _ in range(_MAX_ENVELOPE_DEPTH):
        if _get(record, "op") is not None and isinstance(_get(record, "payload"), Mapping):
            # Drasi unpacked change: "i" insert, "u" update, "d" delete
            op = str(_get(record, "op")).lower()
            if op == "d":
                return Rejection(
                    reason=RejectionReason.NOT_APPLICABLE,
                    message="Query result removal does not describe a role change",
                )
            inner = _get(_get(record, "payload"), "after")
        elif _get(record, "data") is not None and (
            _get(record, "eventType", "type") is not None or _get(record, "specversion")
        ):
            # Event Grid or CloudEvents envelope
            inner = _get(record, "data")
        else:
            return record

        inner = _decode_json(inner)
        if not isinstance(inner, Mapping):
            return Rejection(
                reason=RejectionReason.MALFORMED_PAYLOAD,
                message="Notification envelope does not carry a JSON object",
            )
        record = inner

    return Rejection(
        reason=RejectionReason.MALFORMED_PAYLOAD,
        message="Notification envelopes nested too deeply",
    )


def _classify_change(operation_name: str) -> ChangeKind | None:
    upper = operation_name.upper()
    if upper.endswith("WRITE"):
        return ChangeKind.GRANTED
    if upper.endswith("DELETE"):
        return ChangeKind.REVOKED
    return None


def _operation_succeeded(record: Mapping[str, Any]) -> tuple[bool, str | None]:
    """Check the status fields, if any, for a success value."""
    for name in _STATUS_FIELDS:
        status = _get_str(record, name)
        if status is not None:
            return status.lower().startswith("succe"), status
    return True, None


def _extract_role_id(
    request: Mapping[str, Any],
    response: Mapping[str, Any],
    resource_path: str | None,
) -> str | None:
    for body in (request, response):
        role_id = _get_str(_assignment_properties(body), "roleDefinitionId")
        if role_id:
            return role_id

    if resource_path:
        match = _ROLE_DEFINITION_RE.search(resource_path)
        if match:
            return match.group(1).lower()
        guids = _GUID_RE.findall(resource_path)
        if guids:
            return guids[-1].lower()

    return None


def scope_from_resource_path(resource_path: str) -> str:
    """Strip the role assignment segment off an assignment resource id."""
    scope = _ROLE_ASSIGNMENT_SUFFIX_RE.sub("", resource_path.strip())
    return scope or "/"


def classify_resource_type(scope: str) -> tuple[str, bool]:
    """Classify a scope path into a resource type.

    Args:
        scope: Role assignment scope, e.g.
            /subscriptions/{sub}/resourceGroups/{rg}/providers/Microsoft.Compute/virtualMachines/{vm}

    Returns:
        Tuple of (resource_type, known). Unknown types are returned as the
        raw ``Namespace/type[/childType]`` string from the scope.
    """
    path = scope.strip().rstrip("/")
    if not path:
        return "root", False

    if "/providers/" in path.lower():
        # Last provider segment: Namespace/type/name[/childType/childName]
        idx = path.lower().rindex("/providers/")
        segments = [s for s in path[idx + len("/providers/"):].split("/") if s]
        if len(segments) < 2:
            return "unknown", False
        raw_type = "/".join([segments[0], *segments[1::2]])
        known = _PROVIDER_RESOURCE_TYPES.get(raw_type.lower())
        if known is not None:
            return known.value, True
        return raw_type, False

    segments = [s.lower() for s in path.split("/") if s]
    if len(segments) == 2 and segments[0] == "subscriptions":
        return ResourceType.SUBSCRIPTION.value, True
    if len(segments) == 4 and segments[0] == "subscriptions" and segments[2] == "resourcegroups":
        return ResourceType.RESOURCE_GROUP.value, True

    return "unknown", False


def normalize(raw: Any) -> RoleChangeEvent | Rejection:
    """Normalize one change notification.

    Args:
        raw: A single notification: a mapping, or JSON text decoding to one.
            Batched deliveries must be expanded with split_notification first.

    Returns:
        RoleChangeEvent for actionable role-assignment changes, otherwise a
        Rejection describing why the notification was dropped.
    """
    unwrapped = _unwrap(raw)
    if isinstance(unwrapped, Rejection):
        return unwrapped
    record = unwrapped

    properties = _get(record, "properties")
    if not isinstance(properties, Mapping):
        properties = {}

    correlation_id = _get_str(record, "correlationId") or "unknown"

    operation_name = _get_str(record, "operationName")
    if isinstance(_get(record, "operationName"), Mapping):
        # Some exports nest it as {"value": ..., "localizedValue": ...}
        operation_name = _get_str(_get(record, "operationName"), "value")
    if operation_name is None:
        return Rejection(
            reason=RejectionReason.NOT_APPLICABLE,
            message="Notification has no operation name",
            correlation_id=correlation_id,
        )

    if not operation_name.upper().startswith(ROLE_ASSIGNMENT_OPERATION_PREFIX):
        return Rejection(
            reason=RejectionReason.NOT_APPLICABLE,
            message=f"Not a role assignment operation: {operation_name}",
            correlation_id=correlation_id,
        )

    change_kind = _classify_change(operation_name)
    if change_kind is None:
        return Rejection(
            reason=RejectionReason.UNSUPPORTED_OPERATION,
            message=f"Unsupported role assignment operation: {operation_name}",
            correlation_id=correlation_id,
        )

    succeeded, status = _operation_succeeded(record)
    if not succeeded:
        return Rejection(
            reason=RejectionReason.INCOMPLETE_OPERATION,
            message=f"Operation status is {status!r}, waiting for success",
            correlation_id=correlation_id,
        )

    request = _decode_body(
        _get(record, "requestBody") or _get(properties, "requestBody")
    )
    response = _decode_body(
        _get(record, "responseBody") or _get(properties, "responseBody")
    )
    resource_path = _get_str(record, "resourceId") or _get_str(properties, "entity")

    role_id = _extract_role_id(request, response, resource_path)
    if role_id is None:
        return Rejection(
            reason=RejectionReason.MISSING_ROLE_ID,
            message="No role definition id in request body or resource path",
            correlation_id=correlation_id,
        )

    request_props = _assignment_properties(request)
    response_props = _assignment_properties(response)

    scope = _get_str(request_props, "scope") or _get_str(response_props, "scope")
    if scope is None and resource_path:
        scope = scope_from_resource_path(resource_path)
    if scope is None:
        return Rejection(
            reason=RejectionReason.NOT_APPLICABLE,
            message="Notification carries neither a scope nor a resource path",
            correlation_id=correlation_id,
        )

    principal_id = _get_str(request_props, "principalId") or _get_str(
        response_props, "principalId"
    )
    if principal_id is None:
        if change_kind is ChangeKind.GRANTED:
            return Rejection(
                reason=RejectionReason.MISSING_PRINCIPAL,
                message="Grant notification does not identify the principal",
                correlation_id=correlation_id,
            )
        principal_id = UNKNOWN_PRINCIPAL

    resource_type, known = classify_resource_type(scope)

    caller = _get_str(record, "caller")
    if caller is None:
        identity = _get(record, "identity")
        if isinstance(identity, Mapping) and isinstance(_get(identity, "claims"), Mapping):
            caller = _get_str(_get(identity, "claims"), "name")

    return RoleChangeEvent(
        role_id=role_id,
        change_kind=change_kind,
        scope=scope,
        principal_id=principal_id,
        correlation_id=correlation_id,
        resource_type=resource_type,
        resource_type_known=known,
        caller=caller,
        timestamp=_get_str(record, "time", "timestamp", "eventTimestamp"),
        assignment_id=_get_str(properties, "entity") or resource_path,
    )


def split_notification(raw: Any) -> list[Any]:
    """Expand a batched delivery into single notifications.

    Handles Event Hub ``records`` arrays, JSON arrays (Event Grid delivers
    events in arrays), and Drasi packed changes. Drasi ``deletedResults``
    are dropped since removal from the query result is not a role change.
    Anything unrecognized is returned as a single notification so that
    normalize() can reject it.
    """
    records = _split(_decode_json(raw) if isinstance(raw, str | bytes | bytearray) else raw, 0)
    if len(records) > MAX_RECORDS_PER_NOTIFICATION:
        logger.warning(
            "Notification batch truncated",
            extra={"record_count": len(records), "limit": MAX_RECORDS_PER_NOTIFICATION},
        )
        records = records[:MAX_RECORDS_PER_NOTIFICATION]
    return records


def _split(value: Any, depth: int) -> list[Any]:
    if value is None:
        return []
    if depth >= _MAX_ENVELOPE_DEPTH:
        return [value]

    if isinstance(value, list):
        out: list[Any] = []
        for item in value:
            out.extend(_split(item, depth + 1))
        return out

    if not isinstance(value, Mapping):
        return [value]

    records = _get(value, "records")
    if isinstance(records, list):
        return _split(records, depth + 1)

    added = _get(value, "addedResults")
    updated = _get(value, "updatedResults")
    if isinstance(added, list) or isinstance(updated, list):
        out = list(added or [])
        for change in updated or []:
            if isinstance(change, Mapping) and _get(change, "after") is not None:
                out.append(_get(change, "after"))
        return out

    # Event Grid envelope around a batch
    data = _decode_json(_get(value, "data"))
    if _get(value, "eventType") is not None and isinstance(data, Mapping | list):
        inner = _split(data, depth + 1)
        if len(inner) != 1 or inner[0] is not data:
            return inner

    return [value]
