"""End-to-end tests for RoleChangeResponder against the Azure mock."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from unittest import mock

import pytest
from azure_mock import MOCK_SUBSCRIPTION_ID, MockAzureContext
from payloads import (
    READER_ROLE,
    SUBSCRIPTION_ID,
    VM_ADMIN_LOGIN_ROLE,
    VM_USER_LOGIN_ROLE,
    activity_log_record,
    drasi_change,
    event_grid_event,
    vm_scope,
)

from bastion_responder.config import Config, ConfigurationError
from bastion_responder.events import RejectionReason
from bastion_responder.pipeline import (
    BUILTIN_ACTIONS,
    ProcessingStatus,
    RoleChangeResponder,
)
from bastion_responder.resolver import SkipReason
from bastion_responder.security import FORBIDDEN_CREDENTIAL_ENV_VARS, SecretlessViolationError

SAMPLE_REGISTRY = Path(__file__).parent.parent / "config" / "role-actions.yaml"


@pytest.fixture(autouse=True)
def secretless_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure no credential secrets leak in from the host environment."""
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        monkeypatch.delenv(env_var, raising=False)


@pytest.fixture(autouse=True)
def no_sleep() -> Generator[None, None, None]:
    with mock.patch("bastion_responder.handlers.base.time.sleep"):
        yield


@pytest.fixture
def azure() -> Generator[MockAzureContext, None, None]:
    with MockAzureContext() as ctx:
        ctx.state.add_vm("rg-app", "vm-1", vnet_name="vnet-app")
        ctx.state.add_vm("rg-app", "vm-2", vnet_name="vnet-app")
        yield ctx


def _responder(
    registry_path: Path = SAMPLE_REGISTRY, dry_run: bool = False
) -> RoleChangeResponder:
    config = Config(
        subscription_id=MOCK_SUBSCRIPTION_ID,
        location="westeurope",
        registry_path=registry_path,
        dry_run=dry_run,
    )
    return RoleChangeResponder.from_config(config)


def _revoke_record(**kwargs: object) -> dict:
    return activity_log_record(
        operation="DELETE", include_request_body=False, include_response_body=True, **kwargs
    )


class TestScenarios:
    """Grant, revoke, unmonitored role and malformed payload end to end."""

    @pytest.mark.asyncio
    async def test_grant_creates_bastion(self, azure: MockAzureContext) -> None:
        """Test that a monitored grant on a VM creates a bastion."""
        responder = _responder()

        [result] = await responder.process(activity_log_record())

        assert result.status == ProcessingStatus.COMPLETED
        assert result.summary is not None
        assert [o.action_name for o in result.summary.outcomes] == [
            "create-bastion",
            "log-role-change",
        ]
        assert result.summary.all_succeeded
        create = result.summary.outcome_for("create-bastion")
        assert create.details["skipped"] is False
        assert azure.state.count("create_bastion") == 1

    @pytest.mark.asyncio
    async def test_revoke_removes_bastion(self, azure: MockAzureContext) -> None:
        """Test that revoking the only grant removes the bastion."""
        responder = _responder()
        await responder.process(activity_log_record())

        [result] = await responder.process(_revoke_record())

        assert result.status == ProcessingStatus.COMPLETED
        cleanup = result.summary.outcome_for("cleanup-bastion")
        assert cleanup.success is True
        assert cleanup.details["removed"] is True
        assert azure.state.bastion_hosts == {}

    @pytest.mark.asyncio
    async def test_unmonitored_role_skipped(self, azure: MockAzureContext) -> None:
        """Test that a grant of an unmonitored role runs no handler."""
        responder = _responder()

        [result] = await responder.process(activity_log_record(role_id=READER_ROLE))

        assert result.status == ProcessingStatus.SKIPPED
        assert result.skip.reason == SkipReason.ROLE_NOT_CONFIGURED
        assert result.summary is None
        assert azure.state.operations == []

    @pytest.mark.asyncio
    async def test_missing_operation_name_rejected(self, azure: MockAzureContext) -> None:
        """Test that a payload without an operation name halts before resolution."""
        responder = _responder()
        record = activity_log_record()
        del record["operationName"]

        with mock.patch("bastion_responder.pipeline.resolve") as resolve:
            [result] = await responder.process(record)

        assert result.status == ProcessingStatus.REJECTED
        assert result.rejection.reason == RejectionReason.NOT_APPLICABLE
        resolve.assert_not_called()
        assert azure.state.operations == []


class TestDryRun:
    """Tests for dry-run mode end to end."""

    @pytest.mark.asyncio
    async def test_dry_run_flag_never_mutates(self, azure: MockAzureContext) -> None:
        """Test that the DRY_RUN flag yields a plan and no create calls."""
        responder = _responder(dry_run=True)

        [result] = await responder.process(activity_log_record())

        assert responder.dry_run is True
        assert result.status == ProcessingStatus.COMPLETED
        assert result.summary.dry_run is True
        create = result.summary.outcome_for("create-bastion")
        assert create.success is True
        assert create.details["would_create"] is True
        assert azure.state.operations == []

    @pytest.mark.asyncio
    async def test_document_dry_run(self, azure: MockAzureContext, tmp_path: Path) -> None:
        """Test that settings.dryRun in the document also forces dry-run."""
        registry_path = tmp_path / "role-actions.yaml"
        registry_path.write_text(
            SAMPLE_REGISTRY.read_text().replace("dryRun: false", "dryRun: true")
        )
        responder = _responder(registry_path=registry_path)

        [result] = await responder.process(activity_log_record())

        assert responder.dry_run is True
        assert result.summary.dry_run is True
        assert azure.state.count("create_bastion") == 0

    @pytest.mark.asyncio
    async def test_dry_run_cleanup(self, azure: MockAzureContext) -> None:
        """Test that a dry-run revoke reports would_remove and deletes nothing."""
        await _responder().process(activity_log_record())
        azure.state.operations.clear()

        [result] = await _responder(dry_run=True).process(_revoke_record())

        cleanup = result.summary.outcome_for("cleanup-bastion")
        assert cleanup.details["would_remove"] is True
        assert azure.state.operations == []
        assert len(azure.state.bastion_hosts) == 1


class TestProcessing:
    """Tests for batching, skips and failure handling."""

    @pytest.mark.asyncio
    async def test_unsupported_resource_type_skipped(self, azure: MockAzureContext) -> None:
        """Test that a storage account scope is skipped without running handlers."""
        scope = (
            f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-app"
            "/providers/Microsoft.Storage/storageAccounts/stapp"
        )
        responder = _responder()

        [result] = await responder.process(activity_log_record(scope=scope))

        assert result.status == ProcessingStatus.SKIPPED
        assert result.skip.reason == SkipReason.RESOURCE_TYPE_UNSUPPORTED

    @pytest.mark.asyncio
    async def test_revoke_preserved_while_other_grant_active(
        self, azure: MockAzureContext
    ) -> None:
        """Test that a live grant on another VM in the VNet keeps the bastion."""
        responder = _responder()
        await responder.process(activity_log_record())
        azure.state.add_role_assignment(
            VM_ADMIN_LOGIN_ROLE, vm_scope("rg-app", "vm-2"), "77777777-0000-0000-0000-000000000000"
        )

        [result] = await responder.process(_revoke_record())

        cleanup = result.summary.outcome_for("cleanup-bastion")
        assert cleanup.details["preserved"] is True
        assert len(azure.state.bastion_hosts) == 1

    @pytest.mark.asyncio
    async def test_admin_revoke_keeps_bastion_for_user_login_grant(
        self, azure: MockAzureContext
    ) -> None:
        """Test that a User Login grant on the VNet keeps the bastion after an Admin revoke."""
        responder = _responder()
        await responder.process(activity_log_record())
        azure.state.add_role_assignment(
            VM_USER_LOGIN_ROLE, vm_scope("rg-app", "vm-2"), "77777777-0000-0000-0000-000000000000"
        )

        [result] = await responder.process(_revoke_record())

        cleanup = result.summary.outcome_for("cleanup-bastion")
        assert cleanup.details["preserved"] is True
        assert azure.state.count("delete_bastion") == 0
        assert len(azure.state.bastion_hosts) == 1

    @pytest.mark.asyncio
    async def test_failed_action_still_completed(self, azure: MockAzureContext) -> None:
        """Test that a failing handler is reported in the summary, not raised."""
        responder = _responder()

        record = activity_log_record(scope=vm_scope("rg-app", "vm-gone"))

        [result] = await responder.process(record)

        assert result.status == ProcessingStatus.COMPLETED
        assert result.summary.failure_count == 1
        assert result.summary.outcome_for("create-bastion").success is False
        assert result.summary.outcome_for("log-role-change").success is True

    @pytest.mark.asyncio
    async def test_batch_processing(self, azure: MockAzureContext) -> None:
        """Test that every record in a batch reaches a terminal state, in order."""
        incomplete = activity_log_record(status="Start", correlation_id="start")
        unmonitored = activity_log_record(role_id=READER_ROLE, correlation_id="reader")
        grant = activity_log_record(correlation_id="grant")
        responder = _responder()

        results = await responder.process({"records": [incomplete, unmonitored, grant]})

        assert [r.status for r in results] == [
            ProcessingStatus.REJECTED,
            ProcessingStatus.SKIPPED,
            ProcessingStatus.COMPLETED,
        ]
        assert [r.correlation_id for r in results] == ["start", "reader", "grant"]

    @pytest.mark.asyncio
    async def test_event_grid_delivery(self, azure: MockAzureContext) -> None:
        """Test a Drasi change wrapped in an Event Grid event."""
        responder = _responder()

        delivery = [event_grid_event(drasi_change(activity_log_record()))]

        [result] = await responder.process(delivery)

        assert result.status == ProcessingStatus.COMPLETED
        assert azure.state.count("create_bastion") == 1

    @pytest.mark.asyncio
    async def test_result_to_dict(self, azure: MockAzureContext) -> None:
        """Test JSON-ready result rendering."""
        responder = _responder()

        [skipped] = await responder.process(activity_log_record(role_id=READER_ROLE))
        [completed] = await responder.process(activity_log_record())

        assert skipped.to_dict()["status"] == "skipped"
        assert skipped.to_dict()["reason"] == "RoleNotConfigured"
        rendered = completed.to_dict()
        assert rendered["status"] == "completed"
        assert rendered["summary"]["success_count"] == 2


class TestFromConfig:
    """Tests for startup wiring."""

    def test_builtin_actions_registered(self, azure: MockAzureContext) -> None:
        """Test that the sample document loads against the built-in handlers."""
        responder = _responder()

        assert BUILTIN_ACTIONS == {"create-bastion", "cleanup-bastion", "log-role-change"}
        assert len(responder.registry.rules) == 2

    def test_secretless_violation(
        self, azure: MockAzureContext, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that a client secret in the environment blocks startup."""
        monkeypatch.setenv("AZURE_CLIENT_SECRET", "not-allowed")

        with pytest.raises(SecretlessViolationError):
            _responder()

    def test_unknown_action_in_document(self, azure: MockAzureContext, tmp_path: Path) -> None:
        """Test that a document naming an unregistered action fails startup."""
        registry_path = tmp_path / "role-actions.yaml"
        registry_path.write_text(
            SAMPLE_REGISTRY.read_text().replace("- log-role-change", "- notify-owner", 1)
        )

        with pytest.raises(ConfigurationError, match="notify-owner"):
            _responder(registry_path=registry_path)
