"""Tests for outcome reporting."""

from __future__ import annotations

import logging

import pytest
from payloads import PRINCIPAL_ID, VM_ADMIN_LOGIN_ROLE, vm_scope

from bastion_responder.events import ChangeKind, Rejection, RejectionReason, RoleChangeEvent
from bastion_responder.reporter import OutcomeReporter, get_outcome_reporter
from bastion_responder.resolver import Skip, SkipReason
from bastion_responder.results import ActionOutcome, ExecutionSummary

EVENT = RoleChangeEvent(
    role_id=VM_ADMIN_LOGIN_ROLE,
    change_kind=ChangeKind.GRANTED,
    scope=vm_scope(),
    principal_id=PRINCIPAL_ID,
    correlation_id="corr-1",
    resource_type="compute/virtualMachine",
)


def _records(caplog: pytest.LogCaptureFixture, message: str) -> list[logging.LogRecord]:
    return [r for r in caplog.records if r.getMessage() == message]


class TestRejections:
    """Tests for rejection records."""

    @pytest.mark.parametrize(
        "reason", [RejectionReason.NOT_APPLICABLE, RejectionReason.INCOMPLETE_OPERATION]
    )
    def test_expected_noise_logged_at_debug(
        self, reason: RejectionReason, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that routine rejections do not flood INFO."""
        with caplog.at_level(logging.DEBUG):
            OutcomeReporter("1.0").report_rejection(Rejection(reason, "noise", "corr-1"))

        [record] = _records(caplog, "Notification rejected")
        assert record.levelno == logging.DEBUG

    def test_malformed_logged_at_info(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that malformed payloads are visible at INFO with their reason."""
        with caplog.at_level(logging.DEBUG):
            OutcomeReporter("1.0").report_rejection(
                Rejection(RejectionReason.MALFORMED_PAYLOAD, "not json")
            )

        [record] = _records(caplog, "Notification rejected")
        assert record.levelno == logging.INFO
        assert record.rejection_reason == "MalformedPayload"
        assert record.responder_version == "1.0"


class TestSkips:
    """Tests for skip records."""

    def test_skip_carries_event_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a skip record identifies the event."""
        skip = Skip(SkipReason.ROLE_NOT_CONFIGURED, "not monitored")

        with caplog.at_level(logging.INFO):
            OutcomeReporter().report_skip(EVENT, skip)

        [record] = _records(caplog, "Role change skipped")
        assert record.skip_reason == "RoleNotConfigured"
        assert record.correlation_id == "corr-1"
        assert record.scope == vm_scope()


class TestSummaries:
    """Tests for action outcome and summary records."""

    def test_all_succeeded(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test INFO records for a fully successful event."""
        summary = ExecutionSummary(
            outcomes=(ActionOutcome.succeeded("create-bastion", "created", skipped=False),)
        )

        with caplog.at_level(logging.INFO):
            OutcomeReporter().report_summary(EVENT, summary)

        [outcome] = _records(caplog, "Action outcome")
        [processed] = _records(caplog, "Role change processed")
        assert outcome.levelno == logging.INFO
        assert outcome.action == "create-bastion"
        assert outcome.details == {"skipped": False}
        assert processed.levelno == logging.INFO
        assert processed.success_count == 1

    def test_failure_raises_levels(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that failed actions log at ERROR and the summary at WARNING."""
        summary = ExecutionSummary(
            outcomes=(
                ActionOutcome.failed("create-bastion", "AuthorizationFailed"),
                ActionOutcome.succeeded("log-role-change", "logged"),
            )
        )

        with caplog.at_level(logging.INFO):
            OutcomeReporter().report_summary(EVENT, summary)

        levels = [r.levelno for r in _records(caplog, "Action outcome")]
        [processed] = _records(caplog, "Role change processed")
        assert levels == [logging.ERROR, logging.INFO]
        assert processed.levelno == logging.WARNING
        assert processed.failure_count == 1


def test_get_outcome_reporter_singleton() -> None:
    """Test that the global reporter is created once."""
    assert get_outcome_reporter() is get_outcome_reporter()
