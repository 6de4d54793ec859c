"""Tests for lifecycle transitions and the batched deployment log writer."""

from unittest.mock import MagicMock

import pytest

from infraflow.modules.deployments.exceptions import InvalidTransitionError
from infraflow.modules.deployments.schemas import (
    Deployment,
    DeploymentStatus,
    FailurePhase,
    LogEntry,
    LogLevel,
)
from infraflow.modules.deployments.state_machine import (
    DeploymentLogBuffer,
    DeploymentStateMachine,
    can_transition,
)

from tests.conftest import VALID_DESCRIPTION


@pytest.fixture
def machine(repository):
    return DeploymentStateMachine(repository)


@pytest.fixture
def record(repository):
    return repository.insert(Deployment(user_id="user-1", provider="aws", infra_description=VALID_DESCRIPTION))


class TestTransitions:
    """The transition table and the fields each transition sets."""

    @pytest.mark.parametrize("current,target", [
        (DeploymentStatus.PENDING, DeploymentStatus.ROLLING_BACK),
        (DeploymentStatus.PENDING, DeploymentStatus.DEPLOYED),
        (DeploymentStatus.FAILED, DeploymentStatus.ROLLING_BACK),
        (DeploymentStatus.FAILED, DeploymentStatus.DEPLOYING),
        (DeploymentStatus.ROLLED_BACK, DeploymentStatus.ROLLING_BACK),
        (DeploymentStatus.DEPLOYED, DeploymentStatus.ROLLED_BACK),
    ])
    def test_forbidden_transitions(self, current, target):
        assert not can_transition(current, target)

    def test_full_lifecycle(self, machine, record):
        machine.begin_deploy(record.id)
        deployed = machine.mark_deployed(record.id, {"ip": "10.0.0.1"}, 12.6)

        assert deployed.status == DeploymentStatus.DEPLOYED
        assert deployed.outputs == {"ip": "10.0.0.1"}
        assert deployed.deployment_time_seconds == 13
        assert deployed.deployed_at is not None

        machine.begin_rollback(record.id)
        rolled_back = machine.mark_rolled_back(record.id)

        assert rolled_back.status == DeploymentStatus.ROLLED_BACK
        assert rolled_back.rolled_back_at is not None
        assert rolled_back.deployed_at == deployed.deployed_at
        assert [e.message for e in rolled_back.logs] == [
            "Starting deployment...",
            "Deployment completed successfully",
            "Starting rollback...",
            "Rollback completed successfully",
        ]

    def test_rollback_from_pending_is_rejected(self, machine, record):
        with pytest.raises(InvalidTransitionError):
            machine.begin_rollback(record.id)
        assert machine.repository.get(record.id).status == DeploymentStatus.PENDING

    def test_failed_is_terminal(self, machine, record):
        machine.begin_deploy(record.id)
        machine.mark_failed(record.id, "plan failed")
        with pytest.raises(InvalidTransitionError):
            machine.begin_deploy(record.id)
        with pytest.raises(InvalidTransitionError):
            machine.begin_rollback(record.id)

    def test_deploy_failure_keeps_outputs_unset(self, machine, record):
        machine.begin_deploy(record.id)
        failed = machine.mark_failed(record.id, "apply failed")

        assert failed.outputs is None
        assert failed.error_message == "apply failed"
        assert failed.failure_phase == FailurePhase.DEPLOY
        assert not failed.requires_manual_intervention
        assert failed.logs[-1].level == LogLevel.ERROR
        assert failed.logs[-1].message == "Deployment failed: apply failed"

    def test_rollback_failure_is_flagged(self, machine, record):
        machine.begin_deploy(record.id)
        machine.mark_deployed(record.id, {"ip": "10.0.0.1"}, 1)
        machine.begin_rollback(record.id)
        failed = machine.mark_failed(record.id, "destroy failed")

        assert failed.status == DeploymentStatus.FAILED
        assert failed.failure_phase == FailurePhase.ROLLBACK
        assert failed.requires_manual_intervention
        assert failed.outputs == {"ip": "10.0.0.1"}
        assert failed.logs[-1].message == "Rollback failed: destroy failed"

    def test_attach_reconciliation_keeps_status(self, machine, record):
        machine.begin_deploy(record.id)
        machine.mark_deployed(record.id, {}, 0)
        updated = machine.attach_reconciliation(
            record.id, cost_estimate={"monthly_estimate": 3.0}, resource_summary={"resource_count": 1}
        )
        assert updated.status == DeploymentStatus.DEPLOYED
        assert updated.cost_estimate == {"monthly_estimate": 3.0}
        assert updated.resource_summary == {"resource_count": 1}

    def test_attach_reconciliation_skips_records_no_longer_deployed(self, machine, record):
        machine.begin_deploy(record.id)
        machine.mark_deployed(record.id, {}, 0)
        machine.begin_rollback(record.id)
        before = machine.repository.get(record.id)

        result = machine.attach_reconciliation(
            record.id, cost_estimate={"monthly_estimate": 3.0}, entries=[LogEntry(message="Estimated monthly cost: 3.0 USD")]
        )

        assert result is None
        after = machine.repository.get(record.id)
        assert after.cost_estimate is None
        assert after.version == before.version
        assert len(after.logs) == len(before.logs)


class TestListeners:
    def test_listener_receives_events(self, machine, record):
        events = []
        machine.add_listener(events.append)
        machine.begin_deploy(record.id)

        assert len(events) == 1
        assert events[0].status == DeploymentStatus.DEPLOYING
        assert events[0].new_logs[0].message == "Starting deployment..."

    def test_failing_listener_does_not_break_transition(self, machine, record):
        machine.add_listener(MagicMock(side_effect=RuntimeError("socket closed")))
        updated = machine.begin_deploy(record.id)
        assert updated.status == DeploymentStatus.DEPLOYING

    def test_removed_listener_is_not_called(self, machine, record):
        listener = MagicMock()
        machine.add_listener(listener)
        machine.remove_listener(listener)
        machine.begin_deploy(record.id)
        listener.assert_not_called()


class TestLogBuffer:
    """Batched, ordered log writes."""

    def test_lines_are_buffered_until_flush(self, machine, record):
        buffer = DeploymentLogBuffer(machine, record.id, flush_interval=3600)
        buffer(["line one", "  ", "line two"])
        assert machine.repository.get(record.id).logs == []

        buffer.flush()
        logs = machine.repository.get(record.id).logs
        assert [e.message for e in logs] == ["line one", "line two"]
        assert all(e.level == LogLevel.INFO for e in logs)

    def test_zero_interval_flushes_every_call(self, machine, record):
        buffer = DeploymentLogBuffer(machine, record.id, flush_interval=0)
        buffer(["first"])
        buffer(["second"])
        assert [e.message for e in machine.repository.get(record.id).logs] == ["first", "second"]

    def test_context_manager_flushes_on_exit(self, machine, record):
        with DeploymentLogBuffer(machine, record.id, flush_interval=3600) as buffer:
            buffer.add("plain")
            buffer.warning("careful")
        logs = machine.repository.get(record.id).logs
        assert [(e.message, e.level) for e in logs] == [
            ("plain", LogLevel.INFO),
            ("careful", LogLevel.WARNING),
        ]

    def test_failed_flush_keeps_entries(self, repository, record):
        machine = DeploymentStateMachine(repository)
        buffer = DeploymentLogBuffer(machine, record.id, flush_interval=3600)
        buffer(["kept"])

        real_append = machine.append_logs
        machine.append_logs = MagicMock(side_effect=RuntimeError("store unavailable"))
        buffer.flush()
        assert repository.get(record.id).logs == []

        machine.append_logs = real_append
        buffer.flush()
        assert [e.message for e in repository.get(record.id).logs] == ["kept"]

    def test_log_is_append_only(self, machine, record):
        buffer = DeploymentLogBuffer(machine, record.id, flush_interval=0)
        snapshots = []
        for i in range(5):
            buffer([f"line {i}"])
            snapshots.append([e.message for e in machine.repository.get(record.id).logs])
        for earlier, later in zip(snapshots, snapshots[1:]):
            assert later[:len(earlier)] == earlier
            assert len(later) > len(earlier)
