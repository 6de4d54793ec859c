import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from infraflow.modules.deployments.exceptions import InvalidTransitionError
from infraflow.modules.deployments.repository import DeploymentRepository
from infraflow.modules.deployments.schemas import (
    Deployment,
    DeploymentEvent,
    DeploymentStatus,
    FailurePhase,
    LogEntry,
    LogLevel,
    utcnow,
)

logger = logging.getLogger(__name__)

Listener = Callable[[DeploymentEvent], None]

TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.DEPLOYING},
    DeploymentStatus.DEPLOYING: {DeploymentStatus.DEPLOYED, DeploymentStatus.FAILED},
    DeploymentStatus.DEPLOYED: {DeploymentStatus.ROLLING_BACK},
    DeploymentStatus.ROLLING_BACK: {DeploymentStatus.ROLLED_BACK, DeploymentStatus.FAILED},
}


def can_transition(current: DeploymentStatus, target: DeploymentStatus) -> bool:
    return target in TRANSITIONS.get(current, ())


class DeploymentStateMachine:
    """
    The only writer of lifecycle fields on a deployment record.

    Every method loads the record, checks the transition table, mutates,
    appends a log entry and saves the full record, then notifies listeners.
    Callers guarantee a single active job per deployment (the scheduler's
    active-job slot). Writes from outside the job, such as post-deploy
    reconciliation, are serialized per record within the process, so the
    optimistic save only fails on cross-process races.
    """

    def __init__(self, repository: DeploymentRepository, listeners: Optional[List[Listener]] = None):
        self.repository = repository
        self._listeners: List[Listener] = list(listeners or [])
        self._listeners_lock = threading.Lock()
        self._record_locks: Dict[str, threading.RLock] = {}

    def add_listener(self, listener: Listener):
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def begin_deploy(self, deployment_id: str) -> Deployment:
        return self._transition(
            deployment_id,
            DeploymentStatus.DEPLOYING,
            LogEntry(message="Starting deployment...", level=LogLevel.INFO),
        )

    def mark_deployed(self, deployment_id: str, outputs: Dict[str, Any], deployment_time_seconds: float) -> Deployment:
        def apply_success(record: Deployment):
            record.outputs = dict(outputs or {})
            record.deployed_at = record.deployed_at or utcnow()
            record.deployment_time_seconds = max(0, int(round(deployment_time_seconds)))
            record.error_message = None

        return self._transition(
            deployment_id,
            DeploymentStatus.DEPLOYED,
            LogEntry(message="Deployment completed successfully", level=LogLevel.SUCCESS),
            apply_success,
        )

    def begin_rollback(self, deployment_id: str) -> Deployment:
        return self._transition(
            deployment_id,
            DeploymentStatus.ROLLING_BACK,
            LogEntry(message="Starting rollback...", level=LogLevel.INFO),
        )

    def mark_rolled_back(self, deployment_id: str) -> Deployment:
        def apply_rollback(record: Deployment):
            record.rolled_back_at = record.rolled_back_at or utcnow()

        return self._transition(
            deployment_id,
            DeploymentStatus.ROLLED_BACK,
            LogEntry(message="Rollback completed successfully", level=LogLevel.SUCCESS),
            apply_rollback,
        )

    def mark_failed(self, deployment_id: str, reason: str) -> Deployment:
        """
        Move an active deployment to failed.

        A failed rollback is flagged for manual intervention: the destroy may
        have removed some resources and the real cloud state is unknown.
        """
        with self._record_lock(deployment_id):
            record = self.repository.get(deployment_id)
            if record.status == DeploymentStatus.ROLLING_BACK:
                phase = FailurePhase.ROLLBACK
                message = f"Rollback failed: {reason}"
            else:
                phase = FailurePhase.DEPLOY
                message = f"Deployment failed: {reason}"

            def apply_failure(r: Deployment):
                r.error_message = reason
                r.failure_phase = phase
                r.requires_manual_intervention = phase == FailurePhase.ROLLBACK

            return self._transition(
                deployment_id,
                DeploymentStatus.FAILED,
                LogEntry(message=message, level=LogLevel.ERROR),
                apply_failure,
                record=record,
            )

    def append_logs(self, deployment_id: str, entries: List[LogEntry]) -> Deployment:
        with self._record_lock(deployment_id):
            record = self.repository.get(deployment_id)
            if not entries:
                return record
            record.logs.extend(entries)
            saved = self.repository.save(record)
            self._notify(saved, entries)
            return saved

    def attach_reconciliation(
        self,
        deployment_id: str,
        cost_estimate: Optional[Dict[str, Any]] = None,
        resource_summary: Optional[Dict[str, Any]] = None,
        entries: Optional[List[LogEntry]] = None,
    ) -> Optional[Deployment]:
        """
        Attach post-deploy summaries and their log entries; never changes status.
        Returns None without writing when the record is no longer `deployed`.
        """
        with self._record_lock(deployment_id):
            record = self.repository.get(deployment_id)
            if record.status != DeploymentStatus.DEPLOYED:
                return None
            if cost_estimate is not None:
                record.cost_estimate = cost_estimate
            if resource_summary is not None:
                record.resource_summary = resource_summary
            record.logs.extend(entries or [])
            saved = self.repository.save(record)
            self._notify(saved, list(entries or []))
            return saved

    def _transition(
        self,
        deployment_id: str,
        target: DeploymentStatus,
        entry: LogEntry,
        mutate: Optional[Callable[[Deployment], None]] = None,
        record: Optional[Deployment] = None,
    ) -> Deployment:
        with self._record_lock(deployment_id):
            record = record or self.repository.get(deployment_id)
            current = record.status
            if not can_transition(current, target):
                raise InvalidTransitionError(deployment_id, current.value, target.value)

            record.status = target
            if mutate:
                mutate(record)
            record.logs.append(entry)
            saved = self.repository.save(record)
        logger.info(f"Deployment {deployment_id}: {current.value} -> {target.value}")
        self._notify(saved, [entry])
        return saved

    def _record_lock(self, deployment_id: str) -> threading.RLock:
        # Serializes read-modify-save cycles on one record within this process
        with self._listeners_lock:
            return self._record_locks.setdefault(deployment_id, threading.RLock())

    def _notify(self, record: Deployment, new_logs: List[LogEntry]):
        with self._listeners_lock:
            listeners = list(self._listeners)
        if not listeners:
            return
        event = DeploymentEvent(deployment_id=record.id, status=record.status, new_logs=list(new_logs))
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Deployment listener failed for {record.id}: {str(e)}")


class DeploymentLogBuffer:
    """
    Job-owned, batched writer for a deployment's log.

    Terraform output arrives line by line from reader threads; lines are
    buffered and flushed to the record every `flush_interval` seconds, on
    `flush()`, and when the buffer is used as a context manager and exits.
    Jobs flush before every state transition so log order matches
    production order.
    """

    def __init__(self, state_machine: DeploymentStateMachine, deployment_id: str, flush_interval: float = 2.0):
        self.state_machine = state_machine
        self.deployment_id = deployment_id
        self.flush_interval = flush_interval
        self._buffer: List[LogEntry] = []
        self._lock = threading.RLock()
        self._last_flush = time.monotonic()

    def __call__(self, log_lines: List[str]):
        filtered = [line for line in log_lines if line.strip()]
        if not filtered:
            return
        with self._lock:
            self._buffer.extend(LogEntry(message=line, level=LogLevel.INFO) for line in filtered)
            if time.monotonic() - self._last_flush >= self.flush_interval:
                self.flush()

    def add(self, message: str, level: LogLevel = LogLevel.INFO):
        with self._lock:
            self._buffer.append(LogEntry(message=message, level=level))

    def warning(self, message: str):
        self.add(message, LogLevel.WARNING)

    def flush(self):
        with self._lock:
            if not self._buffer:
                return
            pending = list(self._buffer)
            try:
                self.state_machine.append_logs(self.deployment_id, pending)
            except Exception as e:
                # Keep entries buffered; the next flush retries them in order
                logger.error(f"Error updating logs for deployment {self.deployment_id}: {str(e)}")
                return
            del self._buffer[:len(pending)]
            self._last_flush = time.monotonic()

    def __enter__(self) -> "DeploymentLogBuffer":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.flush()
        return False
