import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from infraflow.modules.deployments.exceptions import (
    InvalidTransitionError,
    JobAlreadyActiveError,
    SchedulerSaturatedError,
)
from infraflow.modules.deployments.schemas import ACTIVE_STATUSES, Deployment, JobKind
from infraflow.modules.deployments.state_machine import DeploymentStateMachine, Listener

logger = logging.getLogger(__name__)

FollowUp = Callable[[], None]
# A runner may return a follow-up task that runs after its job slot is released
JobRunner = Callable[[str], Optional[FollowUp]]

INTERRUPTED_MESSAGE = "Job was interrupted by a service restart; the cloud resources may be in an unknown state"
CANCELLED_MESSAGE = "Unexpected error: scheduler shut down before the job started"


class JobScheduler:
    """
    Runs deploy and rollback jobs on a bounded worker pool.

    At most one job is active per deployment id. `submit` reserves the slot
    and performs the initial transition before returning, so callers observe
    `deploying`/`rolling_back` immediately; the job itself runs on a pool
    thread and always leaves the record in a rest state.

    Follow-up tasks returned by a runner (post-deploy reconciliation) run on
    the same pool but do not hold the slot, so a rollback can be accepted
    as soon as the record is `deployed`.
    """

    def __init__(
        self,
        state_machine: DeploymentStateMachine,
        runners: Dict[JobKind, JobRunner],
        max_workers: int = 4,
        max_pending: int = 64,
    ):
        self.state_machine = state_machine
        self.repository = state_machine.repository
        self._runners = dict(runners)
        self.max_pending = max_pending
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="deployment-job")
        self._lock = threading.Lock()
        self._active: Dict[str, JobKind] = {}
        self._futures: Dict[str, Future] = {}
        self._followups: Dict[str, int] = {}
        self._shutting_down = False

    def submit(self, deployment_id: str, kind: JobKind) -> Deployment:
        """
        Accept a job or reject it synchronously.

        Raises JobAlreadyActiveError, SchedulerSaturatedError, or
        InvalidTransitionError when the record's state does not allow the job.
        """
        kind = JobKind(kind)
        runner = self._runners.get(kind)
        if runner is None:
            raise ValueError(f"No runner registered for {kind.value} jobs")

        with self._lock:
            if self._shutting_down:
                raise SchedulerSaturatedError("Scheduler is shutting down")
            if deployment_id in self._active:
                raise JobAlreadyActiveError(deployment_id)
            if len(self._active) >= self.max_pending:
                raise SchedulerSaturatedError(
                    f"Too many deployment jobs in progress ({self.max_pending}); retry later"
                )
            self._active[deployment_id] = kind

        try:
            record = self._begin(deployment_id, kind)
        except Exception:
            self._release(deployment_id)
            raise

        try:
            future = self._executor.submit(self._run, deployment_id, kind, runner)
        except RuntimeError as e:
            # Executor already shut down; the record must not stay active
            self._fail(deployment_id, f"Unexpected error: {str(e)}")
            self._release(deployment_id)
            raise SchedulerSaturatedError("Scheduler is shutting down")

        with self._lock:
            if deployment_id in self._active and not future.done():
                self._futures[deployment_id] = future
        if future.cancelled():
            # Shutdown raced the submit and dropped the queued job
            self._fail(deployment_id, CANCELLED_MESSAGE)
            self._release(deployment_id)
            raise SchedulerSaturatedError("Scheduler is shutting down")

        logger.info(f"Accepted {kind.value} job for deployment {deployment_id}")
        return record

    def _begin(self, deployment_id: str, kind: JobKind) -> Deployment:
        record = self.repository.get(deployment_id)
        if record.is_active:
            # Left active by another process or a crashed job
            raise JobAlreadyActiveError(deployment_id)
        if kind == JobKind.DEPLOY:
            return self.state_machine.begin_deploy(deployment_id)
        return self.state_machine.begin_rollback(deployment_id)

    def _run(self, deployment_id: str, kind: JobKind, runner: JobRunner):
        followup = None
        try:
            followup = runner(deployment_id)
        except Exception as e:
            logger.exception(f"Unexpected error in {kind.value} job for deployment {deployment_id}")
            self._fail(deployment_id, f"Unexpected error: {str(e)}")
        else:
            self._ensure_rest_state(deployment_id, kind)
        finally:
            if callable(followup):
                # Counted before the slot is released so the deployment never looks idle in between
                with self._lock:
                    self._followups[deployment_id] = self._followups.get(deployment_id, 0) + 1
            self._release(deployment_id)

        if callable(followup):
            self._start_followup(deployment_id, followup)

    def _ensure_rest_state(self, deployment_id: str, kind: JobKind):
        try:
            record = self.repository.get(deployment_id)
        except Exception as e:
            logger.error(f"Could not verify final state of deployment {deployment_id}: {str(e)}")
            return
        if record.is_active:
            logger.error(f"{kind.value} job for deployment {deployment_id} returned while still {record.status.value}")
            self._fail(deployment_id, f"Unexpected error: {kind.value} job ended without a final state")

    def _start_followup(self, deployment_id: str, task: FollowUp):
        try:
            future = self._executor.submit(self._run_followup, deployment_id, task)
        except RuntimeError:
            logger.warning(f"Skipped follow-up for deployment {deployment_id}: scheduler is shutting down")
            self._followup_done(deployment_id)
            return
        # Also fires when the future is cancelled at shutdown
        future.add_done_callback(lambda _f: self._followup_done(deployment_id))

    def _run_followup(self, deployment_id: str, task: FollowUp):
        try:
            task()
        except Exception:
            logger.exception(f"Follow-up task failed for deployment {deployment_id}")

    def _followup_done(self, deployment_id: str):
        with self._lock:
            remaining = self._followups.get(deployment_id, 0) - 1
            if remaining > 0:
                self._followups[deployment_id] = remaining
            else:
                self._followups.pop(deployment_id, None)

    def _fail(self, deployment_id: str, reason: str):
        try:
            self.state_machine.mark_failed(deployment_id, reason)
        except InvalidTransitionError:
            logger.warning(f"Deployment {deployment_id} already reached a final state; not marking failed")
        except Exception as e:
            logger.error(f"Failed to mark deployment {deployment_id} as failed: {str(e)}")

    def _release(self, deployment_id: str):
        with self._lock:
            self._active.pop(deployment_id, None)
            self._futures.pop(deployment_id, None)

    def recover_interrupted(self) -> List[str]:
        """
        Fail records left in an active state with no job running here,
        e.g. after a restart. An interrupted apply is not safely resumable.

        "No job running" is judged from this process only: the service must
        run as a single worker process per store, otherwise a restarting
        process would fail jobs owned by its siblings.
        """
        recovered = []
        for record in self.repository.find_by_status(ACTIVE_STATUSES):
            if self.is_active(record.id):
                continue
            try:
                self.state_machine.mark_failed(record.id, INTERRUPTED_MESSAGE)
                recovered.append(record.id)
            except Exception as e:
                logger.error(f"Failed to recover interrupted deployment {record.id}: {str(e)}")
        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted deployment(s) as failed")
        return recovered

    def add_listener(self, listener: Listener):
        self.state_machine.add_listener(listener)

    def is_active(self, deployment_id: str) -> bool:
        with self._lock:
            return deployment_id in self._active

    def has_followups(self, deployment_id: str) -> bool:
        with self._lock:
            return deployment_id in self._followups

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def shutdown(self, wait: bool = True):
        """
        Stop accepting jobs. Without `wait`, queued jobs that never started
        are cancelled and their records marked failed so none stays active.
        """
        with self._lock:
            self._shutting_down = True
        logger.info("Shutting down deployment job scheduler")
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

        with self._lock:
            cancelled = [d for d, future in self._futures.items() if future.cancelled()]
        for deployment_id in cancelled:
            logger.warning(f"Cancelled queued job for deployment {deployment_id}")
            self._fail(deployment_id, CANCELLED_MESSAGE)
            self._release(deployment_id)
