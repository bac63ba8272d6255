"""
Background job queue for batch sync actions.

Every job carries an action name, a JSON-able payload and a group tag.
Handlers are registered per action; the queue runs them, retries failures
with a fixed delay, and supports dependency gating: an action scheduled
"after" other actions only runs once none of them is scheduled or running.

Two implementations share the execution logic:
- SchedulerJobQueue runs jobs on an APScheduler AsyncIOScheduler
- tests drive a deterministic in-memory queue built on the same base

Features:
- Fixed-delay retry up to max_attempts
- Job execution history
- Cancellation by group or by action set
"""
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    EVENT_JOB_SUBMITTED,
    JobEvent,
)
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from lookup_analytics.config import SyncConfig, config
from lookup_analytics.observability import get_logger, job_context

logger = get_logger(__name__)

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class JobStatus(Enum):
    """Job execution status."""
    RUNNING = "running"
    SUCCESS = "success"
    RETRYING = "retrying"
    FAILED = "failed"
    MISSED = "missed"


@dataclass
class JobExecution:
    """Record of a job execution."""
    action: str
    group: str
    attempt: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: JobStatus = JobStatus.RUNNING
    duration_ms: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "group": self.group,
            "attempt": self.attempt,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


class JobQueue(ABC):
    """
    Base job queue: handler registry, execution, retry and dependency gates.

    Subclasses only decide where pending jobs live (_enqueue,
    _has_scheduled, cancel_*).
    """

    def __init__(self, sync_config: SyncConfig = config.sync):
        self.config = sync_config
        self.gate_action = f"{sync_config.action_prefix}_queue_dependent_action"
        self._handlers: Dict[str, JobHandler] = {}
        self._running: Dict[Tuple[str, str], int] = {}
        self._history: List[JobExecution] = []
        self._max_history = 200
        self.register(self.gate_action, self._run_gate)

    # ═══════════════════════════════════════════════════════════════════════
    # REGISTRATION AND SCHEDULING
    # ═══════════════════════════════════════════════════════════════════════

    def register(self, action: str, handler: JobHandler) -> None:
        """Register the coroutine that runs for an action."""
        self._handlers[action] = handler

    def is_registered(self, action: str) -> bool:
        return action in self._handlers

    def schedule_now(
        self, action: str, payload: Optional[Dict[str, Any]] = None, group: Optional[str] = None
    ) -> None:
        self._enqueue(action, payload or {}, group or self.config.queue_group, 0, 1)

    def schedule_delayed(
        self,
        delay: float,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        group: Optional[str] = None,
    ) -> None:
        self._enqueue(action, payload or {}, group or self.config.queue_group, delay, 1)

    def schedule_after(
        self,
        dependencies: Union[str, Sequence[str]],
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        group: Optional[str] = None,
    ) -> None:
        """
        Schedule an action that only runs once every dependency action is
        neither scheduled nor running in the same group.
        """
        if isinstance(dependencies, str):
            dependencies = [dependencies]
        group = group or self.config.queue_group
        gate_payload = {
            "action": action,
            "payload": payload or {},
            "dependencies": list(dependencies),
            "group": group,
        }
        self._enqueue(self.gate_action, gate_payload, group, 0, 1)

    def is_pending(self, action: str, group: Optional[str] = None) -> bool:
        """True while a job for the action is scheduled or running."""
        group = group or self.config.queue_group
        return self._running.get((group, action), 0) > 0 or self._has_scheduled(action, group)

    def has_pending_jobs(self, group: Optional[str] = None) -> bool:
        group = group or self.config.queue_group
        if any(count > 0 for (g, _), count in self._running.items() if g == group):
            return True
        return self._has_scheduled(None, group)

    # ═══════════════════════════════════════════════════════════════════════
    # EXECUTION
    # ═══════════════════════════════════════════════════════════════════════

    async def execute(
        self, action: str, payload: Dict[str, Any], group: str, attempt: int = 1
    ) -> JobStatus:
        """
        Run the handler of one job.

        A failing handler is re-enqueued after retry_delay_seconds until
        max_attempts is reached; the final failure is logged, not raised.
        """
        handler = self._handlers.get(action)
        key = (group, action)
        self._running[key] = self._running.get(key, 0) + 1
        execution = JobExecution(
            action=action, group=group, attempt=attempt, started_at=datetime.now()
        )

        try:
            with job_context(action, group):
                if handler is None:
                    raise LookupError(f"No handler registered for action {action}")
                logger.debug("Running job", extra={"action": action, "attempt": attempt})
                await handler(payload)
            execution.status = JobStatus.SUCCESS
        except Exception as e:
            execution.error = str(e)
            if attempt < self.config.max_attempts:
                execution.status = JobStatus.RETRYING
                logger.warning(
                    f"Job {action} failed, retrying in {self.config.retry_delay_seconds}s: {e}",
                    extra={"action": action, "attempt": attempt},
                )
                self._enqueue(
                    action, payload, group, self.config.retry_delay_seconds, attempt + 1
                )
            else:
                execution.status = JobStatus.FAILED
                logger.error(
                    f"Job {action} failed after {attempt} attempts: {e}",
                    extra={"action": action, "attempt": attempt},
                    exc_info=True,
                )
        finally:
            self._running[key] -= 1
            if self._running[key] <= 0:
                del self._running[key]
            execution.finished_at = datetime.now()
            execution.duration_ms = (
                execution.finished_at - execution.started_at
            ).total_seconds() * 1000
            self._add_execution(execution)

        return execution.status

    async def _run_gate(self, payload: Dict[str, Any]) -> None:
        """Release the gated action, or check again after a delay."""
        group = payload["group"]
        waiting_on = [dep for dep in payload["dependencies"] if self.is_pending(dep, group)]
        if waiting_on:
            logger.debug(
                "Dependent action still waiting",
                extra={"action": payload["action"], "waiting_on": waiting_on},
            )
            self._enqueue(self.gate_action, payload, group, self.config.dependent_action_delay, 1)
            return
        self.schedule_now(payload["action"], payload["payload"], group)

    def _add_execution(self, execution: JobExecution) -> None:
        self._history.append(execution)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

    def get_history(self, action: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Get recent job executions, optionally for one action."""
        history = self._history
        if action:
            history = [e for e in history if e.action == action]
        return [e.to_dict() for e in history[-limit:]]

    # ═══════════════════════════════════════════════════════════════════════
    # STORAGE
    # ═══════════════════════════════════════════════════════════════════════

    @abstractmethod
    def _enqueue(
        self, action: str, payload: Dict[str, Any], group: str, delay: float, attempt: int
    ) -> None:
        """Persist a job to run after delay seconds."""

    @abstractmethod
    def _has_scheduled(self, action: Optional[str], group: str) -> bool:
        """True if a job for action (any action when None) waits in group."""

    @abstractmethod
    def cancel_by_group(self, group: str) -> int:
        """Cancel every waiting job of a group; returns how many."""

    @abstractmethod
    def cancel_by_action_set(self, actions: Sequence[str], group: str) -> int:
        """Cancel waiting jobs of the given actions in a group; returns how many."""


class SchedulerJobQueue(JobQueue):
    """
    Job queue running one-shot DateTrigger jobs on APScheduler.

    Usage:
        queue = SchedulerJobQueue()
        queue.register("analytics_import_batch_init_orders", handler)
        queue.start()

        # Later...
        queue.shutdown()
    """

    def __init__(self, sync_config: SyncConfig = config.sync, timezone=None):
        super().__init__(sync_config)
        self._timezone = timezone or config.store_timezone
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        # job id -> (group, action) for every job this queue created
        self._job_meta: Dict[str, Tuple[str, str]] = {}
        # Jobs removed from the job store whose task has not started yet
        self._submitted: Dict[str, Tuple[str, str]] = {}
        self._started = False

        self._scheduler.add_listener(self._on_job_submitted, EVENT_JOB_SUBMITTED)
        self._scheduler.add_listener(
            self._on_job_finished, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR
        )
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

    def start(self) -> None:
        """Start processing jobs; must be called with a running event loop."""
        if self._started:
            logger.warning("Job queue already started")
            return
        self._scheduler.start()
        self._started = True
        logger.info("Job queue started")

    def shutdown(self) -> None:
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Job queue stopped")

    def _enqueue(
        self, action: str, payload: Dict[str, Any], group: str, delay: float, attempt: int
    ) -> None:
        job_id = f"{group}:{action}:{uuid.uuid4().hex}"
        run_date = datetime.now(self._timezone) + timedelta(seconds=delay)
        self._job_meta[job_id] = (group, action)
        self._scheduler.add_job(
            self._run_job,
            trigger=DateTrigger(run_date=run_date, timezone=self._timezone),
            args=[job_id, action, payload, group, attempt],
            id=job_id,
            name=action,
            misfire_grace_time=None,
        )
        logger.debug(
            "Job scheduled",
            extra={"action": action, "group": group, "delay": delay, "attempt": attempt},
        )

    async def _run_job(
        self, job_id: str, action: str, payload: Dict[str, Any], group: str, attempt: int
    ) -> JobStatus:
        # No await between dropping the marker and execute() counting the job as running
        self._submitted.pop(job_id, None)
        self._job_meta.pop(job_id, None)
        return await self.execute(action, payload, group, attempt)

    def _has_scheduled(self, action: Optional[str], group: str) -> bool:
        for job in self._scheduler.get_jobs():
            meta = self._job_meta.get(job.id)
            if meta and meta[0] == group and (action is None or meta[1] == action):
                return True
        return any(
            g == group and (action is None or a == action)
            for g, a in self._submitted.values()
        )

    def cancel_by_group(self, group: str) -> int:
        return self._cancel(lambda meta: meta[0] == group)

    def cancel_by_action_set(self, actions: Sequence[str], group: str) -> int:
        wanted = set(actions)
        return self._cancel(lambda meta: meta[0] == group and meta[1] in wanted)

    def _cancel(self, predicate: Callable[[Tuple[str, str]], bool]) -> int:
        cancelled = 0
        for job in self._scheduler.get_jobs():
            meta = self._job_meta.get(job.id)
            if meta and predicate(meta):
                job.remove()
                self._job_meta.pop(job.id, None)
                cancelled += 1
        if cancelled:
            logger.info(f"Cancelled {cancelled} queued jobs")
        return cancelled

    # ═══════════════════════════════════════════════════════════════════════
    # EVENT HANDLERS
    # ═══════════════════════════════════════════════════════════════════════

    def _on_job_submitted(self, event: JobEvent) -> None:
        meta = self._job_meta.get(event.job_id)
        if meta:
            self._submitted[event.job_id] = meta

    def _on_job_finished(self, event: JobEvent) -> None:
        self._submitted.pop(event.job_id, None)
        self._job_meta.pop(event.job_id, None)

    def _on_job_missed(self, event: JobEvent) -> None:
        meta = self._job_meta.pop(event.job_id, None)
        self._submitted.pop(event.job_id, None)
        logger.warning(
            f"Job {event.job_id} missed scheduled execution",
            extra={"job_id": event.job_id},
        )
        if meta:
            self._add_execution(JobExecution(
                action=meta[1],
                group=meta[0],
                attempt=1,
                started_at=datetime.now(),
                finished_at=datetime.now(),
                status=JobStatus.MISSED,
            ))
