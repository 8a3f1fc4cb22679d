"""Periodic task scheduler.

Runs named tasks on a cron expression (``*/15 * * * *``, ``@daily``) or a
fixed interval (``@every 30m``).  A single timer thread launches due
firings on their own threads.  A task never runs twice at once: a firing
that finds it still running is skipped, and an on-demand run is refused.
Every run has a deadline after which its context is cancelled and the run
is counted as an error.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set

from croniter import croniter

from concurrency import Context

logger = logging.getLogger(__name__)

DEFAULT_RUN_TIMEOUT = 30 * 60
MAX_TIMER_SLEEP = 60.0
EVERY_PREFIX = "@every "

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

TaskHandler = Callable[[Context], None]


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class InvalidScheduleError(SchedulerError):
    def __init__(self, schedule: str, reason: str):
        self.schedule = schedule
        self.reason = reason
        super().__init__(f"invalid schedule '{schedule}': {reason}")


class TaskExistsError(SchedulerError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"task with ID {task_id} already exists")


class TaskNotFoundError(SchedulerError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"task with ID {task_id} not found")


class AlreadyRunningError(SchedulerError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"task {task_id} is already running")


class TaskTimeoutError(SchedulerError):
    def __init__(self, task_id: str, timeout: float):
        self.task_id = task_id
        self.timeout = timeout
        super().__init__(f"task {task_id} exceeded its {timeout:g}s timeout")


class SchedulerHealthError(SchedulerError):
    """The scheduler has no tasks, or a task has failed every run."""


def parse_duration(text: str) -> float:
    """
    Parse a Go-style duration (``30s``, ``15m``, ``1h30m``, ``500ms``) into seconds.

    Raises:
        ValueError: If the string is not a duration
    """
    text = text.strip()
    if text == "0":
        return 0.0
    if not text:
        raise ValueError("empty duration")

    total = 0.0
    pos = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration '{text}'")
    return total


class Cadence:
    """When a task fires; ``expression`` is the schedule string it came from."""

    expression: str

    def next_after(self, dt: datetime) -> datetime:
        raise NotImplementedError


class IntervalCadence(Cadence):
    def __init__(self, expression: str, interval: float):
        self.expression = expression
        self.interval = interval

    def next_after(self, dt: datetime) -> datetime:
        return dt + timedelta(seconds=self.interval)


class CronCadence(Cadence):
    """Standard 5-field cron expression or ``@hourly``-style descriptor, in UTC."""

    def __init__(self, expression: str):
        self.expression = expression

    def next_after(self, dt: datetime) -> datetime:
        return croniter(self.expression, dt).get_next(datetime)


def parse_cadence(schedule: str) -> Cadence:
    """
    Build a cadence from a schedule string.

    Raises:
        InvalidScheduleError: If the string is neither a cron expression nor ``@every <duration>``
    """
    schedule = (schedule or "").strip()
    if not schedule:
        raise InvalidScheduleError(schedule, "empty schedule")

    if schedule.startswith(EVERY_PREFIX):
        try:
            interval = parse_duration(schedule[len(EVERY_PREFIX):])
        except ValueError as e:
            raise InvalidScheduleError(schedule, str(e)) from e
        if interval <= 0:
            raise InvalidScheduleError(schedule, "interval must be positive")
        return IntervalCadence(schedule, interval)

    if not schedule.startswith("@") and len(schedule.split()) != 5:
        raise InvalidScheduleError(schedule, "expected 5 cron fields")
    cadence = CronCadence(schedule)
    # croniter accepts impossible dates such as Feb 30 until asked for one
    try:
        cadence.next_after(datetime.now(timezone.utc))
    except (ValueError, KeyError) as e:
        raise InvalidScheduleError(schedule, str(e)) from e
    return cadence


@dataclass(frozen=True)
class TaskStats:
    id: str
    name: str
    schedule: str
    last_run: Optional[datetime]
    next_run: Optional[datetime]
    run_count: int
    error_count: int
    is_running: bool
    last_error: Optional[str] = None
    last_duration: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'name': self.name,
            'schedule': self.schedule,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'next_run': self.next_run.isoformat() if self.next_run else None,
            'run_count': self.run_count,
            'error_count': self.error_count,
            'is_running': self.is_running,
            'last_error': self.last_error,
            'last_duration': self.last_duration,
        }


@dataclass
class Task:
    id: str
    name: str
    cadence: Cadence
    handler: TaskHandler
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    run_count: int = 0
    error_count: int = 0
    is_running: bool = False
    last_error: Optional[str] = None
    last_duration: Optional[float] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def snapshot(self) -> TaskStats:
        with self.lock:
            return TaskStats(
                id=self.id,
                name=self.name,
                schedule=self.cadence.expression,
                last_run=self.last_run,
                next_run=self.next_run,
                run_count=self.run_count,
                error_count=self.error_count,
                is_running=self.is_running,
                last_error=self.last_error,
                last_duration=self.last_duration,
            )


class Scheduler:
    """
    Owns a set of periodic tasks and the threads that run them.

    Lock order is registry lock, then task lock.  ``next_run`` and the
    cadence belong to the registry lock; counters and ``is_running`` belong
    to the task lock.

    Args:
        run_timeout: Seconds a single run may take before it is cancelled
        clock: Returns the current UTC time (injectable for tests)
    """

    def __init__(self, run_timeout: float = DEFAULT_RUN_TIMEOUT,
                 clock: Optional[Callable[[], datetime]] = None):
        self.run_timeout = run_timeout
        self._now = clock or (lambda: datetime.now(timezone.utc))
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)
        self._ctx = Context()
        self._timer: Optional[threading.Thread] = None
        self._firings: Set[threading.Thread] = set()
        self._stopping = False

    @property
    def context(self) -> Context:
        """Root context; cancelled by :meth:`stop`."""
        return self._ctx

    @property
    def is_running(self) -> bool:
        return self._timer is not None and self._timer.is_alive()

    # ── Registry ──────────────────────────────────────────────────

    def add_task(self, task_id: str, name: str, schedule: str, handler: TaskHandler) -> None:
        cadence = parse_cadence(schedule)
        with self._wakeup:
            if task_id in self._tasks:
                raise TaskExistsError(task_id)
            task = Task(id=task_id, name=name, cadence=cadence, handler=handler)
            task.next_run = cadence.next_after(self._now())
            self._tasks[task_id] = task
            self._wakeup.notify_all()
        logger.info(f"Added scheduled task {task_id} ({name}) with schedule '{schedule}'")

    def remove_task(self, task_id: str) -> None:
        with self._wakeup:
            task = self._tasks.pop(task_id, None)
            if task is None:
                raise TaskNotFoundError(task_id)
            self._wakeup.notify_all()
        logger.info(f"Removed scheduled task {task_id} ({task.name})")

    def update_task_schedule(self, task_id: str, schedule: str) -> None:
        cadence = parse_cadence(schedule)
        with self._wakeup:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            next_run = cadence.next_after(self._now())
            task.cadence = cadence
            task.next_run = next_run
            self._wakeup.notify_all()
        logger.info(f"Updated schedule of task {task_id} to '{schedule}'")

    def _get(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def get_task(self, task_id: str) -> TaskStats:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            return task.snapshot()

    def get_task_stats(self) -> List[TaskStats]:
        with self._lock:
            return [task.snapshot() for task in self._tasks.values()]

    def list_tasks(self) -> List[str]:
        with self._lock:
            return list(self._tasks)

    # ── Execution ─────────────────────────────────────────────────

    @staticmethod
    def _claim(task: Task) -> bool:
        with task.lock:
            if task.is_running:
                return False
            task.is_running = True
            return True

    def _execute(self, task: Task, parent: Context) -> Optional[Exception]:
        """Run a claimed task's handler under the run timeout and record the outcome.

        Returns the error the run ended with, or None on success.
        """
        ctx = parent.child(timeout=self.run_timeout)
        started = self._now()
        start_time = time.monotonic()
        outcome: Dict[str, Exception] = {}

        def _run():
            try:
                task.handler(ctx)
            except Exception as e:
                outcome['error'] = e

        worker = threading.Thread(target=_run, name=f"task-{task.id}-run", daemon=True)
        worker.start()
        worker.join(ctx.remaining())

        error = None
        if worker.is_alive():
            ctx.cancel("task run timed out")
            logger.error(f"Task {task.id} exceeded its {self.run_timeout:g}s timeout, cancelling")
            worker.join()
            error = TaskTimeoutError(task.id, self.run_timeout)
            error.__cause__ = outcome.get('error')
        else:
            error = outcome.get('error')
        ctx.release()

        duration = time.monotonic() - start_time
        with task.lock:
            task.last_run = started
            task.run_count += 1
            task.last_duration = duration
            if error is not None:
                task.error_count += 1
                task.last_error = str(error)
            else:
                task.last_error = None
            task.is_running = False
            run_count = task.run_count

        if error is not None:
            logger.error(f"Task {task.id} ({task.name}) failed after {duration:.2f}s: {error}")
        else:
            logger.info(f"Task {task.id} ({task.name}) completed in {duration:.2f}s (run {run_count})")
        return error

    def run_task(self, ctx: Context, task_id: str) -> None:
        """
        Run a task now, outside its schedule, and wait for it to finish.

        Raises:
            TaskNotFoundError: Unknown task
            AlreadyRunningError: The task is running; nothing is recorded
            Exception: Whatever the handler raised, after it has been counted
        """
        task = self._get(task_id)
        if not self._claim(task):
            raise AlreadyRunningError(task_id)
        logger.info(f"Running task {task_id} manually")
        error = self._execute(task, ctx)
        if error is not None:
            raise error

    def start_task(self, task_id: str) -> threading.Thread:
        """Claim a task now and run it on a background thread.

        Raises:
            TaskNotFoundError: Unknown task
            AlreadyRunningError: The task is running
        """
        task = self._get(task_id)
        if not self._claim(task):
            raise AlreadyRunningError(task_id)
        logger.info(f"Running task {task_id} manually in the background")
        thread = threading.Thread(target=self._execute, args=(task, self._ctx),
                                  name=f"task-{task_id}-manual", daemon=True)
        thread.start()
        return thread

    def _fire(self, task: Task) -> None:
        try:
            if not self._claim(task):
                logger.warning(f"Task {task.id} is already running, skipping")
                return
            logger.debug(f"Starting scheduled task {task.id}")
            self._execute(task, self._ctx)
        finally:
            with self._lock:
                self._firings.discard(threading.current_thread())

    def _timer_loop(self) -> None:
        with self._wakeup:
            while not self._stopping:
                now = self._now()
                next_wake = None
                for task in self._tasks.values():
                    if task.next_run is None:
                        continue
                    if task.next_run <= now:
                        try:
                            task.next_run = task.cadence.next_after(now)
                        except Exception:
                            logger.exception(f"Cannot compute next run of task {task.id}, unscheduling it")
                            task.next_run = None
                            with task.lock:
                                task.last_error = f"schedule '{task.cadence.expression}' has no next run"
                            continue
                        firing = threading.Thread(target=self._fire, args=(task,),
                                                  name=f"task-{task.id}", daemon=True)
                        self._firings.add(firing)
                        firing.start()
                    if next_wake is None or task.next_run < next_wake:
                        next_wake = task.next_run

                timeout = MAX_TIMER_SLEEP
                if next_wake is not None:
                    timeout = min(timeout, max(0.0, (next_wake - now).total_seconds()))
                self._wakeup.wait(timeout)

    def start(self) -> None:
        with self._wakeup:
            if self.is_running:
                return
            if self._ctx.cancelled:
                self._ctx = Context()
            self._stopping = False
            self._timer = threading.Thread(target=self._timer_loop, name="scheduler", daemon=True)
            self._timer.start()
        logger.info("Scheduler started")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop firing, cancel in-flight runs and wait for their threads."""
        with self._wakeup:
            self._stopping = True
            self._wakeup.notify_all()
            timer = self._timer
            firings = list(self._firings)
        self._ctx.cancel("scheduler stopped")
        if timer is not None:
            timer.join(timeout)
        for firing in firings:
            firing.join(timeout)
        self._timer = None
        logger.info("Scheduler stopped")

    def health(self) -> None:
        """
        Raises:
            SchedulerHealthError: No tasks registered, or a task failed every run so far
        """
        stats = self.get_task_stats()
        if not stats:
            raise SchedulerHealthError("no tasks scheduled")
        for s in stats:
            if s.next_run is None:
                raise SchedulerHealthError(f"task {s.id} is no longer scheduled: {s.last_error}")
            if s.run_count > 0 and s.error_count == s.run_count:
                raise SchedulerHealthError(
                    f"task {s.id} has failed all {s.run_count} runs"
                )
