"""
Task completion poller.

Waits for a submitted compute task to reach a terminal status on the ledger.
The decision made on each observed status is a pure function
(:func:`transition`); the waiting itself is a generic fixed-interval loop
(:func:`poll_until`) shared by the success and failure variants.
"""
import asyncio
import inspect
import logging
import os
import threading
import time
from enum import Enum
from typing import Any, Callable, NamedTuple, Optional

from prometheus_client import Counter, Histogram

from .schemas import Task, TaskResult
from .status import EthStatus, FAILURE_STATUSES

POLL_INTERVAL_S = float(os.getenv("TASK_POLL_INTERVAL_S", "1"))

TASK_WAIT_TIME = Histogram('secretvote_task_wait_seconds', 'Time spent waiting for tasks to settle', ['kind'])
TASK_OUTCOME = Counter('secretvote_task_outcome_total', 'Terminal task statuses observed', ['status'])

log = logging.getLogger(__name__)


class TaskPollError(AssertionError):
    """The observed status sequence broke the expected protocol."""


class UnexpectedStatusError(TaskPollError):
    def __init__(self, observed, expected, task_id: str | None = None):
        self.observed = observed
        self.expected = expected
        self.task_id = task_id
        where = f" for task {task_id}" if task_id else ""
        super().__init__(f"unexpected status {_name(observed)}{where}; expected {_name(expected)}")


class WrongTerminalStatusError(TaskPollError):
    def __init__(self, observed, expected, task_id: str | None = None):
        self.observed = observed
        self.expected = expected
        self.task_id = task_id
        subject = f"task {task_id}" if task_id else "task"
        super().__init__(f"{subject} settled as {_name(observed)}, expected {_name(expected)}")


class PollTimeoutError(TimeoutError):
    pass


class PollCancelledError(Exception):
    pass


def _name(status) -> str:
    try:
        return EthStatus(status).name
    except ValueError:
        return repr(status)


class PollState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Decision(NamedTuple):
    state: PollState
    error: Optional[TaskPollError] = None


def transition(observed, *, pending=EthStatus.CREATED, target=EthStatus.VERIFIED,
               task_id: str | None = None) -> Decision:
    """Classify one observed status while waiting for ``target``.

    SUCCEEDED means ``target`` was reached and polling stops. PENDING means
    the task is still at ``pending`` and should be polled again. FAILED
    carries the error to raise: another terminal value was reached, or a
    value that is neither pending nor terminal was observed.
    """
    if observed == target:
        return Decision(PollState.SUCCEEDED)
    if observed == pending:
        return Decision(PollState.PENDING)
    try:
        status = EthStatus(observed)
    except ValueError:
        return Decision(PollState.FAILED, UnexpectedStatusError(observed, pending, task_id))
    if status.is_terminal:
        return Decision(PollState.FAILED, WrongTerminalStatusError(status, target, task_id))
    return Decision(PollState.FAILED, UnexpectedStatusError(status, pending, task_id))


def poll_until(fetch: Callable[[], Any], decide: Callable[[Any], bool], *,
               interval: float = POLL_INTERVAL_S, timeout: float | None = None,
               cancel: threading.Event | None = None, sleep=None, clock=time.monotonic):
    """Call ``fetch`` every ``interval`` seconds until ``decide`` accepts a value.

    Returns the accepted value. Anything ``decide`` raises propagates
    unchanged. With ``timeout`` set, :class:`PollTimeoutError` is raised
    once the next wait would pass the deadline. Setting ``cancel`` aborts
    the wait with :class:`PollCancelledError`.
    """
    if sleep is None:
        sleep = cancel.wait if cancel is not None else time.sleep
    deadline = None if timeout is None else clock() + timeout
    attempts = 0
    while True:
        if cancel is not None and cancel.is_set():
            raise PollCancelledError(f"polling cancelled after {attempts} attempts")
        value = fetch()
        attempts += 1
        if decide(value):
            return value
        if deadline is not None and clock() + interval > deadline:
            raise PollTimeoutError(f"no terminal value after {attempts} attempts ({timeout}s)")
        sleep(interval)


async def poll_until_async(fetch, decide: Callable[[Any], bool], *,
                           interval: float = POLL_INTERVAL_S, timeout: float | None = None,
                           sleep=asyncio.sleep, clock=time.monotonic):
    """Async counterpart of :func:`poll_until`; ``fetch`` may be sync or async."""
    deadline = None if timeout is None else clock() + timeout
    attempts = 0
    while True:
        value = fetch()
        if inspect.isawaitable(value):
            value = await value
        attempts += 1
        if decide(value):
            return value
        if deadline is not None and clock() + interval > deadline:
            raise PollTimeoutError(f"no terminal value after {attempts} attempts ({timeout}s)")
        await sleep(interval)


def _decider(task: Task, pending, target) -> Callable[[Any], bool]:
    def decide(observed) -> bool:
        decision = transition(observed, pending=pending, target=target, task_id=task.task_id)
        log.debug("task %s status %s -> %s", task.task_id, _name(observed), decision.state.value)
        if decision.error is not None:
            TASK_OUTCOME.labels(_name(observed)).inc()
            log.error("task %s: %s", task.task_id, decision.error)
            raise decision.error
        if decision.state is PollState.SUCCEEDED:
            TASK_OUTCOME.labels(_name(observed)).inc()
            task.status = EthStatus(observed)
            return True
        return False
    return decide


def _check_pending(task: Task, expected_pending):
    if expected_pending != EthStatus.CREATED:
        raise UnexpectedStatusError(expected_pending, EthStatus.CREATED, task.task_id)


def _check_failure(expected_failure_status):
    if expected_failure_status not in FAILURE_STATUSES:
        raise ValueError(f"{_name(expected_failure_status)} is not a failure status")


def _finish_success(service, task: Task, on_success) -> TaskResult:
    result = service.get_result(task)
    log.info("task %s verified", task.task_id)
    if on_success is not None:
        on_success(result.output)
    return result


def await_success(service, task: Task, expected_pending=EthStatus.CREATED,
                  on_success: Callable[[str], Any] | None = None, **poll_kwargs) -> TaskResult:
    """Block until ``task`` is VERIFIED, then hand its output to ``on_success``.

    ``expected_pending`` must be CREATED. Reaching a failure status, or any
    status other than CREATED before verification, raises a
    :class:`TaskPollError` and the callback is never invoked.
    """
    _check_pending(task, expected_pending)
    log.info("waiting for task %s (%s) to verify", task.task_id, task.fn)
    with TASK_WAIT_TIME.labels("success").time():
        poll_until(
            lambda: service.get_status(task),
            _decider(task, expected_pending, EthStatus.VERIFIED),
            **poll_kwargs,
        )
    return _finish_success(service, task, on_success)


def await_failure(service, task: Task, expected_failure_status=EthStatus.FAILED,
                  expected_pending=EthStatus.CREATED, **poll_kwargs) -> EthStatus:
    """Block until ``task`` settles as ``expected_failure_status``.

    Reaching VERIFIED (or another failure status) raises
    :class:`WrongTerminalStatusError`.
    """
    _check_failure(expected_failure_status)
    _check_pending(task, expected_pending)
    log.info("waiting for task %s (%s) to fail with %s", task.task_id, task.fn, _name(expected_failure_status))
    with TASK_WAIT_TIME.labels("failure").time():
        status = poll_until(
            lambda: service.get_status(task),
            _decider(task, expected_pending, expected_failure_status),
            **poll_kwargs,
        )
    log.info("task %s failed as expected", task.task_id)
    return EthStatus(status)


async def _finish_success_async(service, task: Task, on_success) -> TaskResult:
    result = service.get_result(task)
    if inspect.isawaitable(result):
        result = await result
    log.info("task %s verified", task.task_id)
    if on_success is not None:
        on_success(result.output)
    return result


async def await_success_async(service, task: Task, expected_pending=EthStatus.CREATED,
                              on_success: Callable[[str], Any] | None = None, **poll_kwargs) -> TaskResult:
    """Async :func:`await_success`; the service's methods may be sync or async."""
    _check_pending(task, expected_pending)
    log.info("waiting for task %s (%s) to verify", task.task_id, task.fn)
    with TASK_WAIT_TIME.labels("success").time():
        await poll_until_async(
            lambda: service.get_status(task),
            _decider(task, expected_pending, EthStatus.VERIFIED),
            **poll_kwargs,
        )
    return await _finish_success_async(service, task, on_success)


async def await_failure_async(service, task: Task, expected_failure_status=EthStatus.FAILED,
                              expected_pending=EthStatus.CREATED, **poll_kwargs) -> EthStatus:
    """Async :func:`await_failure`; ``service.get_status`` may be sync or async."""
    _check_failure(expected_failure_status)
    _check_pending(task, expected_pending)
    log.info("waiting for task %s (%s) to fail with %s", task.task_id, task.fn, _name(expected_failure_status))
    with TASK_WAIT_TIME.labels("failure").time():
        status = await poll_until_async(
            lambda: service.get_status(task),
            _decider(task, expected_pending, expected_failure_status),
            **poll_kwargs,
        )
    log.info("task %s failed as expected", task.task_id)
    return EthStatus(status)
