"""Convergence waiter for asynchronous server transitions.

The waiter is a small state machine driven by an injectable clock, sleep
and status reader so that it can be exercised without real delays:

    WAITING --status matches target--> CONVERGED
    WAITING --deadline exceeded------> TIMED_OUT

Each tick re-reads the server status. A transient read failure does not
change state; the next read happens after a backoff. The caller's
deadline is the only stop condition.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from azure.core.exceptions import AzureError, ResourceNotFoundError

logger = logging.getLogger(__name__)

StatusReader = Callable[[], Awaitable[str]]
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

# Statuses that mean the server is gone even if the API still answers
ABSENT_STATUSES = frozenset({"deleted"})


class ConvergenceState(str, Enum):
    """States of the waiter."""

    WAITING = "waiting"
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"


class ConvergenceTarget(str, Enum):
    """Status the waiter waits for."""

    ACTIVE = "active"
    ABSENT = "absent"


class ConvergenceTimeoutError(Exception):
    """Raised when a server does not reach its target status before the deadline.

    This is recoverable: the server may still converge later, and the
    caller decides whether to wait again.
    """

    def __init__(
        self,
        resource_id: str,
        target: ConvergenceTarget,
        timeout_seconds: float,
        last_status: str | None = None,
        last_error: Exception | None = None,
    ) -> None:
        self.resource_id = resource_id
        self.target = target
        self.timeout_seconds = timeout_seconds
        self.last_status = last_status
        self.last_error = last_error
        message = (
            f"Timed out after {timeout_seconds:g}s waiting for server {resource_id} "
            f"to become {target.value} (last status: {last_status})"
        )
        if last_error is not None:
            message += f"; last error: {last_error}"
        super().__init__(message)


@dataclass
class WaitOutcome:
    """Result of a waiter run."""

    state: ConvergenceState
    target: ConvergenceTarget
    reads: int
    elapsed_seconds: float
    last_status: str | None = None
    last_error: Exception | None = None

    @property
    def converged(self) -> bool:
        return self.state == ConvergenceState.CONVERGED


class ConvergenceWaiter:
    """Polls a server's status until it reaches a target or the deadline passes."""

    def __init__(
        self,
        read_status: StatusReader,
        target: ConvergenceTarget,
        timeout_seconds: float,
        *,
        resource_id: str = "",
        poll_interval_seconds: float = 5.0,
        error_backoff_seconds: float = 10.0,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the waiter.

        Args:
            read_status: Coroutine function returning the current status.
                Raises ResourceNotFoundError once the server is gone.
            target: Status to wait for.
            timeout_seconds: Deadline measured from the start of run().
            resource_id: Server ID, for logs and errors.
            poll_interval_seconds: Delay between successful reads.
            error_backoff_seconds: Delay after a failed read.
            clock: Monotonic time source.
            sleep: Coroutine used to wait between reads.
        """
        self._read_status = read_status
        self._target = target
        self._timeout = timeout_seconds
        self._resource_id = resource_id
        self._poll_interval = poll_interval_seconds
        self._error_backoff = error_backoff_seconds
        self._clock = clock
        self._sleep = sleep
        self._state = ConvergenceState.WAITING

    @property
    def state(self) -> ConvergenceState:
        return self._state

    def _matches(self, status: str) -> bool:
        normalized = status.lower()
        if self._target == ConvergenceTarget.ABSENT:
            return normalized in ABSENT_STATUSES
        return normalized == self._target.value

    async def run(self) -> WaitOutcome:
        """Poll until the target status or the deadline.

        Returns:
            WaitOutcome in state CONVERGED or TIMED_OUT.

        Raises:
            ResourceNotFoundError: If the server disappears while waiting
                for it to become active.
        """
        start = self._clock()
        reads = 0
        last_status: str | None = None
        last_error: Exception | None = None
        self._state = ConvergenceState.WAITING

        while self._state == ConvergenceState.WAITING:
            delay = self._poll_interval
            try:
                reads += 1
                status = await self._read_status()
            except ResourceNotFoundError:
                if self._target == ConvergenceTarget.ABSENT:
                    self._state = ConvergenceState.CONVERGED
                    break
                raise
            except AzureError as e:
                last_error = e
                delay = self._error_backoff
                logger.warning(
                    "Status read failed while waiting, will retry",
                    extra={
                        "server_id": self._resource_id,
                        "target": self._target.value,
                        "attempt": reads,
                        "error": str(e),
                    },
                )
            else:
                last_status = status
                if self._matches(status):
                    self._state = ConvergenceState.CONVERGED
                    break

            elapsed = self._clock() - start
            # A read taken at the deadline has already been checked
            if elapsed >= self._timeout:
                self._state = ConvergenceState.TIMED_OUT
                break

            await self._sleep(min(delay, self._timeout - elapsed))

        outcome = WaitOutcome(
            state=self._state,
            target=self._target,
            reads=reads,
            elapsed_seconds=self._clock() - start,
            last_status=last_status,
            last_error=last_error,
        )
        logger.info(
            "Convergence wait finished",
            extra={
                "server_id": self._resource_id,
                "target": self._target.value,
                "state": outcome.state.value,
                "reads": reads,
                "elapsed_seconds": outcome.elapsed_seconds,
            },
        )
        return outcome

    async def wait(self) -> WaitOutcome:
        """Poll like run(), raising instead of returning a timeout.

        Raises:
            ConvergenceTimeoutError: If the deadline passed first.
            ResourceNotFoundError: If the server disappears while waiting
                for it to become active.
        """
        outcome = await self.run()
        if outcome.state == ConvergenceState.TIMED_OUT:
            raise ConvergenceTimeoutError(
                resource_id=self._resource_id,
                target=self._target,
                timeout_seconds=self._timeout,
                last_status=outcome.last_status,
                last_error=outcome.last_error,
            )
        return outcome
