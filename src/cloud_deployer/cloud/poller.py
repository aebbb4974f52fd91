"""Polling of long-running operations and resource readiness conditions."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from ..errors import OperationFailedError, OperationTimeoutError, RemoteConditionError
from .resources import Operation, ResourceStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")
O = TypeVar("O", bound=Operation)
R = TypeVar("R", bound=ResourceStatus)


class OperationPoller:
    """Repeatedly fetch a remote object until it reaches a terminal state.

    The interval grows by ``backoff`` after every attempt and is capped at
    ``max_interval``. A timeout is fatal: the poller never retries past it.
    """

    def __init__(
        self,
        timeout: float = 900.0,
        interval: float = 2.0,
        max_interval: float = 30.0,
        backoff: float = 1.5,
        readiness_timeout: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout
        self.interval = interval
        self.max_interval = max_interval
        self.backoff = backoff
        self.readiness_timeout = readiness_timeout if readiness_timeout is not None else timeout
        self._clock = clock
        self._sleep = sleep

    def poll(
        self,
        fetch: Callable[[], T],
        is_terminal: Callable[[T], bool],
        *,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
        description: str = "operation",
    ) -> T:
        """Call ``fetch`` until ``is_terminal`` holds for its result.

        At least one fetch is always issued, even with a zero timeout.

        Raises:
            OperationTimeoutError: if no terminal result was seen in time.
        """
        timeout = self.timeout if timeout is None else timeout
        delay = self.interval if interval is None else interval
        deadline = self._clock() + timeout
        attempts = 0

        while True:
            attempts += 1
            result = fetch()
            if is_terminal(result):
                logger.debug("%s reached a terminal state after %d request(s)", description, attempts)
                return result

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise OperationTimeoutError(description, timeout)

            logger.debug("%s not finished (attempt %d), sleeping %.1fs", description, attempts, delay)
            self._sleep(min(delay, remaining))
            delay = min(delay * self.backoff, self.max_interval)

    def wait_for_operation(
        self,
        operation: O,
        refresh: Callable[[O], O],
        *,
        timeout: Optional[float] = None,
    ) -> O:
        """Wait until ``operation`` is done and return its final state.

        Raises:
            OperationFailedError: if the finished operation carries an error.
        """
        reference = f"operation {operation.name or '<unnamed>'}"
        if operation.is_done:
            result = operation
        else:
            result = self.poll(
                lambda: refresh(operation),
                lambda op: op.is_done,
                timeout=timeout,
                description=reference,
            )
        if result.has_error:
            raise OperationFailedError(result.name or operation.name, result.error_message)
        return result

    def wait_for_condition(
        self,
        fetch: Callable[[], R],
        condition_type: str = "Ready",
        *,
        timeout: Optional[float] = None,
        description: Optional[str] = None,
    ) -> R:
        """Wait for a resource's condition to settle on True or False.

        Only a status describing the current generation counts, so a replaced
        service is not mistaken for ready on its previous revision.

        Raises:
            RemoteConditionError: if the condition settles on False.
        """

        def settled(status: R) -> bool:
            if not status.has_status or not status.is_current:
                return False
            condition = status.find_condition(condition_type)
            return condition is not None and condition.is_settled

        status = self.poll(
            fetch,
            settled,
            timeout=self.readiness_timeout if timeout is None else timeout,
            description=description or f"{condition_type} condition",
        )
        condition = status.get_condition(condition_type)
        if condition.is_false:
            raise RemoteConditionError(condition_type, condition.message)
        return status
