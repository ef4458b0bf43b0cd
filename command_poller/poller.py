import asyncio
from typing import Any, Awaitable, Callable, Optional

from loguru import logger
from command_poller.control_plane_client import ControlPlaneClient
from command_poller.errors import (
    OperationFailed,
    PollTimeout,
    RemoteCallError,
    TransportError,
)
from command_poller.models import (
    CommandInvocationStatus,
    PollAttempt,
    StatusPollingConfig,
)
from command_poller.retry import is_error_retryable

# The first query always waits this long, whatever the configured interval
WARMUP_DELAY = 1.0


class CommandPoller:
    def __init__(
        self,
        client: ControlPlaneClient,
        config: Optional[StatusPollingConfig] = None,
        on_status_change: Optional[Callable[[PollAttempt], Awaitable[Any]]] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.client = client
        self.config = config or StatusPollingConfig()
        self.logger = logger
        self.on_status_change = on_status_change
        self._clock = clock or (lambda: asyncio.get_running_loop().time())
        self._sleep = sleep or asyncio.sleep

    def _calculate_delay(self, attempt: int, interval: float) -> float:
        """Warm-up delay for the first attempt, the steady interval afterwards"""
        if attempt == 0:
            return WARMUP_DELAY
        return interval

    async def _handle_status_change(
        self,
        poll_attempt: PollAttempt,
        last_status: Optional[CommandInvocationStatus],
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status != poll_attempt.status and self.on_status_change is not None:
            self.logger.debug(f"Command status changed to {poll_attempt.status.value}")
            await self.on_status_change(poll_attempt)

    async def poll_command(
        self,
        command_id: str,
        instance_id: str,
        desired_status: CommandInvocationStatus,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> CommandInvocationStatus:
        """Polls the invocation status of a command until it reaches `desired_status`.

        Raises TransportError on the first failed query, OperationFailed when the
        command reports Failed without that being the goal, and PollTimeout once
        `timeout` seconds have passed. None of them are retried here.
        """
        timeout = self.config.timeout if timeout is None else timeout
        interval = self.config.interval if interval is None else interval
        desired_status = CommandInvocationStatus(desired_status)
        self.logger.info(
            f"polling invocation status for command '{command_id}' and instance id "
            f"'{instance_id}' with desired status {desired_status.value} for "
            f"timeout {timeout}s and interval {interval}s"
        )

        start = self._clock()
        attempt = 0
        last_status = None
        while True:
            elapsed = self._clock() - start
            if elapsed > timeout:
                break

            delay = self._calculate_delay(attempt, interval)
            self.logger.debug(f"waiting {delay:.2f}s before attempt {attempt}")
            await self._sleep(delay)

            try:
                current_status = await self.client.get_command_invocation(
                    command_id, instance_id
                )
            except RemoteCallError as e:
                raise TransportError(
                    command_id,
                    e.error,
                    is_error_retryable(e.error),
                    self._clock() - start,
                ) from e

            poll_attempt = PollAttempt(
                attempt=attempt,
                elapsed_time=self._clock() - start,
                status=current_status,
            )
            self.logger.info(
                f"poll (current command status {current_status.value}, "
                f"elapsed {poll_attempt.elapsed_time:.2f}s)"
            )
            await self._handle_status_change(poll_attempt, last_status)
            last_status = current_status

            if (
                desired_status != CommandInvocationStatus.failed
                and current_status == CommandInvocationStatus.failed
            ):
                raise OperationFailed(command_id, poll_attempt.elapsed_time)

            if current_status == desired_status:
                return current_status

            attempt += 1

        raise PollTimeout(command_id, timeout, self._clock() - start)
