from typing import Optional

from command_poller.models import RemoteError


class PollerError(Exception):
    """Base error. `retryable` is advice for the caller, never acted on here."""

    retryable = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.message = message
        if retryable is not None:
            self.retryable = retryable


class RemoteCallError(PollerError):
    """A control-plane request failed before producing a usable answer."""

    def __init__(self, error: RemoteError, retryable: bool = False):
        super().__init__(error.message, retryable)
        self.error = error


class TransportError(PollerError):
    def __init__(
        self, command_id: str, error: RemoteError, retryable: bool, elapsed: float
    ):
        super().__init__(
            f"failed get_command_invocation for command '{command_id}' "
            f"(elapsed {elapsed:.2f}s): {error.message}",
            retryable,
        )
        self.command_id = command_id
        self.error = error
        self.elapsed = elapsed


class OperationFailed(PollerError):
    retryable = False

    def __init__(self, command_id: str, elapsed: float):
        super().__init__(
            f"command invocation '{command_id}' failed (elapsed {elapsed:.2f}s)"
        )
        self.command_id = command_id
        self.elapsed = elapsed


class PollTimeout(PollerError):
    retryable = True

    def __init__(self, command_id: str, timeout: float, elapsed: float):
        super().__init__(
            f"failed to get command invocation '{command_id}' in time "
            f"(timeout {timeout}s, elapsed {elapsed:.2f}s)"
        )
        self.command_id = command_id
        self.timeout = timeout
        self.elapsed = elapsed


class HealthUpdateError(PollerError):
    def __init__(self, instance_id: str, error: RemoteError, retryable: bool):
        super().__init__(
            f"failed set_instance_health for '{instance_id}': {error.message}",
            retryable,
        )
        self.instance_id = instance_id
        self.error = error
