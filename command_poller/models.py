from enum import Enum
from typing import Optional

from pydantic import BaseModel


class CommandInvocationStatus(str, Enum):
    pending = "Pending"
    in_progress = "InProgress"
    delayed = "Delayed"
    success = "Success"
    cancelled = "Cancelled"
    timed_out = "TimedOut"
    failed = "Failed"
    cancelling = "Cancelling"


class HealthStatus(str, Enum):
    healthy = "Healthy"
    unhealthy = "Unhealthy"


class RemoteErrorKind(str, Enum):
    timeout = "timeout"
    response = "response"
    dispatch_failure = "dispatch_failure"
    service = "service"
    other = "other"


class RemoteError(BaseModel):
    """Structured description of a failed control-plane call.

    `is_timeout` and `is_io` only mean something for dispatch failures,
    `fault_code` only for service errors.
    """

    kind: RemoteErrorKind
    message: str = ""
    is_timeout: bool = False
    is_io: bool = False
    fault_code: Optional[str] = None
    status: Optional[int] = None


class PollAttempt(BaseModel):
    attempt: int
    elapsed_time: float
    status: CommandInvocationStatus


class ClientConfig(BaseModel):
    base_url: str
    request_timeout: float = 10.0


class StatusPollingConfig(BaseModel):
    interval: float = 5.0
    timeout: float = 300.0  # 5 minutes
