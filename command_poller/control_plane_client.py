import asyncio
import json
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp
import yarl
from loguru import logger
from command_poller.errors import HealthUpdateError, RemoteCallError
from command_poller.models import (
    ClientConfig,
    CommandInvocationStatus,
    HealthStatus,
    RemoteError,
    RemoteErrorKind,
)
from command_poller.retry import (
    is_error_retryable,
    is_error_retryable_set_instance_health,
)


def translate_error(error: BaseException) -> RemoteError:
    """Maps an aiohttp failure onto the structured error cases"""
    message = f"{type(error).__name__}: {error}"

    # ServerTimeoutError is both a connection error and a TimeoutError
    if isinstance(error, aiohttp.ServerTimeoutError):
        return RemoteError(
            kind=RemoteErrorKind.dispatch_failure, message=message, is_timeout=True
        )
    if isinstance(error, aiohttp.ServerFingerprintMismatch):
        return RemoteError(kind=RemoteErrorKind.dispatch_failure, message=message)
    if isinstance(error, aiohttp.ClientConnectionError):
        return RemoteError(
            kind=RemoteErrorKind.dispatch_failure, message=message, is_io=True
        )
    if isinstance(error, asyncio.TimeoutError):
        return RemoteError(kind=RemoteErrorKind.timeout, message=message)
    # ClientResponseError covers replies that do not parse as HTTP
    if isinstance(error, (aiohttp.ClientPayloadError, aiohttp.ClientResponseError)):
        return RemoteError(kind=RemoteErrorKind.response, message=message)
    return RemoteError(kind=RemoteErrorKind.other, message=message)


def _segment(value: str) -> str:
    """Percent-encodes an opaque identifier as a single path segment"""
    return quote(value, safe="")


def _service_error(status: int, body: Optional[Dict[str, Any]]) -> RemoteError:
    fault = body.get("fault") if isinstance(body, dict) else None
    if not isinstance(fault, dict):
        fault = {}
    code = fault.get("code")
    return RemoteError(
        kind=RemoteErrorKind.service,
        message=f"HTTP {status} {code or 'UnknownFault'}: {fault.get('message', '')}",
        fault_code=code,
        status=status,
    )


class ControlPlaneClient:
    """Shared handle on the control plane.

    One session serves any number of concurrent poll invocations.
    """

    def __init__(self, config: ClientConfig):
        self.base_url = config.base_url.rstrip("/")
        self.config = config
        self.logger = logger
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "ControlPlaneClient":
        self._get_session()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Sends one request and returns the decoded JSON object.

        Every failure surfaces as RemoteError carried by RemoteCallError.
        """
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().request(
                method, yarl.URL(url, encoded=True), json=payload
            ) as response:
                raw = await response.read()
                try:
                    body = json.loads(raw) if raw else None
                except ValueError:
                    body = None

                if response.status >= 400:
                    error = _service_error(response.status, body)
                elif not isinstance(body, dict):
                    error = RemoteError(
                        kind=RemoteErrorKind.response,
                        message=f"malformed response body from {url}: {raw[:200]!r}",
                        status=response.status,
                    )
                else:
                    return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            error = translate_error(e)
            self.logger.error(f"{method} {url} failed: {error.message}")
            raise RemoteCallError(error, is_error_retryable(error)) from e

        self.logger.error(f"{method} {url} failed: {error.message}")
        raise RemoteCallError(error, is_error_retryable(error))

    async def send_command(
        self,
        document_name: str,
        instance_ids: List[str],
        parameters: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Dispatches a command and returns its identifier"""
        data = await self._request(
            "POST",
            "/commands",
            {
                "document_name": document_name,
                "instance_ids": list(instance_ids),
                "parameters": parameters or {},
            },
        )
        command_id = data.get("command_id")
        if not isinstance(command_id, str):
            error = RemoteError(
                kind=RemoteErrorKind.response,
                message=f"send_command response has no command_id: {data}",
            )
            raise RemoteCallError(error, is_error_retryable(error))

        self.logger.info(
            f"sent command '{command_id}' ({document_name}) to {list(instance_ids)}"
        )
        return command_id

    async def get_command_invocation(
        self, command_id: str, instance_id: str
    ) -> CommandInvocationStatus:
        """Fetches the current invocation status of a command on an instance"""
        data = await self._request(
            "GET",
            f"/commands/{_segment(command_id)}/invocations/{_segment(instance_id)}",
        )
        try:
            return CommandInvocationStatus(data["status"])
        except (KeyError, ValueError) as e:
            error = RemoteError(
                kind=RemoteErrorKind.response,
                message=f"invalid invocation status in {data}",
            )
            raise RemoteCallError(error, is_error_retryable(error)) from e

    async def set_instance_health(
        self, instance_id: str, status: HealthStatus
    ) -> None:
        """Sets the instance health: "Healthy" or "Unhealthy"."""
        status = HealthStatus(status)
        self.logger.info(f"setting instance health for '{instance_id}' with {status.value}")
        try:
            resp = await self._request(
                "POST",
                f"/instances/{_segment(instance_id)}/health",
                {"health_status": status.value},
            )
        except RemoteCallError as e:
            raise HealthUpdateError(
                instance_id,
                e.error,
                is_error_retryable(e.error)
                or is_error_retryable_set_instance_health(e.error),
            ) from e

        self.logger.info(
            f"successfully set instance health for '{instance_id}' with "
            f"{status.value} (output: {resp})"
        )
