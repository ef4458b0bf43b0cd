import asyncio
from typing import AsyncGenerator

import aiohttp
import pytest
import pytest_asyncio
import yarl
from aiohttp import web
from control_plane_server import ControlPlaneServer
from command_poller.control_plane_client import ControlPlaneClient, translate_error
from command_poller.errors import (
    HealthUpdateError,
    OperationFailed,
    RemoteCallError,
    TransportError,
)
from command_poller.models import (
    ClientConfig,
    CommandInvocationStatus,
    HealthStatus,
    RemoteErrorKind,
)
from command_poller.poller import CommandPoller

BASE_URL_TEMPLATE = "http://localhost:{}"
LOCALHOST = yarl.URL("http://localhost/")


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[ControlPlaneServer, None]:
    """Start and yield a test ControlPlaneServer instance on a random port."""
    port = unused_tcp_port_factory()
    server_instance = ControlPlaneServer(completion_time=1.5, failure_rate=0.0)
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest_asyncio.fixture
async def client(server) -> AsyncGenerator[ControlPlaneClient, None]:
    _, port = server
    async with ControlPlaneClient(
        ClientConfig(base_url=BASE_URL_TEMPLATE.format(port))
    ) as control_plane:
        yield control_plane


@pytest_asyncio.fixture
async def broken_app(unused_tcp_port_factory):
    """A control plane that answers with garbage or hangs."""

    async def not_json(request):
        return web.Response(text="<html>oops</html>")

    async def unknown_status(request):
        return web.json_response({"status": "Exploded"})

    async def hang(request):
        await asyncio.sleep(1)
        return web.json_response({"status": "Success"})

    app = web.Application()
    app.router.add_get("/commands/not-json/invocations/{instance_id}", not_json)
    app.router.add_get("/commands/unknown/invocations/{instance_id}", unknown_status)
    app.router.add_get("/commands/hang/invocations/{instance_id}", hang)
    runner = web.AppRunner(app)
    await runner.setup()
    port = unused_tcp_port_factory()
    site = web.TCPSite(runner, "localhost", port)
    await site.start()
    try:
        yield port
    finally:
        await runner.cleanup()


@pytest.mark.asyncio
async def test_command_runs_to_success(client):
    command_id = await client.send_command("AWS-RunShellScript", ["i-1"])
    poller = CommandPoller(client)

    result = await poller.poll_command(
        command_id, "i-1", CommandInvocationStatus.success, timeout=10.0, interval=0.5
    )

    assert result == CommandInvocationStatus.success


@pytest.mark.asyncio
async def test_command_failure(server, client):
    server_instance, _ = server
    server_instance.failure_rate = 1.0
    command_id = await client.send_command("AWS-RunShellScript", ["i-1"])

    with pytest.raises(OperationFailed) as exc_info:
        await CommandPoller(client).poll_command(
            command_id, "i-1", CommandInvocationStatus.success, timeout=10.0, interval=0.5
        )

    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_concurrent_polls_share_one_client(client):
    instance_ids = ["i-1", "i-2", "i-3"]
    command_id = await client.send_command("AWS-RunShellScript", instance_ids)
    poller = CommandPoller(client)

    results = await asyncio.gather(
        *[
            poller.poll_command(
                command_id, instance_id, CommandInvocationStatus.success,
                timeout=10.0, interval=0.3,
            )
            for instance_id in instance_ids
        ]
    )

    assert results == [CommandInvocationStatus.success] * 3


@pytest.mark.asyncio
async def test_unknown_command_is_a_service_error(client):
    with pytest.raises(TransportError) as exc_info:
        await CommandPoller(client).poll_command(
            "missing", "i-1", CommandInvocationStatus.success, timeout=10.0, interval=0.5
        )

    assert exc_info.value.retryable is False
    assert exc_info.value.error.kind == RemoteErrorKind.service
    assert exc_info.value.error.fault_code == "InvalidCommandId"
    assert exc_info.value.error.status == 400


@pytest.mark.asyncio
async def test_server_unavailable(unused_tcp_port_factory):
    port = unused_tcp_port_factory()  # nothing listens here
    async with ControlPlaneClient(
        ClientConfig(base_url=BASE_URL_TEMPLATE.format(port))
    ) as control_plane:
        with pytest.raises(RemoteCallError) as exc_info:
            await control_plane.get_command_invocation("cmd-1", "i-1")

    assert exc_info.value.retryable is True
    assert exc_info.value.error.kind == RemoteErrorKind.dispatch_failure
    assert exc_info.value.error.is_io is True


@pytest.mark.asyncio
@pytest.mark.parametrize("command_id", ["not-json", "unknown"])
async def test_malformed_response(broken_app, command_id):
    async with ControlPlaneClient(
        ClientConfig(base_url=BASE_URL_TEMPLATE.format(broken_app))
    ) as control_plane:
        with pytest.raises(RemoteCallError) as exc_info:
            await control_plane.get_command_invocation(command_id, "i-1")

    assert exc_info.value.retryable is True
    assert exc_info.value.error.kind == RemoteErrorKind.response


@pytest.mark.asyncio
async def test_request_timeout(broken_app):
    async with ControlPlaneClient(
        ClientConfig(base_url=BASE_URL_TEMPLATE.format(broken_app), request_timeout=0.2)
    ) as control_plane:
        with pytest.raises(RemoteCallError) as exc_info:
            await control_plane.get_command_invocation("hang", "i-1")

    error = exc_info.value.error
    assert exc_info.value.retryable is True
    assert error.kind == RemoteErrorKind.timeout or error.is_timeout


@pytest.mark.asyncio
async def test_set_instance_health(server, client):
    server_instance, _ = server

    await client.set_instance_health("i-1", HealthStatus.unhealthy)

    assert server_instance.instance_health == {"i-1": "Unhealthy"}


@pytest.mark.asyncio
async def test_set_instance_health_contention_is_retryable(server, client):
    server_instance, _ = server
    server_instance.contention_rate = 1.0

    with pytest.raises(HealthUpdateError) as exc_info:
        await client.set_instance_health("i-1", "Healthy")

    assert exc_info.value.retryable is True
    assert exc_info.value.error.fault_code == "ResourceContention"
    assert server_instance.instance_health == {}


@pytest.mark.parametrize(
    "error,kind,is_timeout,is_io",
    [
        (aiohttp.ServerTimeoutError("read timeout"), RemoteErrorKind.dispatch_failure, True, False),
        (aiohttp.ServerDisconnectedError(), RemoteErrorKind.dispatch_failure, False, True),
        (
            aiohttp.ServerFingerprintMismatch(b"a", b"b", "localhost", 443),
            RemoteErrorKind.dispatch_failure,
            False,
            False,
        ),
        (asyncio.TimeoutError(), RemoteErrorKind.timeout, False, False),
        (aiohttp.ClientPayloadError("truncated"), RemoteErrorKind.response, False, False),
        (
            aiohttp.ClientResponseError(
                aiohttp.RequestInfo(LOCALHOST, "GET", {}, LOCALHOST),
                (),
                status=400,
                message="Bad status line",
            ),
            RemoteErrorKind.response,
            False,
            False,
        ),
        (aiohttp.InvalidURL("nope"), RemoteErrorKind.other, False, False),
    ],
)
def test_translate_error(error, kind, is_timeout, is_io):
    translated = translate_error(error)

    assert translated.kind == kind
    assert translated.is_timeout is is_timeout
    assert translated.is_io is is_io


@pytest_asyncio.fixture
async def not_http_port(unused_tcp_port_factory):
    """A TCP server that answers every request with bytes that are not HTTP."""

    async def reply_garbage(reader, writer):
        await reader.readuntil(b"\r\n\r\n")
        writer.write(b"NOT HTTP AT ALL\r\n\r\n")
        await writer.drain()
        writer.close()

    port = unused_tcp_port_factory()
    tcp_server = await asyncio.start_server(reply_garbage, "localhost", port)
    try:
        yield port
    finally:
        tcp_server.close()
        await tcp_server.wait_closed()


@pytest.mark.asyncio
async def test_unparseable_http_response_is_retryable(not_http_port):
    async with ControlPlaneClient(
        ClientConfig(base_url=BASE_URL_TEMPLATE.format(not_http_port))
    ) as control_plane:
        with pytest.raises(RemoteCallError) as exc_info:
            await control_plane.get_command_invocation("cmd-1", "i-1")

    assert isinstance(exc_info.value.__cause__, aiohttp.ClientResponseError)
    assert exc_info.value.error.kind == RemoteErrorKind.response
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
@pytest.mark.parametrize("instance_id", ["i/1", "i?1", "i#1"])
async def test_identifiers_are_escaped_in_paths(server, client, instance_id):
    server_instance, _ = server
    command_id = await client.send_command("AWS-RunShellScript", [instance_id])

    result = await CommandPoller(client).poll_command(
        command_id, instance_id, CommandInvocationStatus.success, timeout=10.0, interval=0.5
    )
    await client.set_instance_health(instance_id, HealthStatus.healthy)

    assert result == CommandInvocationStatus.success
    assert server_instance.instance_health == {instance_id: "Healthy"}
