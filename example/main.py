import asyncio

from control_plane_server import ControlPlaneServer
from command_poller.control_plane_client import ControlPlaneClient
from command_poller.errors import PollerError
from command_poller.models import (
    ClientConfig,
    CommandInvocationStatus,
    HealthStatus,
    StatusPollingConfig,
)
from command_poller.poller import CommandPoller


async def status_changed(poll_attempt):
    print(f"Status changed to: {poll_attempt.status.value}")
    print(f"Elapsed time: {poll_attempt.elapsed_time:.6f}s")


async def main():
    PORT = 8000
    server = ControlPlaneServer(completion_time=8.0, failure_rate=0.2, contention_rate=0.3)
    await server.start(port=PORT)
    print(f"Control plane started on http://localhost:{PORT}")

    config = StatusPollingConfig(interval=2.0, timeout=30.0)

    async with ControlPlaneClient(ClientConfig(base_url=f"http://localhost:{PORT}")) as client:
        poller = CommandPoller(client, config, on_status_change=status_changed)
        instance_id = "i-0123456789abcdef0"
        try:
            command_id = await client.send_command("AWS-RunShellScript", [instance_id])
            final_status = await poller.poll_command(
                command_id, instance_id, CommandInvocationStatus.success
            )
            print(f"Final status: {final_status.value}")
            await client.set_instance_health(instance_id, HealthStatus.healthy)
        except PollerError as e:
            print(f"Error occurred: {e} (retryable: {e.retryable})")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
