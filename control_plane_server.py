import random
import uuid
from datetime import datetime

from aiohttp import web
from loguru import logger


def _fault(code: str, message: str, status: int = 400) -> web.Response:
    return web.json_response({"fault": {"code": code, "message": message}}, status=status)


class ControlPlaneServer:
    """Simulated control plane that runs dispatched commands on a timer."""

    def __init__(
        self,
        completion_time: float = 10.0,
        failure_rate: float = 0.1,
        contention_rate: float = 0.0,
    ):
        self.completion_time = completion_time
        self.failure_rate = failure_rate
        self.contention_rate = contention_rate
        self.commands = {}
        self.instance_health = {}
        self.runner = None
        self.app = web.Application()
        self.app.router.add_post("/commands", self.handle_send_command)
        self.app.router.add_get(
            "/commands/{command_id}/invocations/{instance_id}",
            self.handle_get_invocation,
        )
        self.app.router.add_post(
            "/instances/{instance_id}/health", self.handle_set_health
        )
        self.logger = logger

    async def handle_send_command(self, request):
        try:
            body = await request.json()
            document_name = body["document_name"]
            instance_ids = list(body["instance_ids"])
        except (ValueError, KeyError, TypeError):
            return _fault("ValidationError", "document_name and instance_ids are required")

        command_id = str(uuid.uuid4())
        self.commands[command_id] = {
            "document_name": document_name,
            "start_time": datetime.now(),
            "outcomes": {
                instance_id: "Failed" if random.random() < self.failure_rate else "Success"
                for instance_id in instance_ids
            },
        }
        self.logger.info(f"Accepted command {command_id} for {instance_ids}")
        return web.json_response({"command_id": command_id})

    async def handle_get_invocation(self, request):
        command_id = request.match_info["command_id"]
        instance_id = request.match_info["instance_id"]
        command = self.commands.get(command_id)
        if command is None:
            return _fault("InvalidCommandId", f"unknown command {command_id}")
        if instance_id not in command["outcomes"]:
            return _fault("InvalidInstanceId", f"{instance_id} is not a target of {command_id}")

        elapsed = (datetime.now() - command["start_time"]).total_seconds()
        if elapsed >= self.completion_time:
            status = command["outcomes"][instance_id]
        elif elapsed >= self.completion_time / 2:
            status = "InProgress"
        else:
            status = "Pending"

        self.logger.info(f"Returning {status} for {command_id}/{instance_id} (elapsed: {elapsed:.1f}s)")
        return web.json_response(
            {"command_id": command_id, "instance_id": instance_id, "status": status}
        )

    async def handle_set_health(self, request):
        instance_id = request.match_info["instance_id"]
        try:
            body = await request.json()
            health_status = body["health_status"]
        except (ValueError, KeyError, TypeError):
            return _fault("ValidationError", "health_status is required")
        if health_status not in ("Healthy", "Unhealthy"):
            return _fault("ValidationError", f"invalid health_status {health_status!r}")

        if random.random() < self.contention_rate:
            self.logger.info(f"Rejecting health update for {instance_id} (contention)")
            return _fault("ResourceContention", "instance is being updated", status=500)

        self.instance_health[instance_id] = health_status
        self.logger.info(f"Set {instance_id} health to {health_status}")
        return web.json_response({})

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Control plane started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
