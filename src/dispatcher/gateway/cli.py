from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from dispatcher.gateway.base import (
    BriefValidationError,
    GatewayError,
    GatewayStatus,
    GatewayTimeoutError,
    SpawnGatewayClient,
    SpawnSession,
)
from dispatcher.gateway.status import parse_gateway_status

log = logging.getLogger(__name__)

USAGE_ERROR_EXIT_CODE = 2


class CliGatewayClient(SpawnGatewayClient):
    """Spawns sessions by running ``openclaw agent`` on the gateway host.

    The command returns once the session run finishes, so a spawn holds its
    concurrency slot for the length of the run.
    """

    def __init__(
        self,
        binary: str = "openclaw",
        *,
        run_timeout_seconds: int = 600,
        working_directory: Path | None = None,
    ) -> None:
        self.binary = binary
        self.run_timeout_seconds = run_timeout_seconds
        self.working_directory = working_directory

    def build_command(self, worker: str, brief: str) -> list[str]:
        return [
            self.binary,
            "agent",
            "--agent",
            worker,
            "--message",
            brief,
            "--timeout",
            str(self.run_timeout_seconds),
            "--json",
        ]

    async def _run(self, command: list[str], timeout_seconds: float) -> tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise GatewayError(f"Gateway binary not found: {self.binary}", gateway="cli") from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise GatewayTimeoutError(
                f"Gateway command timed out after {timeout_seconds:.1f}s", gateway="cli"
            ) from exc
        return (
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace").strip(),
            stderr.decode("utf-8", errors="replace").strip(),
        )

    @staticmethod
    def parse_output(stdout: str, session_id: str) -> SpawnSession:
        try:
            payload = json.loads(stdout) if stdout else {}
        except json.JSONDecodeError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        session_key = payload.get("sessionKey") or payload.get("childSessionKey") or session_id
        run_id = payload.get("runId")
        return SpawnSession(session_key=str(session_key), run_id=str(run_id) if run_id else None)

    async def spawn_session(self, worker: str, brief: str, session_id: str) -> SpawnSession:
        command = self.build_command(worker, brief)
        log.debug("Running %s for %s (%s)", command[:4], worker, session_id)
        return_code, stdout, stderr = await self._run(command, self.run_timeout_seconds + 30)
        if return_code == USAGE_ERROR_EXIT_CODE:
            raise BriefValidationError(
                f"Gateway rejected spawn arguments: {stderr[:200]}", gateway="cli"
            )
        if return_code != 0:
            raise GatewayError(
                f"Gateway command failed with exit code {return_code}: {stderr[:400]}",
                gateway="cli",
            )
        return self.parse_output(stdout, session_id)

    async def status(self) -> GatewayStatus:
        try:
            return_code, stdout, stderr = await self._run([self.binary, "gateway", "status"], 15.0)
        except GatewayTimeoutError:
            return GatewayStatus("unknown", "status command timed out", ["timeout"])
        except GatewayError as exc:
            return GatewayStatus("unknown", str(exc)[:120], [])
        parsed = parse_gateway_status(f"{stdout}\n{stderr}".strip())
        if return_code != 0 and parsed.health == "unknown":
            parsed.signals.append(f"exit {return_code}")
        return parsed
