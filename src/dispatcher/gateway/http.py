from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from dispatcher.gateway.base import (
    BriefValidationError,
    GatewayError,
    GatewayStatus,
    GatewayTimeoutError,
    SpawnGatewayClient,
    SpawnSession,
)

log = logging.getLogger(__name__)

VALIDATION_STATUS_CODES = {400, 422}


class HttpGatewayClient(SpawnGatewayClient):
    """Spawns sessions through the gateway's ``/tools/invoke`` endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        model: str | None = None,
        timeout_seconds: float = 15.0,
        run_timeout_seconds: int = 600,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.run_timeout_seconds = run_timeout_seconds
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def build_payload(self, worker: str, brief: str, session_id: str) -> dict[str, Any]:
        args: dict[str, Any] = {
            "task": brief,
            "label": session_id,
            "agentId": worker,
            "runTimeoutSeconds": self.run_timeout_seconds,
        }
        if self.model:
            args["model"] = self.model
        return {"tool": "sessions_spawn", "args": args}

    @staticmethod
    def _accepted_session(details: Any) -> SpawnSession | None:
        if not isinstance(details, dict) or details.get("status") != "accepted":
            return None
        session_key = details.get("childSessionKey")
        if not isinstance(session_key, str) or not session_key:
            return None
        run_id = details.get("runId")
        return SpawnSession(session_key=session_key, run_id=str(run_id) if run_id else None)

    @classmethod
    def parse_response(cls, data: Any) -> SpawnSession:
        result = data.get("result") if isinstance(data, dict) else None
        if isinstance(result, dict):
            session = cls._accepted_session(result.get("details"))
            if session is not None:
                return session
            content = result.get("content")
            if isinstance(content, list):
                for item in content:
                    if not isinstance(item, dict) or item.get("type") != "text":
                        continue
                    try:
                        parsed = json.loads(str(item.get("text", "")))
                    except json.JSONDecodeError:
                        continue
                    session = cls._accepted_session(parsed)
                    if session is not None:
                        return session
        preview = json.dumps(data, ensure_ascii=False)[:200]
        raise GatewayError(f"Unexpected response: {preview}", gateway="http")

    async def spawn_session(self, worker: str, brief: str, session_id: str) -> SpawnSession:
        url = f"{self.base_url}/tools/invoke"
        try:
            response = await self._client.post(
                url,
                headers=self._headers(),
                json=self.build_payload(worker, brief, session_id),
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise GatewayTimeoutError(
                f"Gateway spawn timed out after {self.timeout_seconds:.1f}s",
                gateway="http",
            ) from exc
        except httpx.TransportError as exc:
            raise GatewayError(f"Gateway unreachable: {exc}", gateway="http") from exc

        if response.status_code in VALIDATION_STATUS_CODES:
            raise BriefValidationError(
                f"Gateway rejected brief ({response.status_code}): {response.text[:200]}",
                gateway="http",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise GatewayError(
                f"Gateway returned {response.status_code}: {response.text[:200]}",
                gateway="http",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError(
                f"Gateway returned non-JSON body: {response.text[:200]}", gateway="http"
            ) from exc
        session = self.parse_response(data)
        log.debug("Gateway accepted session %s for %s", session.session_key, worker)
        return session

    async def status(self) -> GatewayStatus:
        url = f"{self.base_url}/health"
        try:
            response = await self._client.get(url, headers=self._headers())
        except httpx.TimeoutException:
            return GatewayStatus("unknown", "health probe timed out", ["timeout"])
        except httpx.TransportError as exc:
            return GatewayStatus("down", "unreachable", [str(exc)[:120]])
        if response.status_code == 200:
            return GatewayStatus("ok", "health ok", [f"http {response.status_code}"])
        return GatewayStatus(
            "warn", f"health returned {response.status_code}", [f"http {response.status_code}"]
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
