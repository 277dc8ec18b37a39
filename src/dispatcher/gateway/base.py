from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

GatewayHealth = Literal["ok", "warn", "down", "unknown"]


class GatewayError(RuntimeError):
    """Raised when the gateway cannot create a session."""

    def __init__(
        self,
        message: str,
        *,
        gateway: str | None = None,
        status_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.gateway = gateway
        self.status_code = status_code
        self.retriable = retriable


class GatewayTimeoutError(GatewayError):
    """Raised when a spawn request exceeds the configured timeout."""


class BriefValidationError(GatewayError):
    """Raised when a task brief is missing required fields."""

    def __init__(self, message: str, *, missing: list[str] | None = None, **kwargs: Any) -> None:
        kwargs["retriable"] = False
        super().__init__(message, **kwargs)
        self.missing = list(missing or [])


@dataclass(slots=True)
class SpawnSession:
    session_key: str
    run_id: str | None = None


@dataclass(slots=True)
class GatewayStatus:
    health: GatewayHealth
    summary: str
    signals: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"health": self.health, "summary": self.summary, "signals": list(self.signals)}


class SpawnGatewayClient(ABC):
    @abstractmethod
    async def spawn_session(self, worker: str, brief: str, session_id: str) -> SpawnSession:
        """Create an isolated execution session for ``worker``."""

    @abstractmethod
    async def status(self) -> GatewayStatus:
        """Report coarse gateway health."""

    async def aclose(self) -> None:
        return None
