from dispatcher.gateway.base import (
    BriefValidationError,
    GatewayError,
    GatewayStatus,
    GatewayTimeoutError,
    SpawnGatewayClient,
    SpawnSession,
)
from dispatcher.gateway.cli import CliGatewayClient
from dispatcher.gateway.http import HttpGatewayClient
from dispatcher.gateway.status import parse_gateway_status

__all__ = [
    "BriefValidationError",
    "CliGatewayClient",
    "GatewayError",
    "GatewayStatus",
    "GatewayTimeoutError",
    "HttpGatewayClient",
    "SpawnGatewayClient",
    "SpawnSession",
    "parse_gateway_status",
]
