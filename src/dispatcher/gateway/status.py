"""Parse ``openclaw gateway status`` output into a coarse health value.

The CLI output varies by environment (systemd present or absent, containers),
so an explicit RPC probe line is trusted first and looser signals after it.
"""

from __future__ import annotations

import re

from dispatcher.gateway.base import GatewayStatus

RPC_PROBE_PATTERN = re.compile(r"^rpc probe\s*:", re.IGNORECASE)
PROBE_OK_PATTERN = re.compile(r"\bok\b", re.IGNORECASE)
PROBE_FAILED_PATTERN = re.compile(r"(fail|error|timeout|refused|unreachable)", re.IGNORECASE)
RUNTIME_UNKNOWN_PATTERN = re.compile(r"runtime:\s*unknown", re.IGNORECASE)
LISTENING_PATTERN = re.compile(r"\blistening\s*:", re.IGNORECASE)
STOPPED_PATTERN = re.compile(r"(not running|inactive|stopped)", re.IGNORECASE)
CONFIG_ISSUE_PATTERN = re.compile(
    r"(config issue|looks out of date|doctor --repair|service config)", re.IGNORECASE
)


def parse_gateway_status(text: str | None) -> GatewayStatus:
    raw = text or ""
    signals: list[str] = []

    rpc_line = next(
        (line.strip() for line in raw.splitlines() if RPC_PROBE_PATTERN.match(line.strip())),
        None,
    )
    if rpc_line:
        signals.append(rpc_line)
        if PROBE_OK_PATTERN.search(rpc_line):
            if RUNTIME_UNKNOWN_PATTERN.search(raw):
                return GatewayStatus("warn", "probe ok (runtime unknown)", signals)
            return GatewayStatus("ok", "probe ok", signals)
        if PROBE_FAILED_PATTERN.search(rpc_line):
            return GatewayStatus("down", "probe failed", signals)

    if LISTENING_PATTERN.search(raw) or "dashboard: http" in raw.lower():
        signals.append("listening")
        return GatewayStatus("ok", "listening", signals)

    if STOPPED_PATTERN.search(raw):
        signals.append("not running")
        return GatewayStatus("down", "stopped", signals)

    if CONFIG_ISSUE_PATTERN.search(raw):
        signals.append("config issue")
        return GatewayStatus("warn", "config issue", signals)

    lines = raw.splitlines()
    first = lines[0].strip() if lines else ""
    return GatewayStatus("unknown", (first or "unknown")[:120], signals)
