from __future__ import annotations

from collections.abc import Iterable, Mapping

from dispatcher.config import ConfigError


class WorkerDirectory:
    """Known worker identities plus a capability tag -> identity table.

    The table is validated once at construction: every route must point at a
    declared identity. Tag lookups are exact, case-insensitive matches.
    """

    def __init__(self, identities: Iterable[str], routes: Mapping[str, str] | None = None) -> None:
        self._identities = {str(item).strip() for item in identities if str(item).strip()}
        self._routes: dict[str, str] = {}
        unknown: list[str] = []
        for tag, identity in (routes or {}).items():
            normalized_tag = str(tag).strip().lower()
            normalized_identity = str(identity).strip()
            if not normalized_tag:
                continue
            if normalized_identity not in self._identities:
                unknown.append(f"{tag} -> {identity}")
                continue
            self._routes[normalized_tag] = normalized_identity
        if unknown:
            raise ConfigError("Worker routes point at unknown identities: " + ", ".join(unknown))

    @property
    def identities(self) -> list[str]:
        return sorted(self._identities)

    @property
    def routes(self) -> dict[str, str]:
        return dict(self._routes)

    def is_known(self, identity: str | None) -> bool:
        return bool(identity) and identity in self._identities

    def resolve(self, owner: str | None, tags: Iterable[str] = ()) -> str | None:
        """Return the worker for a task: its explicit owner, else the first routed tag."""
        if owner:
            return owner if self.is_known(owner) else None
        for tag in tags:
            identity = self._routes.get(str(tag).strip().lower())
            if identity:
                return identity
        return None
