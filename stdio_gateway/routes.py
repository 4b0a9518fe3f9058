"""Name-prefix routing from public paths to backend targets."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from types import MappingProxyType

from .config import ServerConfig
from .errors import ConfigError


@dataclass(frozen=True)
class RouteEntry:
    name: str
    host: str
    port: int

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def netloc(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class Resolution:
    route: RouteEntry
    remainder: str  # path with the route segment stripped, query kept


class RouteTable:
    """Immutable ``name -> target`` mapping, built once at startup."""

    def __init__(self, entries: Iterable[RouteEntry]) -> None:
        table: dict[str, RouteEntry] = {}
        for entry in entries:
            if not entry.name or "/" in entry.name:
                raise ConfigError(f"Invalid route name: {entry.name!r}")
            if entry.name in table:
                raise ConfigError(f"Duplicate route name: {entry.name}")
            table[entry.name] = entry
        self._routes = MappingProxyType(table)

    @classmethod
    def from_configs(
        cls, configs: Iterable[ServerConfig], host: str = "127.0.0.1"
    ) -> RouteTable:
        return cls(RouteEntry(c.name, host, c.port) for c in configs)

    def __iter__(self) -> Iterator[RouteEntry]:
        return iter(self._routes.values())

    def __len__(self) -> int:
        return len(self._routes)

    def __contains__(self, name: object) -> bool:
        return name in self._routes

    def get(self, name: str) -> RouteEntry | None:
        return self._routes.get(name)

    def resolve(self, path: str) -> Resolution | None:
        """Match the first path segment against a route name.

        /supabase/sse?x=1  ->  route "supabase", remainder "/sse?x=1"
        /supabase          ->  route "supabase", remainder "/"
        /supabasex/sse     ->  None
        """
        path, sep, query = path.partition("?")
        if not path.startswith("/"):
            return None
        name, slash, rest = path[1:].partition("/")
        route = self._routes.get(name)
        if route is None:
            return None
        remainder = "/" + rest if slash else "/"
        if sep:
            remainder = f"{remainder}?{query}"
        return Resolution(route, remainder)
