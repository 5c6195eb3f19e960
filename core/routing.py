"""
Route table for the gateway

Maps a request path to exactly one target. The table is built once from
fixed configuration and never changes afterwards.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional, Tuple

from config.models import UpstreamRole


class RouteTarget(str, Enum):
    HEALTH = "health"
    STATIC = "static"
    BACKEND_PROXY = "backend_proxy"
    FRONTEND_PROXY = "frontend_proxy"

    @property
    def role(self) -> Optional[UpstreamRole]:
        if self is RouteTarget.BACKEND_PROXY:
            return UpstreamRole.BACKEND
        if self is RouteTarget.FRONTEND_PROXY:
            return UpstreamRole.FRONTEND
        return None


class MatchKind(str, Enum):
    EXACT = "exact"
    PREFIX = "prefix"
    STATIC_EXISTS = "static_exists"
    ANY = "any"


# Ties within a priority band: exact rules first, then prefix
_KIND_ORDER = {
    MatchKind.EXACT: 0,
    MatchKind.PREFIX: 1,
    MatchKind.STATIC_EXISTS: 2,
    MatchKind.ANY: 3,
}

PRIORITY_HEALTH = 0
PRIORITY_STATIC = 10
PRIORITY_BACKEND = 20
PRIORITY_CATCH_ALL = 100

HEALTH_PATHS = ("/health", "/healthz", "/ready", "/ping", "/status")


def prefix_matches(prefix: str, path: str) -> bool:
    """"/api" matches "/api" and "/api/..." but not "/apix"."""
    if prefix == "/":
        return path.startswith("/")
    return path == prefix or path.startswith(prefix + "/")


@dataclass(frozen=True)
class RouteRule:
    name: str
    kind: MatchKind
    pattern: str
    target: RouteTarget
    priority: int

    def matches(self, path: str, static_exists: Callable[[str], bool]) -> bool:
        if self.kind is MatchKind.EXACT:
            return path == self.pattern
        if self.kind is MatchKind.PREFIX:
            return prefix_matches(self.pattern, path)
        if self.kind is MatchKind.STATIC_EXISTS:
            return static_exists(path)
        return True


class RouteTable:
    """
    Ordered, immutable rule list.

    route() is pure given the static_exists predicate, and total because
    the last rule always matches.
    """

    def __init__(self, rules: Iterable[RouteRule], static_exists: Optional[Callable[[str], bool]] = None):
        ordered = sorted(rules, key=lambda rule: (rule.priority, _KIND_ORDER[rule.kind]))
        if not ordered or ordered[-1].kind is not MatchKind.ANY:
            raise ValueError("Route table must end with a catch-all rule")
        self._rules: Tuple[RouteRule, ...] = tuple(ordered)
        self._static_exists = static_exists or (lambda _path: False)

    @property
    def rules(self) -> Tuple[RouteRule, ...]:
        return self._rules

    def route(self, path: str) -> RouteRule:
        for rule in self._rules:
            if rule.matches(path, self._static_exists):
                return rule
        # Unreachable: the catch-all always matches
        return self._rules[-1]

    @classmethod
    def build(
        cls,
        api_prefix: str,
        frontend_enabled: bool,
        static_exists: Optional[Callable[[str], bool]] = None,
        health_paths: Iterable[str] = HEALTH_PATHS,
    ) -> "RouteTable":
        """
        Standard gateway table: health, existing static file, backend prefix,
        then the catch-all (frontend dev server when configured, else static
        assets with SPA fallback).
        """
        rules = [
            RouteRule(f"health:{path}", MatchKind.EXACT, path, RouteTarget.HEALTH, PRIORITY_HEALTH)
            for path in health_paths
        ]
        rules.append(RouteRule("static", MatchKind.STATIC_EXISTS, "*", RouteTarget.STATIC, PRIORITY_STATIC))
        rules.append(RouteRule("backend", MatchKind.PREFIX, api_prefix, RouteTarget.BACKEND_PROXY, PRIORITY_BACKEND))
        rules.append(RouteRule(
            "catch_all",
            MatchKind.ANY,
            "*",
            RouteTarget.FRONTEND_PROXY if frontend_enabled else RouteTarget.STATIC,
            PRIORITY_CATCH_ALL,
        ))
        return cls(rules, static_exists)
