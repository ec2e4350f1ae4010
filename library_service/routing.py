"""Typed route table.

Routes are declared with a method, a path pattern and the query parameters
they read. Path placeholders carry a kind, currently only ``{name:int}``;
a segment that does not parse as that kind is reported as not found rather
than mapped to a default identifier. Exactly one route is tried per request:
the first whose method and path shape match.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from library_service.errors import NotFound
from library_service.protocol import Request, Response

logger = logging.getLogger(__name__)

Handler = Callable[..., Response]


# Largest value an SQLite INTEGER column can hold
MAX_INT = 2**63 - 1


def _parse_int(value: str) -> Optional[int]:
    if not value.isdigit() or not value.isascii():
        return None
    number = int(value)
    return number if number <= MAX_INT else None


PARAM_PARSERS: Dict[str, Callable[[str], Optional[Any]]] = {
    "int": _parse_int,
    "str": lambda value: value or None,
}


@dataclass(frozen=True)
class Segment:
    literal: Optional[str] = None
    name: Optional[str] = None
    kind: str = "str"


def compile_pattern(pattern: str) -> Tuple[Segment, ...]:
    segments = []
    for part in pattern.strip("/").split("/"):
        if part.startswith("{") and part.endswith("}"):
            name, _, kind = part[1:-1].partition(":")
            kind = kind or "str"
            if kind not in PARAM_PARSERS:
                raise ValueError(f"Unknown parameter kind '{kind}' in route {pattern}")
            segments.append(Segment(name=name, kind=kind))
        else:
            segments.append(Segment(literal=part))
    return tuple(segments)


@dataclass
class Route:
    method: str
    pattern: str
    handler: Handler
    query_params: Tuple[str, ...] = ()
    segments: Tuple[Segment, ...] = field(init=False)

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.segments = compile_pattern(self.pattern)

    def matches(self, method: str, parts: List[str]) -> bool:
        if method != self.method or len(parts) != len(self.segments):
            return False
        return all(seg.literal is None or seg.literal == part for seg, part in zip(self.segments, parts))

    def extract(self, request: Request, parts: List[str]) -> Dict[str, Any]:
        """Return the typed path and query parameters; raise NotFound for a malformed path value."""
        params: Dict[str, Any] = {}
        for seg, part in zip(self.segments, parts):
            if seg.name is None:
                continue
            value = PARAM_PARSERS[seg.kind](part)
            if value is None:
                logger.info(f"Rejected {seg.kind} parameter '{seg.name}' = {part!r} for {self.pattern}")
                raise NotFound("Not Found")
            params[seg.name] = value
        for name in self.query_params:
            params[name] = request.query.get(name, "")
        return params


def split_path(path: str) -> List[str]:
    return path.strip("/").split("/")


class Router:
    def __init__(self) -> None:
        self.routes: List[Route] = []

    def add(self, method: str, pattern: str, handler: Handler, query: Tuple[str, ...] = ()) -> Route:
        route = Route(method, pattern, handler, query)
        self.routes.append(route)
        return route

    def resolve(self, request: Request) -> Tuple[Route, Dict[str, Any]]:
        """Find the route for ``request``; raise NotFound if none matches."""
        parts = split_path(request.path)
        for route in self.routes:
            if route.matches(request.method, parts):
                return route, route.extract(request, parts)
        raise NotFound("Not Found")

    def dispatch(self, request: Request) -> Response:
        route, params = self.resolve(request)
        return route.handler(request, **params)
