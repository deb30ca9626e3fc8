from __future__ import annotations

from enum import Enum
from typing import Iterable, Sequence


class RouteClass(str, Enum):
    PROTECTED = "protected"
    ADMIN_PROTECTED = "admin_protected"
    AUTH_ENTRY = "auth_entry"
    PUBLIC = "public"

    @property
    def requires_session(self) -> bool:
        return self in (RouteClass.PROTECTED, RouteClass.ADMIN_PROTECTED)


def path_matches(path: str, prefix: str) -> bool:
    """Segment-aware prefix match: ``/admin`` covers ``/admin/x`` but not ``/administrator``."""
    if prefix == "/":
        return True
    return path == prefix or path.startswith(prefix + "/")


def matches_any(path: str, prefixes: Iterable[str]) -> bool:
    return any(path_matches(path, prefix) for prefix in prefixes)


class RouteClassifier:
    """Map a request path to a :class:`RouteClass`.

    Lists are checked in a fixed order (admin, protected, auth entry) and the
    first match wins. A path on both the protected and auth-entry lists is
    therefore protected.
    """

    def __init__(
        self,
        *,
        protected_routes: Sequence[str],
        admin_routes: Sequence[str] = (),
        auth_routes: Sequence[str] = (),
    ) -> None:
        self.admin_routes = tuple(admin_routes)
        self.protected_routes = tuple(protected_routes)
        self.auth_routes = tuple(auth_routes)

    def classify(self, path: str) -> RouteClass:
        if matches_any(path, self.admin_routes):
            return RouteClass.ADMIN_PROTECTED
        if matches_any(path, self.protected_routes):
            return RouteClass.PROTECTED
        if matches_any(path, self.auth_routes):
            return RouteClass.AUTH_ENTRY
        return RouteClass.PUBLIC
