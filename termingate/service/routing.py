"""Route classification for the request-security pipeline.

``classify(method, path)`` maps an exact method/path pair to the access level
it requires. There is no pattern compilation at request time: the public
allow-list is an exact-match set, static assets are recognised by extension,
and everything else goes through fixed prefix rules. Routes matching no rule
require an authenticated principal.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterable, Optional, Tuple


class RouteClass(str, Enum):
    PUBLIC = "public"
    REQUIRES_AUTHENTICATION = "requires_authentication"
    REQUIRES_ADMIN_ROLE = "requires_admin_role"

    @property
    def is_protected(self) -> bool:
        return self is not RouteClass.PUBLIC


RouteKey = Tuple[str, str]

PUBLIC_ROUTES: frozenset[RouteKey] = frozenset(
    {
        # Appointment request form
        ("GET", "/outlook/freie-slots"),
        ("GET", "/outlook/available-slots"),
        ("POST", "/anfrage"),
        ("GET", "/csrf-token"),
        # Pages and health
        ("GET", "/"),
        ("GET", "/terminanfrage.html"),
        ("GET", "/health"),
        # Login area
        ("GET", "/login"),
        ("POST", "/login"),
        ("POST", "/logout"),
    }
)

ADMIN_ROUTES: frozenset[RouteKey] = frozenset(
    {
        ("GET", "/admin"),
        ("GET", "/anfrage"),
        ("GET", "/outlook/events"),
        ("POST", "/outlook/events"),
        ("GET", "/outlook/test"),
        ("GET", "/outlook/health"),
        ("GET", "/users"),
        ("POST", "/users"),
        ("GET", "/anfrage/stats/overview"),
        ("GET", "/anfrage/export/csv"),
    }
)

STATIC_ASSET_PATTERN = re.compile(
    r"\.(js|css|png|jpg|jpeg|gif|ico|svg|woff|woff2|ttf|eot|map)$"
)

# Collection whose every method needs admin, apart from the allow-listed create
ADMIN_COLLECTION_PREFIX = "/anfrage"
# Sub-resources whose update/delete verbs need admin
ADMIN_SUBRESOURCE_VERBS: Tuple[Tuple[str, frozenset[str]], ...] = (
    ("/outlook/events/", frozenset({"PUT", "DELETE", "PATCH"})),
    ("/users/", frozenset({"PUT", "DELETE", "PATCH"})),
)


class RouteClassifier:
    """Deterministic (method, path) -> RouteClass mapping."""

    def __init__(
        self,
        public_routes: Optional[Iterable[RouteKey]] = None,
        admin_routes: Optional[Iterable[RouteKey]] = None,
    ) -> None:
        self.public_routes = frozenset(
            (m.upper(), p) for m, p in (PUBLIC_ROUTES if public_routes is None else public_routes)
        )
        self.admin_routes = frozenset(
            (m.upper(), p) for m, p in (ADMIN_ROUTES if admin_routes is None else admin_routes)
        )

    def is_public(self, method: str, path: str) -> bool:
        if (method, path) in self.public_routes:
            return True
        return method == "GET" and bool(STATIC_ASSET_PATTERN.search(path))

    def requires_admin(self, method: str, path: str) -> bool:
        if (method, path) in self.admin_routes:
            return True
        if path.startswith("/admin"):
            return True
        if path == ADMIN_COLLECTION_PREFIX or path.startswith(ADMIN_COLLECTION_PREFIX + "/"):
            return True
        for prefix, verbs in ADMIN_SUBRESOURCE_VERBS:
            if path.startswith(prefix) and method in verbs:
                return True
        return False

    def classify(self, method: str, path: str) -> RouteClass:
        method = method.upper()
        # HEAD is served by the GET handler and gets the same access level
        if method == "HEAD":
            method = "GET"
        # Allow-list short-circuits every prefix rule
        if self.is_public(method, path):
            return RouteClass.PUBLIC
        if self.requires_admin(method, path):
            return RouteClass.REQUIRES_ADMIN_ROLE
        return RouteClass.REQUIRES_AUTHENTICATION


default_classifier = RouteClassifier()


def classify(method: str, path: str) -> RouteClass:
    return default_classifier.classify(method, path)


__all__ = [
    "ADMIN_ROUTES",
    "PUBLIC_ROUTES",
    "RouteClass",
    "RouteClassifier",
    "classify",
    "default_classifier",
]
