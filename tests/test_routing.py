"""Tests for route classification.

Covers:
- Every allow-listed pair is public
- Removing an allow-list entry only changes that pair
- Admin prefixes, the appointment collection and sub-resource verbs
- Unmatched routes need an authenticated principal
"""

import pytest

from termingate.service.routing import (
    ADMIN_ROUTES,
    PUBLIC_ROUTES,
    RouteClass,
    RouteClassifier,
    classify,
)

SAMPLE_PAIRS = [
    ("GET", "/admin"),
    ("GET", "/admin/security"),
    ("PUT", "/anfrage/5"),
    ("POST", "/anfrage/5/ablehnen"),
    ("DELETE", "/outlook/events/abc"),
    ("GET", "/outlook/events/abc"),
    ("GET", "/dashboard"),
    ("GET", "/css/site.css"),
    ("POST", "/users"),
]


class TestPublicAllowList:
    """Exact allow-list lookup."""

    @pytest.mark.parametrize("method,path", sorted(PUBLIC_ROUTES))
    def test_allow_listed_pairs_are_public(self, method, path):
        assert classify(method, path) is RouteClass.PUBLIC

    @pytest.mark.parametrize("entry", sorted(PUBLIC_ROUTES))
    def test_removing_entry_changes_only_that_pair(self, entry):
        full = RouteClassifier()
        reduced = RouteClassifier(public_routes=PUBLIC_ROUTES - {entry})

        assert reduced.classify(*entry) is not RouteClass.PUBLIC
        for other in PUBLIC_ROUTES - {entry}:
            assert reduced.classify(*other) is RouteClass.PUBLIC
        for pair in SAMPLE_PAIRS:
            assert reduced.classify(*pair) is full.classify(*pair)

    def test_allow_list_wins_over_collection_prefix(self):
        assert classify("POST", "/anfrage") is RouteClass.PUBLIC
        assert classify("GET", "/anfrage") is RouteClass.REQUIRES_ADMIN_ROLE

    def test_method_is_case_insensitive(self):
        assert classify("get", "/csrf-token") is RouteClass.PUBLIC

    def test_exact_match_only(self):
        assert classify("GET", "/csrf-token/") is not RouteClass.PUBLIC
        assert classify("GET", "/health?x=1") is not RouteClass.PUBLIC

    @pytest.mark.parametrize(
        "path", ["/js/app.js", "/css/site.css", "/img/logo.svg", "/favicon.ico", "/fonts/a.woff2"]
    )
    def test_static_assets_are_public_for_get(self, path):
        assert classify("GET", path) is RouteClass.PUBLIC

    def test_static_extension_does_not_open_mutations(self):
        assert classify("POST", "/js/app.js") is RouteClass.REQUIRES_AUTHENTICATION


class TestProtectedRoutes:
    """Prefix rules behind the allow-list."""

    @pytest.mark.parametrize("method,path", sorted(ADMIN_ROUTES))
    def test_admin_routes_require_admin(self, method, path):
        assert classify(method, path) is RouteClass.REQUIRES_ADMIN_ROLE

    @pytest.mark.parametrize("path", ["/admin", "/admin/security", "/admin/anything/deeper"])
    def test_admin_prefix(self, path):
        assert classify("GET", path) is RouteClass.REQUIRES_ADMIN_ROLE

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/anfrage/5"),
            ("PUT", "/anfrage/5"),
            ("DELETE", "/anfrage/5"),
            ("PATCH", "/anfrage/5"),
            ("POST", "/anfrage/5/ablehnen"),
            ("PUT", "/anfrage"),
        ],
    )
    def test_appointment_collection_requires_admin(self, method, path):
        assert classify(method, path) is RouteClass.REQUIRES_ADMIN_ROLE

    def test_collection_prefix_is_segment_bound(self):
        assert classify("GET", "/anfragen-info") is RouteClass.REQUIRES_AUTHENTICATION

    @pytest.mark.parametrize("method", ["PUT", "DELETE", "PATCH"])
    def test_subresource_mutations_require_admin(self, method):
        assert classify(method, "/outlook/events/evt-1") is RouteClass.REQUIRES_ADMIN_ROLE
        assert classify(method, "/users/u-1") is RouteClass.REQUIRES_ADMIN_ROLE

    def test_subresource_read_needs_only_authentication(self):
        assert classify("GET", "/outlook/events/evt-1") is RouteClass.REQUIRES_AUTHENTICATION

    @pytest.mark.parametrize(
        "method,path", [("GET", "/dashboard"), ("POST", "/api/things"), ("HEAD", "/dashboard")]
    )
    def test_unmatched_routes_fail_closed(self, method, path):
        assert classify(method, path) is RouteClass.REQUIRES_AUTHENTICATION

    @pytest.mark.parametrize(
        "path", ["/users", "/admin", "/anfrage", "/health", "/css/site.css", "/dashboard"]
    )
    def test_head_is_classified_like_get(self, path):
        assert classify("HEAD", path) is classify("GET", path)

    def test_head_on_admin_collection(self):
        assert classify("HEAD", "/users") is RouteClass.REQUIRES_ADMIN_ROLE

    def test_route_class_protection_flag(self):
        assert not RouteClass.PUBLIC.is_protected
        assert RouteClass.REQUIRES_AUTHENTICATION.is_protected
        assert RouteClass.REQUIRES_ADMIN_ROLE.is_protected
