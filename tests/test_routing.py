"""
Tests for the route table
"""

import pytest

from config.models import UpstreamRole
from core.routing import MatchKind, RouteRule, RouteTable, RouteTarget, prefix_matches


STATIC_FILES = {"/robots.txt", "/assets/app.js", "/api/openapi.json"}


def static_exists(path):
    return path in STATIC_FILES


@pytest.fixture
def table():
    return RouteTable.build(api_prefix="/api", frontend_enabled=False, static_exists=static_exists)


class TestPrefixMatching:

    @pytest.mark.parametrize("path,expected", [
        ("/api", True),
        ("/api/", True),
        ("/api/rides/42", True),
        ("/apix", False),
        ("/API/rides", False),
        ("/", False),
    ])
    def test_api_prefix(self, path, expected):
        assert prefix_matches("/api", path) is expected

    def test_root_prefix_matches_everything(self):
        assert prefix_matches("/", "/anything")


class TestRouteTable:
    """Route selection and rule ordering"""

    @pytest.mark.parametrize("path", ["/health", "/healthz", "/ready", "/ping", "/status"])
    def test_health_paths(self, table, path):
        assert table.route(path).target is RouteTarget.HEALTH

    def test_health_is_exact(self, table):
        assert table.route("/health/extra").target is RouteTarget.STATIC

    def test_existing_static_file(self, table):
        assert table.route("/robots.txt").target is RouteTarget.STATIC

    def test_static_file_beats_backend_prefix(self, table):
        assert table.route("/api/openapi.json").target is RouteTarget.STATIC

    def test_backend_prefix(self, table):
        rule = table.route("/api/rides")
        assert rule.target is RouteTarget.BACKEND_PROXY
        assert rule.target.role is UpstreamRole.BACKEND

    def test_catch_all_serves_static_without_frontend(self, table):
        assert table.route("/dashboard/rides").target is RouteTarget.STATIC
        assert table.route("/apix").target is RouteTarget.STATIC

    def test_catch_all_proxies_to_frontend_when_enabled(self):
        table = RouteTable.build(api_prefix="/api", frontend_enabled=True, static_exists=static_exists)

        assert table.route("/src/main.tsx").target is RouteTarget.FRONTEND_PROXY
        assert table.route("/api/rides").target is RouteTarget.BACKEND_PROXY
        assert table.route("/robots.txt").target is RouteTarget.STATIC

    def test_route_is_case_sensitive(self, table):
        assert table.route("/HEALTH").target is RouteTarget.STATIC

    def test_every_path_matches_exactly_one_target(self, table):
        for path in ["/", "/health", "/api", "/api/x", "/assets/app.js", "/deep/link/1", ""]:
            rule = table.route(path)
            assert isinstance(rule.target, RouteTarget)

    def test_route_is_deterministic(self, table):
        assert table.route("/api/rides") is table.route("/api/rides")

    def test_rules_are_immutable(self, table):
        assert isinstance(table.rules, tuple)
        with pytest.raises(Exception):
            table.rules[0].pattern = "/other"

    def test_exact_rule_precedes_prefix_in_same_band(self):
        rules = [
            RouteRule("prefix", MatchKind.PREFIX, "/api", RouteTarget.BACKEND_PROXY, 5),
            RouteRule("exact", MatchKind.EXACT, "/api", RouteTarget.HEALTH, 5),
            RouteRule("any", MatchKind.ANY, "*", RouteTarget.STATIC, 100),
        ]
        table = RouteTable(rules)

        assert table.route("/api").name == "exact"
        assert table.route("/api/x").name == "prefix"

    def test_table_requires_catch_all(self):
        with pytest.raises(ValueError):
            RouteTable([RouteRule("exact", MatchKind.EXACT, "/health", RouteTarget.HEALTH, 0)])
