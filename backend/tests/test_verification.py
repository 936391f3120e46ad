"""Tests for verification strategies and their registry."""

import pytest

from core.exceptions import ConfigurationError, NotFoundError
from verification.api import ApiHeaderStrategy, ApiStatusStrategy
from verification.base import (
    VerificationResult,
    VerificationStrategy,
    compare_values,
    match_value,
    normalize_operator,
    resolve_value,
)
from verification.browser import BrowserElementStrategy, BrowserTextStrategy, BrowserUrlStrategy
from verification.database import DbColumnValueStrategy, DbRowCountStrategy, DbRowExistsStrategy
from verification.registry import VerificationStrategyRegistry, get_verification_registry


class AlwaysPasses(VerificationStrategy):
    async def execute(self, context, config):
        return VerificationResult(passed=True, message="ok")


# ─── registry ───

@pytest.mark.unit
class TestRegistry:
    def test_register_get_has(self):
        registry = VerificationStrategyRegistry()
        strategy = AlwaysPasses()
        registry.register("browser", "url", strategy)
        assert registry.get("browser", "url") is strategy
        assert registry.has("browser", "url")
        assert registry.get("browser", "missing") is None
        assert registry.get("mobile", "url") is None
        assert not registry.has("browser", "missing")

    def test_register_replaces(self):
        registry = VerificationStrategyRegistry(register_builtins=True)
        replacement = AlwaysPasses()
        registry.register("api", "status", replacement)
        assert registry.get("api", "status") is replacement

    def test_get_all(self):
        registry = VerificationStrategyRegistry()
        registry.register("custom", "a", AlwaysPasses())
        registry.register("custom", "b", AlwaysPasses())
        assert sorted(registry.get_all("custom")) == ["a", "b"]
        assert sorted(registry.get_all()) == ["custom.a", "custom.b"]
        assert registry.get_all("none") == {}

    def test_builtins(self):
        registry = get_verification_registry()
        assert set(registry.domains) >= {"browser", "api", "database"}
        assert registry.has("database", "rowCount")
        assert registry.has("browser", "formField")


# ─── helpers ───

@pytest.mark.unit
class TestHelpers:
    def test_operator_aliases(self):
        assert normalize_operator(None) == "equals"
        assert normalize_operator("gte") == "greaterOrEqual"
        with pytest.raises(ConfigurationError):
            normalize_operator("approximately")

    def test_match_types(self):
        assert match_value("Hello World", "hello", "startsWith")
        assert match_value("Hello World", "WORLD", "endsWith")
        assert not match_value("Hello", "hello", "equals", case_sensitive=True)
        assert match_value("order-123", r"order-\d+", "regex")
        with pytest.raises(ConfigurationError):
            match_value("x", "(", "regex")

    def test_compare_values(self):
        assert compare_values(5, 3, "greaterThan")
        assert compare_values(3, 3, "lessOrEqual")
        assert not compare_values(2, 3, "equals")

    def test_resolve_value(self, context):
        context.set_data("count", 3)
        assert resolve_value("${data.count}", context) == 3
        assert resolve_value("plain", context) == "plain"
        with pytest.raises(NotFoundError) as exc_info:
            resolve_value("{{data.missing}}", context)
        assert exc_info.value.available == ["count"]


# ─── api strategies ───

@pytest.mark.unit
class TestApiStrategies:
    @pytest.mark.asyncio
    async def test_status(self, context):
        context.set_data("login", {"status": 201, "statusText": "Created", "headers": {}, "body": {}})
        result = await ApiStatusStrategy().execute(context, {"apiContextKey": "login", "statusCode": "201"})
        assert result.passed
        assert result.to_dict()["actualValue"] == 201

    @pytest.mark.asyncio
    async def test_missing_response_lists_keys(self, context):
        context.set_data("other", {})
        with pytest.raises(NotFoundError) as exc_info:
            await ApiStatusStrategy().execute(context, {"statusCode": 200})
        assert exc_info.value.available == ["other"]

    @pytest.mark.asyncio
    async def test_header_case_insensitive_name(self, context):
        context.set_data("apiResponse", {"status": 200, "headers": {"Content-Type": "application/json"}})
        result = await ApiHeaderStrategy().execute(
            context, {"headerName": "content-type", "expectedValue": "json", "matchType": "contains"}
        )
        assert result.passed

    def test_validate_config(self):
        assert ApiStatusStrategy().validate_config({}) == (False, "statusCode is required")
        assert ApiStatusStrategy().validate_config({"statusCode": 200}) == (True, None)
        assert ApiStatusStrategy().required_fields() == ["statusCode"]


# ─── database strategies ───

@pytest.mark.unit
class TestDatabaseStrategies:
    @pytest.fixture
    def db_context(self, context):
        context.set_data("dbResult", {
            "rows": [{"id": 1, "email": "ada@example.com"}, {"id": 2, "email": "bob@example.com"}],
            "rowCount": 2,
            "columns": ["id", "email"],
        })
        return context

    @pytest.mark.asyncio
    async def test_row_count(self, db_context):
        result = await DbRowCountStrategy().execute(
            db_context, {"expectedValue": 1, "comparisonOperator": "greaterThan"}
        )
        assert result.passed
        assert result.actual_value == 2

    @pytest.mark.asyncio
    async def test_column_value(self, db_context):
        passed = await DbColumnValueStrategy().execute(
            db_context, {"columnName": "email", "rowIndex": 1, "expectedValue": "bob@example.com"}
        )
        out_of_bounds = await DbColumnValueStrategy().execute(
            db_context, {"columnName": "email", "rowIndex": 5, "expectedValue": "x"}
        )
        missing_column = await DbColumnValueStrategy().execute(
            db_context, {"columnName": "phone", "expectedValue": "x"}
        )
        assert passed.passed
        assert not out_of_bounds.passed
        assert "out of bounds" in out_of_bounds.message
        assert missing_column.details["availableColumns"] == ["id", "email"]

    @pytest.mark.asyncio
    async def test_row_exists_on_custom_key(self, context):
        context.set_data("emptyResult", {"rows": [], "rowCount": 0})
        result = await DbRowExistsStrategy().execute(context, {"dbContextKey": "emptyResult"})
        assert not result.passed


# ─── browser strategies ───

@pytest.mark.unit
class TestBrowserStrategies:
    @pytest.mark.asyncio
    async def test_url_contains(self, page_context):
        result = await BrowserUrlStrategy().execute(page_context, {"urlPattern": "/login"})
        assert result.passed
        assert result.actual_value == "https://example.com/login"

    @pytest.mark.asyncio
    async def test_url_regex_mismatch(self, page_context):
        result = await BrowserUrlStrategy().execute(
            page_context, {"urlPattern": r"/dashboard$", "matchType": "regex"}
        )
        assert not result.passed

    @pytest.mark.asyncio
    async def test_text_in_body_and_element(self, page, page_context):
        page.texts["body"] = "Welcome back, Ada"
        page.texts["h1"] = "Dashboard"
        page_context.set_variable("name", "Ada")
        body = await BrowserTextStrategy().execute(page_context, {"expectedText": "${variables.name}"})
        heading = await BrowserTextStrategy().execute(
            page_context, {"expectedText": "dashboard", "selector": "h1", "matchType": "equals"}
        )
        assert body.passed
        assert body.details["resolvedExpectedValue"] == "Ada"
        assert heading.passed

    @pytest.mark.asyncio
    async def test_element_count(self, page, page_context):
        page.counts[".row"] = 4
        result = await BrowserElementStrategy().execute(
            page_context,
            {"selector": ".row", "elementCheck": "count", "expectedValue": 3, "comparisonOperator": "greaterThan"},
        )
        assert result.passed

    @pytest.mark.asyncio
    async def test_requires_page(self, context):
        with pytest.raises(NotFoundError):
            await BrowserUrlStrategy().execute(context, {"urlPattern": "x"})
