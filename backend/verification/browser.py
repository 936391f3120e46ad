"""Browser verification strategies (Playwright page state)."""

from typing import Any

from core.exceptions import ConfigurationError
from integrations.browser import create_locator
from verification.base import (
    VerificationResult,
    VerificationStrategy,
    compare_values,
    match_value,
    normalize_operator,
    require_page,
    resolve_value,
    to_number,
)
from workflow.context import RunContext

ELEMENT_CHECKS = ("visible", "hidden", "exists", "notExists", "count", "enabled", "disabled", "checked")

_STORAGE_SCRIPT = (
    "([type, key]) => type === 'session' "
    "? window.sessionStorage.getItem(key) : window.localStorage.getItem(key)"
)
_COMPUTED_STYLE_SCRIPT = "(el, prop) => window.getComputedStyle(el).getPropertyValue(prop)"


def _timeout(config: dict[str, Any]) -> int:
    value = to_number(config.get("timeout"))
    return int(value) if value else 30000


def _truncate(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class BrowserUrlStrategy(VerificationStrategy):
    required = ("urlPattern",)

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        page = require_page(context)
        pattern = resolve_value(config.get("urlPattern"), context)
        if not pattern:
            raise ConfigurationError("URL pattern is required for URL verification")
        match_type = config.get("matchType") or "contains"

        current_url = page.url
        passed = match_value(current_url, pattern, match_type)
        return VerificationResult(
            passed=passed,
            message=(
                f'URL verification passed: Current URL "{current_url}" matches pattern "{pattern}"'
                if passed
                else f'URL verification failed: Current URL "{current_url}" does not match pattern '
                f'"{pattern}" (match type: {match_type})'
            ),
            actual_value=current_url,
            expected_value=pattern,
        )


class BrowserTextStrategy(VerificationStrategy):
    required = ("expectedText",)

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        page = require_page(context)
        original = config.get("expectedText")
        expected = resolve_value(original, context)
        if expected is None or expected == "":
            raise ConfigurationError("Expected text is required for text verification")
        match_type = config.get("matchType") or "contains"
        case_sensitive = bool(config.get("caseSensitive", False))
        timeout = _timeout(config)

        selector = config.get("selector")
        if selector:
            locator = create_locator(page, selector, config.get("selectorType") or "css")
            actual = await locator.first.text_content(timeout=timeout) or ""
        else:
            actual = await page.text_content("body", timeout=timeout) or ""

        passed = match_value(actual, expected, match_type, case_sensitive)
        resolved_note = f' (resolved from "{original}")' if original != expected else ""
        return VerificationResult(
            passed=passed,
            message=(
                f'Text verification passed: Found expected text "{expected}"{resolved_note}'
                if passed
                else f'Text verification failed: Expected text "{expected}"{resolved_note} not found. '
                f'Actual text: "{_truncate(actual)}"'
            ),
            actual_value=actual,
            expected_value=expected,
            details={
                "originalExpectedValue": original,
                "resolvedExpectedValue": expected,
                "matchType": match_type,
                "caseSensitive": case_sensitive,
            },
        )


class BrowserElementStrategy(VerificationStrategy):
    """Checks element state: visible, hidden, exists, count and so on."""

    required = ("selector",)

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        page = require_page(context)
        selector = config.get("selector")
        if not selector:
            raise ConfigurationError("Selector is required for element verification")
        check = config.get("elementCheck") or "visible"
        timeout = _timeout(config)
        locator = create_locator(page, selector, config.get("selectorType") or "css")

        if check == "visible":
            actual = await locator.first.is_visible(timeout=timeout)
            passed = bool(actual)
            state = "is visible" if passed else "is not visible"
        elif check == "hidden":
            hidden = await locator.first.is_hidden(timeout=timeout)
            passed = bool(hidden)
            actual = not hidden
            state = "is hidden" if passed else "is not hidden"
        elif check in ("exists", "notExists"):
            actual = await locator.count()
            passed = actual > 0 if check == "exists" else actual == 0
            state = f"exists (count: {actual})" if actual > 0 else "does not exist"
        elif check == "count":
            actual = await locator.count()
            expected = to_number(resolve_value(config.get("expectedValue"), context))
            if expected is None:
                raise ConfigurationError("Expected count must be a number for count verification")
            operator = normalize_operator(config.get("comparisonOperator"))
            passed = compare_values(actual, expected, operator)
            message = (
                f"Element count verification {'passed' if passed else 'failed'}: "
                f"Found {actual} elements (expected: {operator} {expected})"
            )
            return VerificationResult(passed=passed, message=message, actual_value=actual, expected_value=expected)
        elif check in ("enabled", "disabled"):
            enabled = await locator.first.is_enabled(timeout=timeout)
            passed = enabled if check == "enabled" else not enabled
            actual = enabled
            state = "is enabled" if enabled else "is disabled"
        elif check == "checked":
            actual = await locator.first.is_checked(timeout=timeout)
            passed = bool(actual)
            state = "is checked" if passed else "is not checked"
        else:
            raise ConfigurationError(
                f'Unknown element check "{check}". Supported: {", ".join(ELEMENT_CHECKS)}'
            )

        verdict = "passed" if passed else "failed"
        return VerificationResult(
            passed=passed,
            message=f'Element verification {verdict}: Element "{selector}" {state}',
            actual_value=actual,
            expected_value=check,
        )

    def validate_config(self, config: dict[str, Any]) -> tuple[bool, str | None]:
        valid, error = super().validate_config(config)
        if not valid:
            return valid, error
        if config.get("elementCheck") == "count" and config.get("expectedValue") is None:
            return False, "expectedValue is required for count verification"
        return True, None


class BrowserAttributeStrategy(VerificationStrategy):
    required = ("selector", "attributeName")

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        page = require_page(context)
        selector = config.get("selector")
        attribute = config.get("attributeName")
        if not selector or not attribute:
            raise ConfigurationError("Selector and attribute name are required for attribute verification")
        expected = resolve_value(config.get("expectedValue"), context)
        match_type = config.get("matchType") or "equals"

        locator = create_locator(page, selector, config.get("selectorType") or "css").first
        actual = await locator.get_attribute(attribute, timeout=_timeout(config))
        if actual is None:
            return VerificationResult(
                passed=False,
                message=f'Attribute verification failed: Attribute "{attribute}" does not exist on element "{selector}"',
                expected_value=expected,
            )

        # No expected value means an existence check
        passed = True if expected is None else match_value(actual, expected, match_type)
        return VerificationResult(
            passed=passed,
            message=(
                f'Attribute verification passed: Attribute "{attribute}" has value "{actual}"'
                if passed
                else f'Attribute verification failed: Attribute "{attribute}" has value "{actual}" '
                f'but expected "{expected}" (match type: {match_type})'
            ),
            actual_value=actual,
            expected_value=expected,
        )


class BrowserFormFieldStrategy(VerificationStrategy):
    required = ("selector", "expectedValue")

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        page = require_page(context)
        selector = config.get("selector")
        expected = resolve_value(config.get("expectedValue"), context)
        if not selector or expected is None:
            raise ConfigurationError("Selector and expected value are required for form field verification")
        match_type = config.get("matchType") or "equals"

        locator = create_locator(page, selector, config.get("selectorType") or "css").first
        actual = await locator.input_value(timeout=_timeout(config))
        passed = match_value(actual, expected, match_type)
        return VerificationResult(
            passed=passed,
            message=(
                f'Form field verification passed: Field "{selector}" has value "{actual}"'
                if passed
                else f'Form field verification failed: Field "{selector}" has value "{actual}" '
                f'but expected "{expected}" (match type: {match_type})'
            ),
            actual_value=actual,
            expected_value=expected,
        )


class BrowserCookieStrategy(VerificationStrategy):
    required = ("cookieName",)

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        page = require_page(context)
        name = config.get("cookieName")
        if not name:
            raise ConfigurationError("Cookie name is required for cookie verification")
        expected = resolve_value(config.get("expectedValue"), context)
        match_type = config.get("matchType") or "equals"

        cookies = await page.context.cookies()
        cookie = next((c for c in cookies if c.get("name") == name), None)
        if cookie is None:
            return VerificationResult(
                passed=False,
                message=f'Cookie verification failed: Cookie "{name}" not found',
                expected_value=expected,
                details={"availableCookies": [c.get("name") for c in cookies]},
            )

        actual = cookie.get("value")
        passed = True if expected is None else match_value(actual, expected, match_type)
        return VerificationResult(
            passed=passed,
            message=(
                f'Cookie verification passed: Cookie "{name}" has value "{actual}"'
                if passed
                else f'Cookie verification failed: Cookie "{name}" has value "{actual}" '
                f'but expected "{expected}" (match type: {match_type})'
            ),
            actual_value=actual,
            expected_value=expected,
        )


class BrowserStorageStrategy(VerificationStrategy):
    """localStorage / sessionStorage lookup via page.evaluate."""

    required = ("storageKey",)

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        page = require_page(context)
        key = config.get("storageKey")
        if not key:
            raise ConfigurationError("Storage key is required for storage verification")
        storage_type = config.get("storageType") or "local"
        expected = resolve_value(config.get("expectedValue"), context)
        match_type = config.get("matchType") or "equals"

        actual = await page.evaluate(_STORAGE_SCRIPT, [storage_type, key])
        if actual is None:
            return VerificationResult(
                passed=False,
                message=f'Storage verification failed: {storage_type}Storage key "{key}" not found',
                expected_value=expected,
            )

        passed = True if expected is None else match_value(actual, expected, match_type)
        return VerificationResult(
            passed=passed,
            message=(
                f'{storage_type}Storage verification passed: Key "{key}" has value "{actual}"'
                if passed
                else f'{storage_type}Storage verification failed: Key "{key}" has value "{actual}" '
                f'but expected "{expected}" (match type: {match_type})'
            ),
            actual_value=actual,
            expected_value=expected,
        )


class BrowserCssStrategy(VerificationStrategy):
    required = ("selector", "cssProperty")

    async def execute(self, context: RunContext, config: dict[str, Any]) -> VerificationResult:
        page = require_page(context)
        selector = config.get("selector")
        prop = config.get("cssProperty")
        if not selector or not prop:
            raise ConfigurationError("Selector and CSS property are required for CSS verification")
        expected = resolve_value(config.get("expectedValue"), context)
        match_type = config.get("matchType") or "equals"

        locator = create_locator(page, selector, config.get("selectorType") or "css").first
        actual = (await locator.evaluate(_COMPUTED_STYLE_SCRIPT, prop) or "").strip()
        passed = bool(actual) if expected is None else match_value(actual, expected, match_type)
        return VerificationResult(
            passed=passed,
            message=(
                f'CSS verification passed: Property "{prop}" has value "{actual}"'
                if passed
                else f'CSS verification failed: Property "{prop}" has value "{actual}" '
                f'but expected "{expected}" (match type: {match_type})'
            ),
            actual_value=actual,
            expected_value=expected,
        )
