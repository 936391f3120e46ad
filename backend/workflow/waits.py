"""Wait orchestrator: selector, URL and expression waits around a step's action.

Waits are configured on the step itself (flat ``waitFor*`` keys or a nested
``wait`` object) and run either before or after the main action depending on
``waitAfterOperation``. Every wait is bounded by its own timeout.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Optional

import structlog

from core.exceptions import ConfigurationError, EngineError, NotFoundError, OperationError, WaitTimeoutError
from integrations.browser import create_locator
from workflow.context import RunContext
from workflow.interpolation import VariableInterpolator

logger = structlog.get_logger(__name__)

DEFAULT_WAIT_TIMEOUT_MS = 30000


class WaitStrategy(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class WaitTiming(str, Enum):
    BEFORE = "before"
    AFTER = "after"


@dataclass
class WaitSpec:
    """Resolved wait configuration for one step invocation."""

    selector: Optional[str] = None
    selector_type: str = "css"
    selector_timeout: Optional[int] = None
    url: Optional[str] = None
    url_timeout: Optional[int] = None
    expression: Optional[str] = None
    expression_timeout: Optional[int] = None
    strategy: WaitStrategy = WaitStrategy.PARALLEL
    timing: WaitTiming = WaitTiming.BEFORE
    fail_silently: bool = False
    default_timeout: int = DEFAULT_WAIT_TIMEOUT_MS

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        context: Optional[RunContext] = None,
        default_timeout: int = DEFAULT_WAIT_TIMEOUT_MS,
    ) -> "WaitSpec":
        """Build from step config, interpolating string fields against the context."""
        source = dict(config)
        nested = config.get("wait")
        if isinstance(nested, dict):
            source.update(nested)

        def _str(key: str) -> Optional[str]:
            value = source.get(key)
            if value is None or value == "":
                return None
            value = str(value)
            if context is not None:
                value = VariableInterpolator.interpolate_string(value, context)
            return value.strip() or None

        def _ms(key: str) -> Optional[int]:
            value = source.get(key)
            if context is not None:
                value = VariableInterpolator.interpolate_number(value, context)
            elif isinstance(value, str):
                try:
                    value = float(value)
                except ValueError:
                    value = None
            return int(value) if value else None

        strategy = source.get("waitStrategy") or WaitStrategy.PARALLEL.value
        try:
            strategy = WaitStrategy(strategy)
        except ValueError:
            raise ConfigurationError(
                f'Unknown waitStrategy "{strategy}". Supported: parallel, sequential'
            )

        after = source.get("waitAfterOperation")
        if context is not None:
            after = VariableInterpolator.interpolate_bool(after, context)

        return cls(
            selector=_str("waitForSelector"),
            selector_type=source.get("waitForSelectorType") or "css",
            selector_timeout=_ms("waitForSelectorTimeout"),
            url=_str("waitForUrl"),
            url_timeout=_ms("waitForUrlTimeout"),
            expression=_str("waitForCondition"),
            expression_timeout=_ms("waitForConditionTimeout"),
            strategy=strategy,
            timing=WaitTiming.AFTER if after else WaitTiming.BEFORE,
            fail_silently=bool(source.get("failSilently", False)),
            default_timeout=_ms("timeout") or default_timeout,
        )

    @property
    def has_waits(self) -> bool:
        return bool(self.selector or self.url or self.expression)

    @property
    def timing_label(self) -> str:
        return "after operation" if self.timing == WaitTiming.AFTER else "before operation"


def url_pattern(pattern: str) -> re.Pattern:
    """``/regex/`` compiles as a regex; anything else matches literally."""
    if len(pattern) > 1 and pattern.startswith("/") and pattern.endswith("/"):
        try:
            return re.compile(pattern[1:-1])
        except re.error as e:
            raise ConfigurationError(f'Invalid regex pattern "{pattern}": {e}') from e
    return re.compile(re.escape(pattern))


async def _bounded(awaitable: Awaitable, description: str, timeout_ms: int) -> None:
    """Await a driver wait with a hard timeout, normalizing driver errors."""
    try:
        await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        raise WaitTimeoutError(description, timeout_ms)
    except EngineError:
        raise
    except Exception as e:
        # Playwright raises its own TimeoutError type; recognise it by message
        if "timeout" in str(e).lower():
            raise WaitTimeoutError(description, timeout_ms) from e
        raise OperationError(f"Wait for {description} failed: {e}") from e


async def wait_for_selector(page: Any, spec: WaitSpec) -> None:
    timeout = spec.selector_timeout or spec.default_timeout
    description = f'selector "{spec.selector}" ({spec.selector_type}) {spec.timing_label}'
    if spec.selector_type == "css":
        awaitable = page.wait_for_selector(spec.selector, state="visible", timeout=timeout)
    else:
        locator = create_locator(page, spec.selector, spec.selector_type)
        awaitable = locator.first.wait_for(state="visible", timeout=timeout)
    await _bounded(awaitable, description, timeout)


async def wait_for_url(page: Any, spec: WaitSpec) -> None:
    timeout = spec.url_timeout or spec.default_timeout
    description = f'URL matching "{spec.url}" {spec.timing_label}'
    await _bounded(page.wait_for_url(url_pattern(spec.url), timeout=timeout), description, timeout)


async def wait_for_expression(page: Any, spec: WaitSpec) -> None:
    timeout = spec.expression_timeout or spec.default_timeout
    description = f"condition `{spec.expression}` {spec.timing_label}"
    await _bounded(page.wait_for_function(spec.expression, timeout=timeout), description, timeout)


async def _run_parallel(waits: list[Awaitable]) -> None:
    tasks = [asyncio.ensure_future(w) for w in waits]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    for task in tasks:
        if task.done() and not task.cancelled() and task.exception() is not None:
            raise task.exception()


async def execute_waits(page: Any, spec: WaitSpec) -> None:
    """Run the configured waits.

    Parallel: all at once, first failure cancels the rest.
    Sequential: selector, then URL, then expression.
    ``fail_silently`` logs the failure and returns normally.
    """
    if not spec.has_waits:
        return

    started = time.monotonic()
    try:
        if page is None:
            raise NotFoundError("No page available for wait conditions. Ensure an openBrowser step runs first")

        factories = []
        if spec.selector:
            factories.append(wait_for_selector)
        if spec.url:
            factories.append(wait_for_url)
        if spec.expression:
            factories.append(wait_for_expression)

        if spec.strategy == WaitStrategy.SEQUENTIAL:
            for factory in factories:
                await factory(page, spec)
        else:
            await _run_parallel([factory(page, spec) for factory in factories])

    except ConfigurationError:
        raise
    except EngineError as e:
        if spec.fail_silently:
            logger.warning("Wait failed silently", error=e.message, timing=spec.timing.value)
            return
        raise

    logger.debug(
        "Waits satisfied",
        strategy=spec.strategy.value,
        timing=spec.timing.value,
        duration_ms=round((time.monotonic() - started) * 1000, 2),
    )
