"""Verification handler: runs a registered (domain, type) strategy.

The latest result is stored in context data under ``verificationResult``.
A failed check raises VerificationFailedError, so the step's retry policy
and failSilently flag apply to it like to any other operation failure.
"""

from typing import Any, Dict, Optional

import structlog

from core.exceptions import ConfigurationError, NotFoundError, VerificationFailedError
from handlers.base import BaseHandler
from verification.registry import VerificationStrategyRegistry, get_verification_registry
from workflow.context import RunContext
from workflow.graph import Step
from workflow.interpolation import VariableInterpolator

logger = structlog.get_logger(__name__)

VERIFICATION_RESULT_KEY = "verificationResult"


class VerifyHandler(BaseHandler):
    step_type = "verify"
    display_name = "Verify"
    description = "Assert browser, API or database state"
    category = "verification"

    def __init__(self, registry: Optional[VerificationStrategyRegistry] = None):
        self.registry = registry or get_verification_registry()

    async def execute(self, step: Step, context: RunContext) -> Any:
        domain = step.config.get("domain")
        verification_type = step.config.get("verificationType")
        if not domain:
            raise ConfigurationError("domain is required for verify step")
        if not verification_type:
            raise ConfigurationError("verificationType is required for verify step")

        strategy = self.registry.get(domain, verification_type)
        if strategy is None:
            raise NotFoundError(
                f'No verification strategy for domain "{domain}" and type "{verification_type}"',
                available=self.registry.get_all(domain).keys() or self.registry.domains,
            )

        # Expected values are resolved by the strategy itself so they keep their type
        config = {
            key: value if key.startswith("expected") else VariableInterpolator.interpolate_object(value, context)
            for key, value in step.config.items()
        }
        valid, error = strategy.validate_config(config)
        if not valid:
            raise ConfigurationError(f"Invalid {domain}.{verification_type} verification: {error}")

        result = await strategy.execute(context, config)
        record = {**result.to_dict(), "domain": domain, "type": verification_type}
        context.set_data(VERIFICATION_RESULT_KEY, record)

        if not result.passed:
            raise VerificationFailedError(result.message)

        logger.info(
            "Verification passed",
            step_id=step.id,
            domain=domain,
            verification_type=verification_type,
            message=result.message,
        )
        return record

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["domain", "verificationType"],
            "properties": {
                "domain": {"type": "string", "enum": ["browser", "api", "database"]},
                "verificationType": {"type": "string"},
            },
        }


VERIFY_HANDLER_TYPES = {
    "verify": VerifyHandler,
}
