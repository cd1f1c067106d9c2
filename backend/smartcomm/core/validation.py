"""
Provider Validation Module
Validates provider configurations on startup
"""
import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of a configuration validation check."""
    provider: str
    setting: str
    is_valid: bool
    message: str


class ProviderValidator:
    """
    Validates provider configurations at startup.

    The datastore is required. The model and the SMS gateway are
    optional: without them the engine runs on rules only, and sends
    are logged as failed.
    """

    REQUIRED_ENV_VARS = {
        "database": [
            ("SUPABASE_URL", "Supabase database"),
            ("SUPABASE_SERVICE_KEY", "Supabase database"),
        ],
    }

    OPTIONAL_ENV_VARS = {
        "llm": [("GROQ_API_KEY", "Groq fallback evaluator")],
        "email": [("SMTP_HOST", "SMTP email channel")],
        "auth": [("JWT_SECRET", "Bearer token verification")],
    }

    SMS_ENV_VARS = {
        "vonage": [("VONAGE_API_KEY", "Vonage SMS"), ("VONAGE_API_SECRET", "Vonage SMS")],
        "elks": [("ELKS_API_USER", "46elks SMS"), ("ELKS_API_PASSWORD", "46elks SMS")],
    }

    def __init__(self, strict: bool = False, sms_provider: Optional[str] = None):
        """
        Initialize validator.

        Args:
            strict: If True, treat warnings as errors
            sms_provider: Active SMS gateway (vonage | elks)
        """
        self.strict = strict
        self.sms_provider = sms_provider or os.getenv("SMS_PROVIDER", "vonage")
        self.results: List[ValidationResult] = []

    def validate_all(self) -> Tuple[bool, List[ValidationResult]]:
        """
        Validate all provider configurations.

        Returns:
            Tuple of (all_valid, list of results)
        """
        self.results = []

        for provider, vars_list in self.REQUIRED_ENV_VARS.items():
            for env_var, description in vars_list:
                if os.getenv(env_var):
                    self._add_success(provider, env_var, f"{description} configured")
                else:
                    self._add_error(provider, env_var, f"{description} requires {env_var} to be set")

        optional = dict(self.OPTIONAL_ENV_VARS)
        optional["sms"] = self.SMS_ENV_VARS.get(self.sms_provider, [])

        for provider, vars_list in optional.items():
            for env_var, description in vars_list:
                if os.getenv(env_var):
                    self._add_success(provider, env_var, f"{description} configured")
                else:
                    self._add_warning(provider, env_var, f"{description} not configured ({env_var})")

        all_valid = all(r.is_valid for r in self.results)
        return all_valid, self.results

    def _add_success(self, provider: str, setting: str, message: str):
        self.results.append(ValidationResult(provider=provider, setting=setting, is_valid=True, message=message))

    def _add_error(self, provider: str, setting: str, message: str):
        self.results.append(ValidationResult(provider=provider, setting=setting, is_valid=False, message=message))

    def _add_warning(self, provider: str, setting: str, message: str):
        self.results.append(ValidationResult(
            provider=provider,
            setting=setting,
            is_valid=not self.strict,  # Warnings become errors in strict mode
            message=f"WARNING: {message}"
        ))

    def log_results(self):
        """Log all validation results."""
        for r in self.results:
            if not r.is_valid:
                logger.error(f"  ✗ [{r.provider}] {r.message}")
            elif r.message.startswith("WARNING"):
                logger.warning(f"  ⚠ [{r.provider}] {r.message}")
            else:
                logger.info(f"  ✓ [{r.provider}] {r.message}")

    def get_error_summary(self) -> Optional[str]:
        """Get summary of errors for exception message."""
        errors = [r for r in self.results if not r.is_valid]
        if not errors:
            return None

        lines = ["Provider configuration errors:"]
        for r in errors:
            lines.append(f"  - {r.setting}: {r.message}")
        return "\n".join(lines)


def validate_providers_on_startup(strict: bool = False, sms_provider: Optional[str] = None) -> None:
    """
    Validate all providers at startup.

    Raises:
        RuntimeError: If required configuration is missing
    """
    validator = ProviderValidator(strict=strict, sms_provider=sms_provider)
    all_valid, _ = validator.validate_all()
    validator.log_results()

    if not all_valid:
        raise RuntimeError(validator.get_error_summary())

    logger.info("All provider configurations validated successfully")
