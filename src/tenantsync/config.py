"""Configuration management with validation.

Run-wide settings (tenant, rate limits, delete policy, resource type
filters) are validated at load time so a misconfigured run fails before
any network call is made.
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Policy/config provider: looked up by string key, absent keys are falsy
PolicyLookup = Callable[[str], Any]

POLICY_ALLOW_DELETE = "ALLOW_DELETE"
POLICY_DRY_RUN = "DRY_RUN"
POLICY_IGNORE_UNAVAILABLE_MIGRATIONS = "IGNORE_UNAVAILABLE_MIGRATIONS"
POLICY_INCLUDED_ONLY = "INCLUDED_ONLY"
POLICY_EXCLUDED = "EXCLUDED"
POLICY_EXCLUDED_NAMES = "EXCLUDED_NAMES"

# Remote API limits. Frequency is kept at 80% of the backend's documented capacity.
DEFAULT_API_CONCURRENCY = 3
DEFAULT_API_FREQUENCY_PER_SECOND = 8
DEFAULT_API_FREQUENCY_WINDOW_SECONDS = 1.0
MAX_API_CONCURRENCY = 50
MAX_API_FREQUENCY_PER_SECOND = 100

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_INITIAL_DELAY_SECONDS = 1.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 30.0
MAX_RETRIES_LIMIT = 10

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
MAX_PAGE_SIZE = 100
MAX_FETCH_PAGES = 1000

MAX_DESIRED_STATE_FILE_SIZE_BYTES = 5 * 1024 * 1024  # 5MB

# Error codes the backend returns with a 403 when a feature is gated for the tenant
DEFAULT_FEATURE_DISABLED_ERROR_CODES: tuple[str, ...] = (
    "feature_not_enabled",
    "voice_mfa_not_allowed",
    "hooks_not_allowed",
)

VALID_DOMAIN_PATTERN = r"^[a-z0-9]([a-z0-9.-]{0,251}[a-z0-9])?(:[0-9]{1,5})?$"
VALID_RESOURCE_TYPE_PATTERN = r"^[a-zA-Z][a-zA-Z0-9]*$"

_TRUE_VALUES = ("true", "1", "yes")


def is_enabled(policy: PolicyLookup, key: str) -> bool:
    """Interpret a policy value as a flag.

    Real booleans are taken as-is; strings count as enabled when they read
    "true", "1" or "yes". Anything else, including an absent key, is off.
    """
    value = policy(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES
    return False


def policy_from_mapping(values: Mapping[str, Any]) -> PolicyLookup:
    """Build a policy lookup over a plain mapping."""
    snapshot = dict(values)

    def lookup(key: str) -> Any:
        return snapshot.get(key)

    return lookup


@dataclass(frozen=True)
class Config:
    """Sync configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    domain: str

    # Credentials for the management API (bearer token)
    access_token: str = ""

    # Policy
    allow_delete: bool = False
    dry_run: bool = False
    ignore_unavailable_migrations: bool = False

    # Rate limiting
    concurrency_limit: int = DEFAULT_API_CONCURRENCY
    frequency_limit: int = DEFAULT_API_FREQUENCY_PER_SECOND
    frequency_window_seconds: float = DEFAULT_API_FREQUENCY_WINDOW_SECONDS

    # Retry on 429
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_initial_delay_seconds: float = DEFAULT_RETRY_INITIAL_DELAY_SECONDS
    retry_max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS

    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Fetch error classification
    feature_disabled_error_codes: tuple[str, ...] = DEFAULT_FEATURE_DISABLED_ERROR_CODES

    # Resource type filters
    included_types: tuple[str, ...] = ()
    excluded_types: tuple[str, ...] = ()

    # Item names managed outside this tool, per resource type
    excluded_names: dict[str, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.domain:
            errors.append("TENANT_DOMAIN is required")
        elif not re.match(VALID_DOMAIN_PATTERN, self.domain.lower()):
            errors.append(f"TENANT_DOMAIN must be a host name: {self.domain}")

        if not (1 <= self.concurrency_limit <= MAX_API_CONCURRENCY):
            errors.append(f"API_CONCURRENCY must be between 1 and {MAX_API_CONCURRENCY}")

        if not (1 <= self.frequency_limit <= MAX_API_FREQUENCY_PER_SECOND):
            errors.append(
                f"API_FREQUENCY_PER_SECOND must be between 1 and {MAX_API_FREQUENCY_PER_SECOND}"
            )

        if self.frequency_window_seconds <= 0:
            errors.append("API_FREQUENCY_WINDOW must be greater than 0")

        if not (0 <= self.max_retries <= MAX_RETRIES_LIMIT):
            errors.append(f"MAX_RETRIES must be between 0 and {MAX_RETRIES_LIMIT}")

        if self.retry_initial_delay_seconds < 0 or self.retry_max_delay_seconds < 0:
            errors.append("Retry delays must not be negative")
        elif self.retry_initial_delay_seconds > self.retry_max_delay_seconds:
            errors.append("RETRY_INITIAL_DELAY cannot exceed RETRY_MAX_DELAY")

        if self.request_timeout_seconds <= 0:
            errors.append("REQUEST_TIMEOUT must be greater than 0")

        for type_name in (*self.included_types, *self.excluded_types):
            if not re.match(VALID_RESOURCE_TYPE_PATTERN, type_name):
                errors.append(f"Invalid resource type name: {type_name}")

        overlap = sorted(set(self.included_types) & set(self.excluded_types))
        if overlap:
            errors.append(f"INCLUDED_ONLY and EXCLUDED must not intersect: {overlap}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def as_policy(self) -> PolicyLookup:
        """Expose the policy-relevant settings as a key lookup."""
        return policy_from_mapping(
            {
                POLICY_ALLOW_DELETE: self.allow_delete,
                POLICY_DRY_RUN: self.dry_run,
                POLICY_IGNORE_UNAVAILABLE_MIGRATIONS: self.ignore_unavailable_migrations,
                POLICY_INCLUDED_ONLY: list(self.included_types) or None,
                POLICY_EXCLUDED: list(self.excluded_types) or None,
                POLICY_EXCLUDED_NAMES: self.excluded_names or None,
            }
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Keyword overrides (e.g. from CLI options) win over the environment.

        Environment Variables:
            TENANT_DOMAIN: Management API host of the target tenant
            TENANT_ACCESS_TOKEN: Bearer token for the management API
            ALLOW_DELETE: If "true", remote items missing from the desired state are deleted
            DRY_RUN: If "true", compute and report changes without applying them
            IGNORE_UNAVAILABLE_MIGRATIONS: If "true", silently drop unknown migration flags
            API_CONCURRENCY: Max in-flight mutation calls (default: 3)
            API_FREQUENCY_PER_SECOND: Max calls started per window (default: 8)
            API_FREQUENCY_WINDOW: Window length in seconds (default: 1.0)
            MAX_RETRIES: Retries on HTTP 429 (default: 3)
            RETRY_INITIAL_DELAY: First backoff delay in seconds (default: 1.0)
            RETRY_MAX_DELAY: Backoff ceiling in seconds (default: 30.0)
            REQUEST_TIMEOUT: Per-request timeout in seconds (default: 30.0)
            FEATURE_DISABLED_ERROR_CODES: Comma-separated 403 error codes meaning
                "feature not available for this tenant"
            INCLUDED_ONLY: Comma-separated resource types to reconcile exclusively
            EXCLUDED: Comma-separated resource types to skip
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in _TRUE_VALUES

        def get_list(key: str) -> tuple[str, ...]:
            value = os.environ.get(key, "")
            return tuple(item.strip() for item in value.split(",") if item.strip())

        values: dict[str, Any] = dict(
            domain=os.environ.get("TENANT_DOMAIN", ""),
            access_token=os.environ.get("TENANT_ACCESS_TOKEN", ""),
            allow_delete=get_bool("ALLOW_DELETE", False),
            dry_run=get_bool("DRY_RUN", False),
            ignore_unavailable_migrations=get_bool("IGNORE_UNAVAILABLE_MIGRATIONS", False),
            concurrency_limit=get_int("API_CONCURRENCY", DEFAULT_API_CONCURRENCY),
            frequency_limit=get_int("API_FREQUENCY_PER_SECOND", DEFAULT_API_FREQUENCY_PER_SECOND),
            frequency_window_seconds=get_float(
                "API_FREQUENCY_WINDOW", DEFAULT_API_FREQUENCY_WINDOW_SECONDS
            ),
            max_retries=get_int("MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_initial_delay_seconds=get_float(
                "RETRY_INITIAL_DELAY", DEFAULT_RETRY_INITIAL_DELAY_SECONDS
            ),
            retry_max_delay_seconds=get_float("RETRY_MAX_DELAY", DEFAULT_RETRY_MAX_DELAY_SECONDS),
            request_timeout_seconds=get_float("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            feature_disabled_error_codes=(
                get_list("FEATURE_DISABLED_ERROR_CODES") or DEFAULT_FEATURE_DISABLED_ERROR_CODES
            ),
            included_types=get_list("INCLUDED_ONLY"),
            excluded_types=get_list("EXCLUDED"),
        )
        values.update(overrides)
        return cls(**values)
