"""Pydantic models for desired-state validation.

These models provide:
1. Type checks at the boundary (fail fast, before any network call)
2. Field constraints the backend would otherwise reject mid-run
3. Pass-through of unknown fields so new API attributes need no code change
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ValidationError

# Name of the built-in API that must never be managed declaratively
MANAGEMENT_API_NAME = "Management API"

# Tenant page keys; pages are configured through their own resource type
TENANT_PAGE_KEYS = frozenset(
    {
        "guardian_multifactor",
        "guardian_mfa_page",
        "password_reset",
        "change_password",
        "error_page",
        "login",
    }
)


class ResourceModel(BaseModel):
    """Base desired-state model: unknown fields pass through to the API."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


# =============================================================================
# Singletons
# =============================================================================


class TenantSettings(ResourceModel):
    """Tenant-wide settings."""

    friendly_name: str | None = None
    support_email: str | None = None
    support_url: str | None = None
    default_directory: str | None = None
    session_lifetime: float | None = Field(None, gt=0)
    idle_session_lifetime: float | None = Field(None, gt=0)
    enabled_locales: list[str] | None = None
    flags: dict[str, bool] | None = None

    @field_validator("enabled_locales")
    @classmethod
    def validate_locales(cls, v: list[str] | None) -> list[str] | None:
        if v is not None and len(set(v)) != len(v):
            raise ValueError("enabled_locales must not contain duplicates")
        return v


class BrandingTemplate(ResourceModel):
    template: str
    body: str


class BrandingSettings(ResourceModel):
    """Universal login branding."""

    logo_url: str | None = None
    favicon_url: str | None = None
    colors: dict[str, Any] | None = None
    font: dict[str, Any] | None = None
    templates: list[BrandingTemplate] | None = None


class UniversalLoginExperience(str, Enum):
    NEW = "new"
    CLASSIC = "classic"


class PromptSettings(ResourceModel):
    """Login prompt settings."""

    universal_login_experience: UniversalLoginExperience | None = None
    identifier_first: bool | None = None
    webauthn_platform_first_factor: bool | None = None


class MigrationFlags(pydantic.RootModel[dict[str, bool]]):
    """Migration flags: flag name to boolean, nothing else."""

    pass


# =============================================================================
# Collections
# =============================================================================


class LogStreamStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    SUSPENDED = "suspended"


class LogStream(ResourceModel):
    """Log export stream."""

    name: Annotated[str, Field(min_length=1)]
    type: str | None = None
    status: LogStreamStatus | None = None
    sink: dict[str, Any] | None = None
    filters: list[dict[str, Any]] | None = None


class RolePermission(ResourceModel):
    permission_name: str
    resource_server_identifier: str


class Role(ResourceModel):
    """Authorization role."""

    name: Annotated[str, Field(min_length=1)]
    description: str | None = None
    permissions: list[RolePermission] | None = None


class ResourceServerScope(ResourceModel):
    value: Annotated[str, Field(min_length=1)]
    description: str | None = None


class ResourceServer(ResourceModel):
    """API (resource server) registration."""

    name: Annotated[str, Field(min_length=1)]
    identifier: Annotated[str, Field(min_length=1)]
    scopes: list[ResourceServerScope] | None = None
    enforce_policies: bool | None = None
    token_dialect: str | None = None
    token_lifetime: int | None = Field(None, gt=0)
    signing_alg: str | None = None

    @field_validator("name")
    @classmethod
    def validate_not_management_api(cls, v: str) -> str:
        if v == MANAGEMENT_API_NAME:
            raise ValueError(f"the '{MANAGEMENT_API_NAME}' cannot be configured")
        return v


def _format_errors(exc: pydantic.ValidationError) -> list[str]:
    lines = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error["loc"]) or "<root>"
        lines.append(f"{loc}: {error['msg']}")
    return lines


def validate_items(schema: type[BaseModel], items: Any, resource_type: str) -> None:
    """Validate desired items (a mapping for singletons, a list otherwise).

    Raises:
        ValidationError: With one "loc: msg" line per schema violation.
    """
    batch = items if isinstance(items, list) else [items]
    problems: list[str] = []

    for index, item in enumerate(batch):
        try:
            schema.model_validate(item)
        except pydantic.ValidationError as e:
            prefix = f"[{index}] " if isinstance(items, list) else ""
            problems.extend(f"{prefix}{line}" for line in _format_errors(e))

    if problems:
        raise ValidationError(
            f"Schema validation failed for {resource_type}:\n  - " + "\n  - ".join(problems),
            resource_type=resource_type,
        )
