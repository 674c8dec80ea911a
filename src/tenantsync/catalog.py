"""Resource types managed by tenantsync.

Each type is a thin configuration of the generic engine: identity key,
fields to strip, payload reshaping and endpoint bindings. Types whose
remote shape spans several endpoints (roles with their permissions,
branding with its login template) get small endpoint adapters here.
"""

from __future__ import annotations

import logging
from typing import Any

from .client import ApiError, ManagementApiClient, Page, PaginationStyle, ResourceEndpoints
from .config import POLICY_IGNORE_UNAVAILABLE_MIGRATIONS, PolicyLookup, is_enabled
from .errors import ValidationError
from .models import (
    MANAGEMENT_API_NAME,
    TENANT_PAGE_KEYS,
    BrandingSettings,
    LogStream,
    MigrationFlags,
    PromptSettings,
    ResourceServer,
    Role,
    TenantSettings,
)
from .normalizer import NormalizationRule, NormalizationType
from .resources import ResourceConfig

logger = logging.getLogger(__name__)

UNIVERSAL_LOGIN_TEMPLATE = "universal_login"
SUPPORTED_BRANDING_TEMPLATES = (UNIVERSAL_LOGIN_TEMPLATE,)

# Tenant flags that can only be set when already present on the target tenant
TENANT_MIGRATION_FLAGS = frozenset(
    {
        "disable_clickjack_protection_headers",
        "enable_mgmt_api_v1",
        "trust_azure_adfs_email_verified_connection_property",
        "include_email_in_reset_pwd_redirect",
        "include_email_in_verify_email_redirect",
        "change_pwd_flow_v1",
        "enable_client_connections",
        "enable_apis_section",
        "enable_pipeline2",
        "enable_dynamic_client_registration",
        "enable_custom_domain_in_emails",
        "allow_legacy_tokeninfo_endpoint",
        "enable_legacy_profile",
        "enable_idtoken_api2",
        "enable_public_signup_user_exists_error",
        "allow_legacy_delegation_grant_types",
        "allow_legacy_ro_grant_types",
        "enable_sso",
        "no_disclose_enterprise_connections",
        "disable_management_api_sms_obfuscation",
        "enforce_client_authentication_on_passwordless_start",
        "enable_adfs_waad_email_verification",
        "revoke_refresh_token_grant",
        "dashboard_log_streams_next",
        "dashboard_insights_view",
        "disable_fields_map_fix",
        "mfa_show_factor_list_on_enrollment",
    }
)

# Log stream sinks the backend manages itself once created
MANAGED_SINK_TYPES = ("eventbridge", "eventgrid")


# =============================================================================
# tenant
# =============================================================================


def validate_tenant(desired: Any, _policy: PolicyLookup) -> None:
    page_keys = sorted(key for key in desired if key in TENANT_PAGE_KEYS)
    if page_keys:
        raise ValidationError(
            f"The following pages {page_keys} were found in tenant settings. "
            "Pages should be set separately.",
            resource_type="tenant",
        )


def drop_tenant_pages(existing: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {key: value for key, value in item.items() if key not in TENANT_PAGE_KEYS}
        for item in existing
    ]


def sanitize_migration_flags(
    proposed: dict[str, bool], existing: dict[str, bool] | None
) -> dict[str, bool]:
    """Keep non-migration flags and migration flags already present on the tenant.

    Migration flags missing on the target tenant make the whole update fail.
    """
    existing = existing or {}
    return {
        key: value
        for key, value in proposed.items()
        if key not in TENANT_MIGRATION_FLAGS or key in existing
    }


def shape_tenant_update(
    payload: dict[str, Any], existing: dict[str, Any], _policy: PolicyLookup
) -> dict[str, Any]:
    if "flags" in payload:
        payload = {
            **payload,
            "flags": sanitize_migration_flags(payload["flags"] or {}, existing.get("flags")),
        }
    return payload


# =============================================================================
# branding
# =============================================================================


def branding_endpoints(client: ManagementApiClient) -> ResourceEndpoints:
    """Branding settings plus the universal login template.

    The template is only readable when the tenant has a custom domain; a
    404 there simply means "no template".
    """
    template_path = f"branding/templates/{UNIVERSAL_LOGIN_TEMPLATE.replace('_', '-')}"

    async def get() -> dict[str, Any] | None:
        branding = await client.get("branding") or {}
        try:
            template = await client.get(template_path)
        except ApiError as e:
            if e.status_code not in (403, 404):
                raise
            template = None
        if isinstance(template, dict) and template.get("body"):
            branding["templates"] = [
                {"template": UNIVERSAL_LOGIN_TEMPLATE, "body": template["body"]}
            ]
        return branding

    async def update(_remote_id: str | None, payload: dict[str, Any]) -> Any:
        settings = dict(payload)
        templates = settings.pop("templates", None) or []

        if settings:
            await client.patch("branding", settings)

        unknown = [
            t.get("template")
            for t in templates
            if t.get("template") not in SUPPORTED_BRANDING_TEMPLATES
        ]
        if unknown:
            logger.warning(
                "Found unknown branding templates",
                extra={"templates": unknown, "supported": list(SUPPORTED_BRANDING_TEMPLATES)},
            )

        for template in templates:
            if template.get("template") == UNIVERSAL_LOGIN_TEMPLATE and template.get("body"):
                await client.put(template_path, {"template": template["body"]})

    return ResourceEndpoints(get=get, update=update)


def shape_branding_update(
    payload: dict[str, Any], _existing: dict[str, Any], _policy: PolicyLookup
) -> dict[str, Any]:
    # The API can return a blank logo_url that it rejects on import
    if payload.get("logo_url") == "":
        payload = {key: value for key, value in payload.items() if key != "logo_url"}
    return payload


# =============================================================================
# migrations
# =============================================================================


def migrations_endpoints(client: ManagementApiClient) -> ResourceEndpoints:
    async def get() -> dict[str, Any] | None:
        body = await client.get("migrations") or {}
        return body.get("flags") or {}

    async def update(_remote_id: str | None, payload: dict[str, Any]) -> Any:
        return await client.patch("migrations", {"flags": payload})

    return ResourceEndpoints(get=get, update=update)


def remove_unavailable_migrations(
    payload: dict[str, Any], existing: dict[str, Any], policy: PolicyLookup
) -> dict[str, Any]:
    """Drop flags the tenant does not offer.

    Disabled flags are always dropped; enabled ones only when
    IGNORE_UNAVAILABLE_MIGRATIONS is set (otherwise the API reports them).
    """
    ignore_unavailable = is_enabled(policy, POLICY_IGNORE_UNAVAILABLE_MIGRATIONS)
    unavailable = [flag for flag in payload if flag not in existing]
    ignored = [flag for flag in unavailable if ignore_unavailable or payload[flag] is False]

    if ignored:
        if ignore_unavailable:
            logger.info(
                "Ignoring unavailable migrations (IGNORE_UNAVAILABLE_MIGRATIONS is set)",
                extra={"migrations": ignored},
            )
        else:
            logger.warning(
                "Disabled migrations are not available and will be ignored; "
                "remove them to avoid this warning",
                extra={"migrations": ignored},
            )
    return {flag: value for flag, value in payload.items() if flag not in ignored}


# =============================================================================
# logStreams
# =============================================================================


def shape_log_stream_update(
    payload: dict[str, Any], existing: dict[str, Any], _policy: PolicyLookup
) -> dict[str, Any]:
    payload = dict(payload)
    stream_type = payload.get("type") or existing.get("type")
    if stream_type in MANAGED_SINK_TYPES:
        payload.pop("sink", None)
    # Suspended streams stay suspended
    if payload.get("status") == "suspended":
        payload.pop("status", None)
    return payload


# =============================================================================
# roles
# =============================================================================


def roles_endpoints(client: ManagementApiClient) -> ResourceEndpoints:
    """Roles with their permissions folded in.

    Permissions live on a sub-collection; they are read per role and
    replaced wholesale on update.
    """

    async def permissions_of(role_id: str) -> list[dict[str, Any]]:
        permissions: list[dict[str, Any]] = []
        params: dict[str, Any] | None = {}
        while params is not None:
            page = await client.list_page(
                f"roles/{role_id}/permissions", params, PaginationStyle.PAGE
            )
            permissions.extend(
                {
                    "permission_name": p.get("permission_name"),
                    "resource_server_identifier": p.get("resource_server_identifier"),
                }
                for p in page.items
            )
            params = page.next_params
        return permissions

    async def list_page(params: dict[str, Any]) -> Page:
        page = await client.list_page("roles", params, PaginationStyle.PAGE)
        for role in page.items:
            role["permissions"] = await permissions_of(role["id"])
        return page

    async def create(payload: dict[str, Any]) -> Any:
        role = dict(payload)
        permissions = role.pop("permissions", None) or []
        created = await client.post("roles", role)
        if permissions:
            await client.post(f"roles/{created['id']}/permissions", {"permissions": permissions})
        return created

    async def update(remote_id: str | None, payload: dict[str, Any]) -> Any:
        role = dict(payload)
        permissions = role.pop("permissions", None)
        updated = await client.patch(f"roles/{remote_id}", role)
        if permissions is not None:
            current = await permissions_of(str(remote_id))
            if current:
                await client.request(
                    "DELETE", f"roles/{remote_id}/permissions", json={"permissions": current}
                )
            if permissions:
                await client.post(f"roles/{remote_id}/permissions", {"permissions": permissions})
        return updated

    async def delete(remote_id: str | None) -> Any:
        return await client.delete(f"roles/{remote_id}")

    return ResourceEndpoints(list_page=list_page, create=create, update=update, delete=delete)


# =============================================================================
# resourceServers
# =============================================================================


def drop_management_api(existing: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [item for item in existing if item.get("name") != MANAGEMENT_API_NAME]


# =============================================================================
# Catalog
# =============================================================================


def build_catalog(client: ManagementApiClient) -> list[ResourceConfig]:
    """Build the resource configurations bound to a client."""
    return [
        ResourceConfig(
            type="tenant",
            endpoints=client.endpoints_for("tenants/settings", singleton=True),
            singleton=True,
            schema=TenantSettings,
            compare_desired_keys_only=True,
            order=100,
            validate_hook=validate_tenant,
            shape_update=shape_tenant_update,
            fetch_hook=drop_tenant_pages,
        ),
        ResourceConfig(
            type="branding",
            endpoints=branding_endpoints(client),
            singleton=True,
            schema=BrandingSettings,
            compare_desired_keys_only=True,
            normalization_rules=(
                NormalizationRule(
                    path_pattern="logo_url",
                    normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
                    reason="Blank logo_url equals no logo",
                ),
            ),
            order=70,
            shape_update=shape_branding_update,
        ),
        ResourceConfig(
            type="prompts",
            endpoints=client.endpoints_for("prompts", singleton=True),
            singleton=True,
            schema=PromptSettings,
            compare_desired_keys_only=True,
        ),
        ResourceConfig(
            type="migrations",
            endpoints=migrations_endpoints(client),
            singleton=True,
            schema=MigrationFlags,
            compare_desired_keys_only=True,
            order=150,
            shape_update=remove_unavailable_migrations,
        ),
        ResourceConfig(
            type="logStreams",
            endpoints=client.endpoints_for("log-streams", pagination=PaginationStyle.NONE),
            identity="name",
            schema=LogStream,
            # The backend fills in status and sink defaults; PATCH keeps undeclared keys
            compare_desired_keys_only=True,
            strip_update_fields=("type",),
            strip_create_fields=("status", "sink.awsPartnerEventSource"),
            sensitive_fields=("sink.httpAuthorization",),
            normalization_rules=(
                NormalizationRule(
                    path_pattern="status",
                    normalization_type=NormalizationType.CASE_INSENSITIVE,
                ),
            ),
            shape_update=shape_log_stream_update,
        ),
        ResourceConfig(
            type="roles",
            endpoints=roles_endpoints(client),
            identity="name",
            schema=Role,
            normalization_rules=(
                NormalizationRule(
                    path_pattern="permissions",
                    normalization_type=NormalizationType.ARRAY_UNORDERED,
                    reason="Permission order is not significant",
                ),
                NormalizationRule(
                    path_pattern="permissions",
                    normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
                ),
            ),
            order=60,
        ),
        ResourceConfig(
            type="resourceServers",
            endpoints=client.endpoints_for("resource-servers"),
            identity="identifier",
            schema=ResourceServer,
            # Token lifetimes, signing_alg and consent flags are filled in on create
            compare_desired_keys_only=True,
            strip_update_fields=("identifier",),
            server_computed_fields=("is_system",),
            fetch_hook=drop_management_api,
        ),
    ]

