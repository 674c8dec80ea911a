"""Per-resource-type reconciliation pipeline.

Each resource type runs through the same state machine:

    VALIDATING -> FETCHING -> DIFFING -> REPORTING (dry run) | APPLYING -> DONE | FAILED

Validation runs before any network call. Remote state is fetched exactly
once and reused for both diff and apply. Changes are applied in a fixed
order: delete (only when deletes are allowed), then update, then create.
A failure is scoped to its resource type; other types still run.

Partial application is possible: when 3 of 5 updates succeed before one
fails, the result counts 3 updates and carries the failure.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import (
    POLICY_ALLOW_DELETE,
    POLICY_DRY_RUN,
    POLICY_EXCLUDED,
    POLICY_EXCLUDED_NAMES,
    POLICY_INCLUDED_ONLY,
    PolicyLookup,
    is_enabled,
)
from .differ import ChangeSet, UpdateItem, diff, find_conflicts
from .errors import (
    DuplicateIdentityError,
    MissingIdentityError,
    MutationError,
    ReconcileError,
    ValidationError,
)
from .executor import BatchResult, RateLimitedExecutor
from .fetcher import ABSENT, PagedFetcher
from .models import validate_items
from .normalizer import (
    format_identity,
    identity_of,
    strip_fields,
    strip_obfuscated_fields,
)
from .resources import ResourceConfig

logger = logging.getLogger(__name__)

# Returned by a mutation that turned out to have nothing to send
_NOTHING_TO_SEND = object()


class ReconcilePhase(str, Enum):
    """Pipeline states of one resource type."""

    VALIDATING = "validating"
    FETCHING = "fetching"
    DIFFING = "diffing"
    REPORTING = "reporting"
    APPLYING = "applying"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ReconciliationResult:
    """Outcome of reconciling one resource type in one run."""

    resource_type: str
    phase: ReconcilePhase = ReconcilePhase.VALIDATING
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped_deletes: int = 0
    changes: ChangeSet | None = None
    errors: list[Exception] = field(default_factory=list)
    dry_run: bool = False
    absent: bool = False  # backend does not support this type for the tenant
    skipped: bool = False  # type not declared in the desired state
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.phase is ReconcilePhase.DONE and not self.errors

    @property
    def validation_failed(self) -> bool:
        return any(isinstance(error, ValidationError) for error in self.errors)

    def to_summary(self) -> dict[str, Any]:
        """Summarize the result for logs and reports."""
        summary: dict[str, Any] = {
            "resource_type": self.resource_type,
            "phase": self.phase.value,
            "success": self.success,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped_deletes": self.skipped_deletes,
            "dry_run": self.dry_run,
            "absent": self.absent,
            "skipped": self.skipped,
            "duration_seconds": round(self.duration_seconds, 3),
        }
        if self.changes is not None:
            summary["planned"] = self.changes.counts()
        if self.errors:
            summary["errors"] = [str(error) for error in self.errors]
        return summary


@dataclass
class RunReport:
    """Results of every resource type of one run, in processing order."""

    results: list[ReconciliationResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(result.success for result in self.results)

    @property
    def failed(self) -> list[ReconciliationResult]:
        return [result for result in self.results if not result.success]

    def get(self, resource_type: str) -> ReconciliationResult | None:
        for result in self.results:
            if result.resource_type == resource_type:
                return result
        return None

    def totals(self) -> dict[str, int]:
        return {
            "created": sum(result.created for result in self.results),
            "updated": sum(result.updated for result in self.results),
            "deleted": sum(result.deleted for result in self.results),
            "skipped_deletes": sum(result.skipped_deletes for result in self.results),
            "failed_types": len(self.failed),
        }


def _policy_list(policy: PolicyLookup, key: str) -> list[str]:
    value = policy(key)
    if not value:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part) for part in value]


def select_resources(
    resources: Sequence[ResourceConfig], policy: PolicyLookup
) -> list[ResourceConfig]:
    """Apply INCLUDED_ONLY / EXCLUDED and sort by processing order (stable)."""
    included = set(_policy_list(policy, POLICY_INCLUDED_ONLY))
    excluded = set(_policy_list(policy, POLICY_EXCLUDED))

    selected = [
        resource
        for resource in resources
        if (not included or resource.type in included) and resource.type not in excluded
    ]
    return sorted(selected, key=lambda resource: resource.order)


class Reconciler:
    """Drives validation, fetch, diff and apply for each resource type.

    One reconciler (and its executor) serves one run. Results are returned
    as values; nothing is accumulated on the reconciler itself.
    """

    def __init__(
        self,
        executor: RateLimitedExecutor,
        policy: PolicyLookup,
        fetcher: PagedFetcher | None = None,
    ) -> None:
        self._executor = executor
        self._policy = policy
        self._fetcher = fetcher or PagedFetcher()

    @property
    def policy(self) -> PolicyLookup:
        return self._policy

    async def reconcile_all(
        self,
        desired_assets: Mapping[str, Any],
        resources: Sequence[ResourceConfig],
    ) -> RunReport:
        """Reconcile every selected resource type independently.

        A failure in one type, expected or not, is recorded on its result
        and never prevents the remaining types from running.
        """
        report = RunReport()
        selected = select_resources(resources, self._policy)

        known = {resource.type for resource in resources}
        unknown = sorted(set(desired_assets) - known)
        if unknown:
            logger.warning(
                "Ignoring unknown resource types in desired state",
                extra={"resource_types": unknown},
            )

        for resource in selected:
            try:
                result = await self.reconcile(resource, desired_assets.get(resource.type))
            except Exception as e:
                logger.exception(
                    "Unexpected error reconciling resource type",
                    extra={"resource_type": resource.type},
                )
                result = ReconciliationResult(
                    resource_type=resource.type,
                    phase=ReconcilePhase.FAILED,
                    errors=[e],
                    dry_run=is_enabled(self._policy, POLICY_DRY_RUN),
                    end_time=datetime.now(UTC),
                )
            report.results.append(result)

        return report

    async def reconcile(self, resource: ResourceConfig, desired: Any) -> ReconciliationResult:
        """Reconcile one resource type.

        Args:
            resource: Configuration of the resource type.
            desired: Desired items (list), settings object (singletons),
                or None when the type is not declared at all.

        Returns:
            The result. ReconcileErrors are recorded on it, not raised.
        """
        result = ReconciliationResult(
            resource_type=resource.type,
            dry_run=is_enabled(self._policy, POLICY_DRY_RUN),
        )

        try:
            if desired is None:
                # Not declared: leave the remote side untouched
                result.skipped = True
                result.phase = ReconcilePhase.DONE
                return result

            items = self._validate(resource, desired)

            result.phase = ReconcilePhase.FETCHING
            existing = await self._fetcher.fetch_all(resource)
            if existing is ABSENT:
                result.absent = True
                result.phase = ReconcilePhase.DONE
                return result

            result.phase = ReconcilePhase.DIFFING
            items, existing = self._filter_excluded(resource, items, existing)
            if not items and not existing:
                result.changes = ChangeSet()
                result.phase = ReconcilePhase.DONE
                return result

            changes = diff(items, existing, resource)
            result.changes = changes

            if result.dry_run:
                result.phase = ReconcilePhase.REPORTING
                self._report(resource, changes)
            elif not changes.is_empty:
                result.phase = ReconcilePhase.APPLYING
                await self._apply(resource, changes, result)

            result.phase = ReconcilePhase.FAILED if result.errors else ReconcilePhase.DONE

        except ReconcileError as e:
            if not e.resource_type:
                e.resource_type = resource.type
            result.errors.append(e)
            result.phase = ReconcilePhase.FAILED

        finally:
            result.end_time = datetime.now(UTC)
            self._log_result(result)

        return result

    # ------------------------------------------------------------------
    # Validating
    # ------------------------------------------------------------------

    def _validate(self, resource: ResourceConfig, desired: Any) -> list[dict[str, Any]]:
        """Structural checks; returns the desired items as a list."""
        if resource.singleton:
            if not isinstance(desired, dict):
                raise ValidationError(
                    f"{resource.type} must be a mapping, got {type(desired).__name__}",
                    resource_type=resource.type,
                )
        elif not isinstance(desired, list) or not all(isinstance(i, dict) for i in desired):
            raise ValidationError(
                f"{resource.type} must be a list of mappings", resource_type=resource.type
            )

        if resource.schema is not None:
            validate_items(resource.schema, desired, resource.type)

        if resource.validate_hook is not None:
            resource.validate_hook(desired, self._policy)

        if resource.singleton:
            return [desired] if desired else []

        for item in desired:
            identity_of(item, resource)

        conflicts = find_conflicts(desired, resource)
        if conflicts:
            names = [format_identity(conflict.identity) for conflict in conflicts]
            raise DuplicateIdentityError(
                f"Names must be unique for {resource.type}, duplicates found: {', '.join(names)}",
                resource_type=resource.type,
                identities=names,
            )
        return list(desired)

    # ------------------------------------------------------------------
    # Diffing
    # ------------------------------------------------------------------

    def _filter_excluded(
        self,
        resource: ResourceConfig,
        desired: list[dict[str, Any]],
        existing: list[dict[str, Any]],
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """Drop items managed outside this tool (EXCLUDED_NAMES[type])."""
        if resource.singleton:
            return desired, existing

        excluded_names = self._policy(POLICY_EXCLUDED_NAMES) or {}
        names = set(excluded_names.get(resource.type, []))
        if not names:
            return desired, existing

        def keep(item: dict[str, Any]) -> bool:
            try:
                return format_identity(identity_of(item, resource)) not in names
            except MissingIdentityError:
                return True

        return [i for i in desired if keep(i)], [i for i in existing if keep(i)]

    def _report(self, resource: ResourceConfig, changes: ChangeSet) -> None:
        logger.info(
            "Dry run: planned changes",
            extra={
                "resource_type": resource.type,
                **changes.counts(),
                "create_items": [resource.describe(item) for item in changes.create],
                "update_items": [resource.describe(item.desired) for item in changes.update],
                "delete_items": [resource.describe(item) for item in changes.delete],
            },
        )

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    async def _apply(
        self, resource: ResourceConfig, changes: ChangeSet, result: ReconciliationResult
    ) -> None:
        allow_delete = is_enabled(self._policy, POLICY_ALLOW_DELETE)

        if changes.delete:
            if allow_delete:
                batch = await self._executor.submit(
                    changes.delete, lambda item: self._delete_one(resource, item)
                )
                result.deleted += self._settle(resource, "delete", batch, result)
                if not batch.ok:
                    return
            else:
                result.skipped_deletes = len(changes.delete)
                logger.warning(
                    "Detected items that should be deleted. Doing so may be destructive; "
                    "enable deletes by setting ALLOW_DELETE to true",
                    extra={
                        "resource_type": resource.type,
                        "items": [resource.describe(item) for item in changes.delete],
                    },
                )

        if changes.update:
            batch = await self._executor.submit(
                changes.update, lambda item: self._update_one(resource, item, allow_delete)
            )
            result.updated += self._settle(resource, "update", batch, result)
            if not batch.ok:
                return

        if changes.create:
            batch = await self._executor.submit(
                changes.create, lambda item: self._create_one(resource, item)
            )
            result.created += self._settle(resource, "create", batch, result)

    def _settle(
        self,
        resource: ResourceConfig,
        operation: str,
        batch: BatchResult[Any],
        result: ReconciliationResult,
    ) -> int:
        """Record failures as MutationErrors; return the number of applied changes."""
        for outcome in batch.failed:
            item = outcome.item.desired if isinstance(outcome.item, UpdateItem) else outcome.item
            description = resource.describe(item)
            error = MutationError(
                f"Problem {operation.rstrip('e')}ing {description}: {outcome.error}",
                resource_type=resource.type,
                operation=operation,
                identity=description,
            )
            error.__cause__ = outcome.error
            result.errors.append(error)
        return sum(1 for outcome in batch.succeeded if outcome.result is not _NOTHING_TO_SEND)

    async def _delete_one(self, resource: ResourceConfig, item: dict[str, Any]) -> Any:
        delete = _require(resource, resource.endpoints.delete, "delete")
        return await delete(item.get(resource.id_field))

    async def _update_one(
        self, resource: ResourceConfig, update: UpdateItem, allow_delete: bool
    ) -> Any:
        send = _require(resource, resource.endpoints.update, "update")
        payload = build_update_payload(resource, update, allow_delete, self._policy)
        if not payload:
            return _NOTHING_TO_SEND
        return await send(update.remote_id, payload)

    async def _create_one(self, resource: ResourceConfig, item: dict[str, Any]) -> Any:
        send = _require(resource, resource.endpoints.create, "create")
        payload = build_create_payload(resource, item, self._policy)
        return await send(payload)

    def _log_result(self, result: ReconciliationResult) -> None:
        """Log reconciliation result with structured data."""
        # Counters nest under "summary": "created" is a reserved LogRecord attribute
        extra = {"resource_type": result.resource_type, "summary": result.to_summary()}
        if result.errors:
            logger.error("Reconciliation failed", extra=extra)
        elif result.absent:
            logger.info("Resource type not supported by the tenant, skipped", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)


def _require(
    resource: ResourceConfig, func: Callable[..., Awaitable[Any]] | None, operation: str
) -> Callable[..., Awaitable[Any]]:
    if func is None:
        raise MutationError(
            f"{resource.type} does not support {operation}",
            resource_type=resource.type,
            operation=operation,
        )
    return func


def _apply_object_fields(
    resource: ResourceConfig,
    payload: dict[str, Any],
    existing: dict[str, Any],
    allow_delete: bool,
) -> None:
    """Map removed sub-keys of object fields onto the API's null-to-delete protocol."""
    for field_name in resource.object_fields:
        desired_value = payload.get(field_name) or {}
        existing_value = existing.get(field_name) or {}
        if not desired_value and not existing_value:
            continue

        if desired_value:
            removed = [key for key in existing_value if key not in desired_value]
            if not removed:
                continue
            if allow_delete:
                payload[field_name] = {**desired_value, **{key: None for key in removed}}
            else:
                logger.warning(
                    "Detected object field entries that should be deleted; "
                    "enable deletes by setting ALLOW_DELETE to true",
                    extra={
                        "resource_type": resource.type,
                        "field": field_name,
                        "keys": removed,
                    },
                )
        elif allow_delete:
            payload[field_name] = {}
        else:
            payload.pop(field_name, None)
            logger.warning(
                "Detected object field that should be emptied; "
                "enable deletes by setting ALLOW_DELETE to true",
                extra={"resource_type": resource.type, "field": field_name},
            )


def build_update_payload(
    resource: ResourceConfig,
    update: UpdateItem,
    allow_delete: bool,
    policy: PolicyLookup,
) -> dict[str, Any]:
    """Payload for an update call.

    The desired payload without create-only fields, the remote identifier
    and unresolved secret placeholders. With patch semantics only the
    top-level keys that differ from the remote item are kept.
    """
    payload = strip_fields(update.desired, [*resource.strip_update_fields, resource.id_field])
    payload = strip_obfuscated_fields(payload, resource.sensitive_fields)
    _apply_object_fields(resource, payload, update.existing, allow_delete)

    if resource.patch_semantics:
        payload = {
            key: value for key, value in payload.items() if update.existing.get(key) != value
        }

    if resource.shape_update is not None:
        payload = resource.shape_update(payload, update.existing, policy)
    return payload


def build_create_payload(
    resource: ResourceConfig, item: dict[str, Any], policy: PolicyLookup
) -> dict[str, Any]:
    """Payload for a create call."""
    payload = strip_fields(item, [*resource.strip_create_fields, resource.id_field])
    payload = strip_obfuscated_fields(payload, resource.sensitive_fields)
    if resource.shape_create is not None:
        payload = resource.shape_create(payload, policy)
    return payload
