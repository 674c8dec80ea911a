"""Per-resource-type configuration consumed by the generic engine.

A resource handler is data, not a subclass: identity selection, field
stripping, normalization rules and endpoint bindings are all carried by
one ResourceConfig record, and hooks cover the few payload reshapes a
type needs.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from .client import ResourceEndpoints
from .config import PolicyLookup
from .errors import MissingIdentityError
from .normalizer import NormalizationRule, format_identity, identity_of

ValidateHook = Callable[[Any, PolicyLookup], None]
ShapeCreateHook = Callable[[dict[str, Any], PolicyLookup], dict[str, Any]]
ShapeUpdateHook = Callable[[dict[str, Any], dict[str, Any], PolicyLookup], dict[str, Any]]
FetchHook = Callable[[list[dict[str, Any]]], list[dict[str, Any]]]

DEFAULT_ORDER = 50


@dataclass(frozen=True)
class ResourceConfig:
    """Configuration of the engine for one resource type.

    Attributes:
        type: Resource type name, also the key in the desired assets.
        endpoints: Bound remote operations.
        identity: Field (or tuple of fields for composite keys) used to match items.
        id_field: Remote-assigned identifier used for update/delete calls.
        singleton: Single settings object rather than a named collection.
        strip_update_fields: Fields accepted on create only (never sent on update).
        strip_create_fields: Fields the backend rejects on create.
        server_computed_fields: Fields the backend fills in, ignored on compare.
        sensitive_fields: Secret fields; the backend echoes a placeholder for them.
        object_fields: Mapping fields whose removed sub-keys must be nulled on update.
        normalization_rules: Equivalence rules applied before comparison.
        schema: Optional pydantic model validating each desired item.
        patch_semantics: Send only changed top-level keys on update.
        compare_desired_keys_only: Ignore existing keys the desired item does not declare.
        null_equals_absent: Treat an explicit null like a missing field.
        order: Processing order across types (lower runs first).
    """

    type: str
    endpoints: ResourceEndpoints
    identity: str | tuple[str, ...] = "name"
    id_field: str = "id"
    singleton: bool = False
    strip_update_fields: tuple[str, ...] = ()
    strip_create_fields: tuple[str, ...] = ()
    server_computed_fields: tuple[str, ...] = ()
    sensitive_fields: tuple[str, ...] = ()
    object_fields: tuple[str, ...] = ()
    normalization_rules: tuple[NormalizationRule, ...] = ()
    schema: type[BaseModel] | None = None
    patch_semantics: bool = False
    compare_desired_keys_only: bool = False
    null_equals_absent: bool = True
    order: int = DEFAULT_ORDER

    # Hooks
    validate_hook: ValidateHook | None = None
    shape_create: ShapeCreateHook | None = None
    shape_update: ShapeUpdateHook | None = None
    fetch_hook: FetchHook | None = None

    def describe(self, item: dict[str, Any]) -> str:
        """Render an item for log lines and error messages."""
        if self.singleton:
            return self.type
        try:
            return f"{self.type} {format_identity(identity_of(item, self))}"
        except MissingIdentityError:
            remote_id = item.get(self.id_field)
            return f"{self.type} {remote_id}" if remote_id else f"{self.type} <unnamed>"
