"""Identity extraction and payload normalization.

Desired and existing items are compared after normalization so that
differences the backend introduces on its own never drive an update:

- Remote identifiers, create-only and server-computed fields are stripped
- Secret fields are stripped (the backend only ever echoes a placeholder)
- Rule-based equivalences on dot paths: [] vs null, "true" vs True,
  case differences in enums, array ordering, defaults filled in remotely
- An absent field equals an explicit null unless the resource opts out
"""

from __future__ import annotations

import copy
import json
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .errors import MissingIdentityError

if TYPE_CHECKING:
    from .resources import ResourceConfig

logger = logging.getLogger(__name__)

# Placeholder the backend returns in place of secret values
OBFUSCATED_SECRET_VALUE = "_VALUE_NOT_SHOWN_"

IdentityKey = str | tuple[str, ...]


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # [], {}, "" and null are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # "true", "True", True, 1 are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # "100" == 100
    NUMERIC_STRING = "numeric_string"

    CASE_INSENSITIVE = "case_insensitive"

    # Trailing slashes, scheme case
    URL_NORMALIZE = "url_normalize"

    ARRAY_UNORDERED = "array_unordered"

    # Missing value equals the default the backend fills in
    DEFAULT_VALUE = "default_value"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        path_pattern: Dot path of the field to match. "*" matches one
            segment, "**" any number of segments.
        normalization_type: Type of normalization to apply.
        params: Additional parameters for the normalization.
        reason: Human-readable explanation.
    """

    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, path: str) -> bool:
        """Check if this rule applies to a field path."""
        return self.path_pattern == "**" or _glob_match(path, self.path_pattern)

    def apply(self, value: Any) -> Any:
        """Apply this rule to a present value."""
        match self.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return _normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return _normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return _normalize_numeric_string(value)
            case NormalizationType.CASE_INSENSITIVE:
                return value.lower() if isinstance(value, str) else value
            case NormalizationType.URL_NORMALIZE:
                return _normalize_url(value)
            case NormalizationType.ARRAY_UNORDERED:
                return _normalize_array_order(value)
            case NormalizationType.DEFAULT_VALUE:
                return self.params.get("default") if value is None else value
            case _:
                return value


def _glob_match(value: str, pattern: str) -> bool:
    """Glob matching on dot paths with * and ** support."""
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i : i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        else:
            regex_pattern += re.escape(pattern[i])
            i += 1
    regex_pattern += "$"

    return bool(re.match(regex_pattern, value))


def _normalize_empty(value: Any) -> Any:
    if value in ("", [], {}):
        return None
    return value


def _normalize_boolean(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value.lower() in ("true", "yes", "1", "on"):
            return True
        if value.lower() in ("false", "no", "0", "off"):
            return False
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
    return value


def _normalize_numeric_string(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            return value
    return value


def _normalize_url(value: Any) -> Any:
    if isinstance(value, str) and value.lower().startswith(("http://", "https://")):
        scheme_end = value.index("://")
        return (value[:scheme_end].lower() + value[scheme_end:]).rstrip("/")
    return value


def _normalize_array_order(value: Any) -> Any:
    if isinstance(value, list):
        return sorted(value, key=lambda x: json.dumps(x, sort_keys=True, default=str))
    return value


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


def _identity_fields(resource: ResourceConfig) -> tuple[str, ...]:
    if isinstance(resource.identity, str):
        return (resource.identity,)
    return tuple(resource.identity)


def _lookup(item: dict[str, Any], path: str) -> Any:
    node: Any = item
    for segment in path.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(segment)
    return node


def identity_of(item: dict[str, Any], resource: ResourceConfig) -> IdentityKey:
    """Extract the identity key of a desired or existing item.

    Returns a string for single-field identities and a tuple of strings
    for composite ones.

    Raises:
        MissingIdentityError: If any identity field is absent or empty.
    """
    parts: list[str] = []
    for field_name in _identity_fields(resource):
        value = _lookup(item, field_name)
        if value is None or value == "":
            raise MissingIdentityError(
                f"{resource.type} item is missing its identity field '{field_name}'",
                resource_type=resource.type,
            )
        parts.append(value if isinstance(value, str) else str(value))

    if len(parts) == 1:
        return parts[0]
    return tuple(parts)


def format_identity(key: IdentityKey) -> str:
    """Render an identity key for messages (composite parts joined by "-")."""
    if isinstance(key, tuple):
        return "-".join(key)
    return key


# ---------------------------------------------------------------------------
# Field paths
# ---------------------------------------------------------------------------


def _visit(node: Any, segments: list[str], action: Callable[[dict[str, Any], str], None]) -> None:
    """Call action(parent, key) for every match of a dot path.

    Lists are traversed transparently; "*" matches every key of a mapping.
    """
    if isinstance(node, list):
        for element in node:
            _visit(element, segments, action)
        return
    if not isinstance(node, dict) or not segments:
        return

    head, rest = segments[0], segments[1:]
    keys = list(node) if head == "*" else [head] if head in node else []
    for key in keys:
        if rest:
            _visit(node[key], rest, action)
        else:
            action(node, key)


def strip_fields(item: dict[str, Any], paths: Iterable[str]) -> dict[str, Any]:
    """Return a copy of item without the given dot-notation paths."""
    result = copy.deepcopy(item)

    def remove(parent: dict[str, Any], key: str) -> None:
        del parent[key]

    for path in paths:
        _visit(result, path.split("."), remove)
    return result


def obfuscate_sensitive_values(item: dict[str, Any], paths: Iterable[str]) -> dict[str, Any]:
    """Return a copy of item with secret values replaced by the placeholder."""
    result = copy.deepcopy(item)

    def obfuscate(parent: dict[str, Any], key: str) -> None:
        if parent[key] is not None:
            parent[key] = OBFUSCATED_SECRET_VALUE

    for path in paths:
        _visit(result, path.split("."), obfuscate)
    return result


def strip_obfuscated_fields(item: dict[str, Any], paths: Iterable[str]) -> dict[str, Any]:
    """Return a copy of item without secret fields still holding the placeholder.

    Sending the placeholder back would overwrite the real secret.
    """
    result = copy.deepcopy(item)

    def strip(parent: dict[str, Any], key: str) -> None:
        if parent[key] == OBFUSCATED_SECRET_VALUE:
            del parent[key]

    for path in paths:
        _visit(result, path.split("."), strip)
    return result


# ---------------------------------------------------------------------------
# Normalization and comparison
# ---------------------------------------------------------------------------


def _apply_rules(value: Any, path: str, rules: tuple[NormalizationRule, ...]) -> Any:
    if isinstance(value, dict):
        result: dict[str, Any] = {}
        for key, child in value.items():
            child_path = f"{path}.{key}" if path else key
            result[key] = _apply_rules(child, child_path, rules)
        _fill_defaults(result, path, rules)
        value = result
    elif isinstance(value, list):
        value = [_apply_rules(element, path, rules) for element in value]

    if path:
        for rule in rules:
            if rule.matches(path):
                value = rule.apply(value)
    return value


def _fill_defaults(node: dict[str, Any], path: str, rules: tuple[NormalizationRule, ...]) -> None:
    """Insert defaults for literal DEFAULT_VALUE paths missing under this mapping."""
    for rule in rules:
        if rule.normalization_type is not NormalizationType.DEFAULT_VALUE:
            continue
        parent_pattern, _, key = rule.path_pattern.rpartition(".")
        if "*" in key or key in node:
            continue
        if parent_pattern == path or (parent_pattern and path and _glob_match(path, parent_pattern)):
            node[key] = rule.params.get("default")


def _drop_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _drop_none(child) for key, child in value.items() if child is not None}
    if isinstance(value, list):
        return [_drop_none(element) for element in value]
    return value


def normalize(item: dict[str, Any], resource: ResourceConfig) -> dict[str, Any]:
    """Produce the payload used for equality comparison.

    Strips the remote identifier, create-only fields (not updatable),
    server-computed and secret fields, then applies the resource's
    normalization rules.
    """
    payload = strip_fields(
        item,
        [
            resource.id_field,
            *resource.strip_update_fields,
            *resource.server_computed_fields,
            *resource.sensitive_fields,
        ],
    )
    payload = _apply_rules(payload, "", tuple(resource.normalization_rules))
    if resource.null_equals_absent:
        payload = _drop_none(payload)
    return payload


def _project(existing: Any, desired: Any) -> Any:
    """Keep only the parts of existing that desired declares."""
    if isinstance(existing, dict) and isinstance(desired, dict):
        return {
            key: _project(existing[key], desired[key]) for key in desired if key in existing
        }
    return existing


def payloads_equal(
    desired: dict[str, Any], existing: dict[str, Any], resource: ResourceConfig
) -> bool:
    """Deep structural equality of normalized payloads (key order irrelevant)."""
    left = normalize(desired, resource)
    right = normalize(existing, resource)
    if resource.compare_desired_keys_only:
        right = _project(right, left)
    return left == right
