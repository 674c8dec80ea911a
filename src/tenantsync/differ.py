"""Classification of desired items against remote state.

Every desired item with a unique identity lands in exactly one of create
or update (or is unchanged); every existing item lands in exactly one of
update or delete (or is unchanged). Desired identities that repeat are
reported as conflicts and never matched.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from .errors import MissingIdentityError
from .normalizer import IdentityKey, identity_of, payloads_equal
from .resources import ResourceConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Conflict:
    """An identity key declared more than once in the desired state."""

    identity: IdentityKey
    count: int


@dataclass
class UpdateItem:
    """A desired item whose normalized payload differs from its remote match.

    Attributes:
        remote_id: Identifier for the mutation call (None for singletons).
        desired: Full desired payload.
        existing: Matched remote item.
    """

    remote_id: Any
    desired: dict[str, Any]
    existing: dict[str, Any]


@dataclass
class ChangeSet:
    """Disjoint create/update/delete/conflict classification of one resource type."""

    create: list[dict[str, Any]] = field(default_factory=list)
    update: list[UpdateItem] = field(default_factory=list)
    delete: list[dict[str, Any]] = field(default_factory=list)
    conflict: list[Conflict] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.create or self.update or self.delete or self.conflict)

    def counts(self) -> dict[str, int]:
        return {
            "create": len(self.create),
            "update": len(self.update),
            "delete": len(self.delete),
            "conflict": len(self.conflict),
        }


def find_conflicts(desired: Sequence[dict[str, Any]], resource: ResourceConfig) -> list[Conflict]:
    """List identity keys that occur more than once, in first-seen order."""
    counts = Counter(identity_of(item, resource) for item in desired)
    return [Conflict(identity=key, count=count) for key, count in counts.items() if count > 1]


def _diff_singleton(
    desired: Sequence[dict[str, Any]],
    existing: Sequence[dict[str, Any]],
    resource: ResourceConfig,
) -> ChangeSet:
    changes = ChangeSet()
    desired_payload = desired[0] if desired else {}
    if not desired_payload:
        return changes

    existing_payload = existing[0] if existing else {}
    if not payloads_equal(desired_payload, existing_payload, resource):
        changes.update.append(
            UpdateItem(remote_id=None, desired=desired_payload, existing=existing_payload)
        )
    return changes


def diff(
    desired: Sequence[dict[str, Any]],
    existing: Sequence[dict[str, Any]],
    resource: ResourceConfig,
) -> ChangeSet:
    """Classify desired items against existing items.

    Args:
        desired: Desired items (a single-element sequence for singletons).
        existing: Remote items as fetched.
        resource: Configuration of the resource type.

    Returns:
        The ChangeSet. Deletes are classified regardless of delete policy.

    Raises:
        MissingIdentityError: If a desired item has no identity key.
    """
    if resource.singleton:
        return _diff_singleton(desired, existing, resource)

    changes = ChangeSet(conflict=find_conflicts(desired, resource))
    conflicted = {conflict.identity for conflict in changes.conflict}

    desired_by_key: dict[IdentityKey, dict[str, Any]] = {}
    for item in desired:
        key = identity_of(item, resource)
        if key not in conflicted and key not in desired_by_key:
            desired_by_key[key] = item

    # Existing items in fetch order; key is None for items that cannot be matched
    scanned: list[tuple[IdentityKey | None, dict[str, Any]]] = []
    existing_by_key: dict[IdentityKey, dict[str, Any]] = {}
    seen_remote_ids: set[Any] = set()
    for item in existing:
        remote_id = item.get(resource.id_field)
        if remote_id is not None:
            if remote_id in seen_remote_ids:
                continue
            seen_remote_ids.add(remote_id)

        try:
            key: IdentityKey | None = identity_of(item, resource)
        except MissingIdentityError:
            key = None

        if key is not None and key in existing_by_key:
            logger.warning(
                "Duplicate identity in remote state, extra item classified as delete",
                extra={"resource_type": resource.type, "remote_id": remote_id},
            )
            key = None
        elif key is not None:
            existing_by_key[key] = item
        scanned.append((key, item))

    for key, item in desired_by_key.items():
        match = existing_by_key.get(key)
        if match is None:
            changes.create.append(item)
        elif not payloads_equal(item, match, resource):
            changes.update.append(
                UpdateItem(remote_id=match.get(resource.id_field), desired=item, existing=match)
            )

    for key, item in scanned:
        if key is None or (key not in desired_by_key and key not in conflicted):
            changes.delete.append(item)

    return changes
