"""Desired-state file loading.

SECURITY: File reads enforce a size limit and use yaml.safe_load only.
Structure is checked at the boundary; per-type schema validation happens
in the reconciler before any network call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import MAX_DESIRED_STATE_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)

# Top-level key listing item names managed outside this tool, per resource type
EXCLUDE_KEY = "exclude"


class SpecLoadError(Exception):
    """Raised when desired-state loading fails."""

    pass


@dataclass
class DesiredState:
    """Desired assets keyed by resource type.

    Attributes:
        assets: Resource type to desired items (list) or settings (mapping).
        excluded_names: Resource type to item names that must not be touched.
        source: File the state was loaded from.
    """

    assets: dict[str, Any] = field(default_factory=dict)
    excluded_names: dict[str, list[str]] = field(default_factory=dict)
    source: Path | None = None


def _parse_excluded(raw: Any, path: Path) -> dict[str, list[str]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise SpecLoadError(f"'{EXCLUDE_KEY}' must be a mapping of resource type to names: {path}")

    excluded: dict[str, list[str]] = {}
    for resource_type, names in raw.items():
        if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
            raise SpecLoadError(
                f"'{EXCLUDE_KEY}.{resource_type}' must be a list of names: {path}"
            )
        excluded[str(resource_type)] = names
    return excluded


def load_desired_state(path: Path) -> DesiredState:
    """Load desired state from a YAML (or JSON) file.

    Both a flat mapping and a Kubernetes-style wrapper
    (apiVersion/kind/metadata/spec) are accepted.

    Raises:
        SpecLoadError: If the file cannot be read or is not a mapping.
    """
    if not path.exists():
        raise SpecLoadError(f"Desired state file not found: {path}")

    # SECURITY: Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat desired state file {path}: {e}") from e

    if file_size > MAX_DESIRED_STATE_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Desired state file exceeds maximum size of "
            f"{MAX_DESIRED_STATE_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read desired state file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Desired state file must contain a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
    else:
        spec_data = raw_data

    assets = {str(key): value for key, value in spec_data.items() if key != EXCLUDE_KEY}
    state = DesiredState(
        assets=assets,
        excluded_names=_parse_excluded(spec_data.get(EXCLUDE_KEY), path),
        source=path,
    )

    logger.info(
        "Loaded desired state",
        extra={"path": str(path), "resource_types": sorted(assets)},
    )
    return state
