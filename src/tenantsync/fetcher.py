"""Paged retrieval of remote state.

Reads the complete remote collection for one resource type, following
pagination until the backend reports no further page. "Resource kind not
available for this tenant" responses are turned into the ABSENT marker so
the orchestrator can treat them as an empty, unsupported type instead of a
failure requiring operator action.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable
from typing import Any

from .client import ApiError
from .config import DEFAULT_FEATURE_DISABLED_ERROR_CODES, MAX_FETCH_PAGES
from .errors import AbsentResourceError, FetchError
from .normalizer import obfuscate_sensitive_values
from .resources import ResourceConfig

logger = logging.getLogger(__name__)

DEFAULT_ABSENT_STATUSES: frozenset[int] = frozenset({404, 501})


class _Absent:
    """Marker for a resource kind the backend does not support for this tenant."""

    _instance: _Absent | None = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = _Absent()

FetchResult = list[dict[str, Any]] | _Absent


def is_absent_error(
    error: ApiError,
    feature_codes: Iterable[str] = DEFAULT_FEATURE_DISABLED_ERROR_CODES,
    absent_statuses: Collection[int] = DEFAULT_ABSENT_STATUSES,
) -> bool:
    """Decide whether a read error means "not supported" rather than "failed".

    True for an absent status (unknown resource kind for this API version)
    or a 403 whose error code says the feature is disabled for the tenant.
    Any other 403, including insufficient scope, is a real failure.
    """
    if error.status_code in absent_statuses:
        return True
    return error.status_code == 403 and error.error_code in set(feature_codes)


class PagedFetcher:
    """Reads complete remote collections, one resource type at a time."""

    def __init__(
        self,
        feature_codes: Iterable[str] = DEFAULT_FEATURE_DISABLED_ERROR_CODES,
        absent_statuses: Collection[int] = DEFAULT_ABSENT_STATUSES,
        max_pages: int = MAX_FETCH_PAGES,
    ) -> None:
        self._feature_codes = tuple(feature_codes)
        self._absent_statuses = frozenset(absent_statuses)
        self._max_pages = max_pages

    async def fetch_all(self, resource: ResourceConfig) -> FetchResult:
        """Fetch the whole remote state of a resource type.

        Returns:
            Items in the order received (deduplicated by remote identifier),
            or ABSENT when the backend does not support the resource type.

        Raises:
            FetchError: For any read failure other than absence.
        """
        try:
            items = await self._fetch(resource)
        except AbsentResourceError as e:
            logger.info(
                "Resource type not available for this tenant, treating as absent",
                extra={"resource_type": resource.type, "reason": str(e)},
            )
            return ABSENT

        if resource.fetch_hook is not None:
            items = resource.fetch_hook(items)

        if resource.sensitive_fields:
            items = [obfuscate_sensitive_values(item, resource.sensitive_fields) for item in items]

        logger.debug(
            "Fetched remote state",
            extra={"resource_type": resource.type, "count": len(items)},
        )
        return items

    async def _fetch(self, resource: ResourceConfig) -> list[dict[str, Any]]:
        try:
            if resource.singleton:
                return await self._fetch_singleton(resource)
            return await self._fetch_pages(resource)
        except ApiError as e:
            if is_absent_error(e, self._feature_codes, self._absent_statuses):
                raise AbsentResourceError(str(e), resource_type=resource.type) from e
            raise FetchError(
                f"Failed to fetch {resource.type}: {e}", resource_type=resource.type
            ) from e

    async def _fetch_singleton(self, resource: ResourceConfig) -> list[dict[str, Any]]:
        if resource.endpoints.get is None:
            raise FetchError(
                f"No read endpoint bound for {resource.type}", resource_type=resource.type
            )
        item = await resource.endpoints.get()
        return [item] if item else []

    async def _fetch_pages(self, resource: ResourceConfig) -> list[dict[str, Any]]:
        list_page = resource.endpoints.list_page
        if list_page is None:
            raise FetchError(
                f"No list endpoint bound for {resource.type}", resource_type=resource.type
            )

        items: list[dict[str, Any]] = []
        seen_ids: set[Any] = set()
        received = 0
        total: int | None = None
        params: dict[str, Any] | None = dict(resource.endpoints.list_params)
        pages = 0

        while params is not None:
            pages += 1
            if pages > self._max_pages:
                raise FetchError(
                    f"Failed to fetch {resource.type}: more than {self._max_pages} pages",
                    resource_type=resource.type,
                )

            page = await list_page(params)
            received += len(page.items)
            if page.total is not None:
                total = page.total

            for item in page.items:
                remote_id = item.get(resource.id_field)
                if remote_id is not None:
                    if remote_id in seen_ids:
                        continue
                    seen_ids.add(remote_id)
                items.append(item)

            params = page.next_params

        if total is not None and received < total:
            raise FetchError(
                f"Fail to load data from tenant: {resource.type} reported {total} items, "
                f"received {received}",
                resource_type=resource.type,
            )

        if received != len(items):
            logger.debug(
                "Dropped duplicate items returned across pages",
                extra={"resource_type": resource.type, "duplicates": received - len(items)},
            )
        return items
