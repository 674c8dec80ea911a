"""Management API client and the endpoint bindings consumed by the engine.

The engine only sees ResourceEndpoints: bound coroutines for listing,
reading, creating, updating and deleting one resource type. The HTTP
client below is the production binding; tests bind in-memory fakes.

Every non-2xx response surfaces as ApiError carrying the transport-level
signals (status code, error code, message) the fetcher uses to tell
"feature unavailable" apart from real failures.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import quote

import httpx

from .config import DEFAULT_REQUEST_TIMEOUT_SECONDS, MAX_PAGE_SIZE, Config

logger = logging.getLogger(__name__)

API_BASE_PATH = "/api/v2/"
CHECKPOINT_PAGE_SIZE = 50
USER_AGENT = "tenantsync"


class ApiError(Exception):
    """Raised when the management API answers with a non-2xx status.

    Attributes:
        status_code: HTTP status of the response.
        error_code: Backend error code (e.g. "feature_not_enabled"), if any.
        retry_after: Seconds to wait before retrying, from the Retry-After header.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        error_code: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.retry_after = retry_after

    def __str__(self) -> str:
        code = f" ({self.error_code})" if self.error_code else ""
        return f"{self.status_code}{code}: {self.message}"

    @classmethod
    def from_response(cls, response: httpx.Response) -> ApiError:
        """Build an ApiError from an error response.

        Understands the backend's {statusCode, error, errorCode, message} body
        and falls back to the reason phrase for anything else.
        """
        message = response.reason_phrase or "Request failed"
        error_code: str | None = None

        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            message = str(body.get("message") or body.get("error") or message)
            raw_code = body.get("errorCode") or body.get("error_code")
            error_code = str(raw_code) if raw_code else None

        retry_after: float | None = None
        header = response.headers.get("retry-after")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None

        return cls(
            message,
            status_code=response.status_code,
            error_code=error_code,
            retry_after=retry_after,
        )


class PaginationStyle(str, Enum):
    """Pagination protocols offered by collection endpoints."""

    PAGE = "page"  # page / per_page / include_totals
    CHECKPOINT = "checkpoint"  # take / from, follow "next"
    NONE = "none"  # single response holds the whole collection


@dataclass
class Page:
    """One page of a collection.

    Attributes:
        items: Items in the order the backend returned them.
        next_params: Request parameters for the following page, None on the last page.
        total: Collection size reported by the backend, if any.
    """

    items: list[dict[str, Any]]
    next_params: dict[str, Any] | None = None
    total: int | None = None


ListPageFn = Callable[[dict[str, Any]], Awaitable[Page]]
GetFn = Callable[[], Awaitable[dict[str, Any] | None]]
CreateFn = Callable[[dict[str, Any]], Awaitable[Any]]
UpdateFn = Callable[[str | None, dict[str, Any]], Awaitable[Any]]
DeleteFn = Callable[[str | None], Awaitable[Any]]


@dataclass(frozen=True)
class ResourceEndpoints:
    """Bound remote operations for one resource type.

    Collections bind list_page; singletons bind get. Singletons receive
    None as the remote id on update.
    """

    list_page: ListPageFn | None = None
    get: GetFn | None = None
    create: CreateFn | None = None
    update: UpdateFn | None = None
    delete: DeleteFn | None = None
    list_params: dict[str, Any] = field(default_factory=dict)


def extract_collection(body: Any) -> list[dict[str, Any]]:
    """Find the item list inside a list response.

    The backend wraps collections as {"total": n, "<entities>": [...]}; the
    entity key differs per resource type, so the single list value is taken.
    """
    if body is None:
        return []
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        lists = [value for value in body.values() if isinstance(value, list)]
        if len(lists) == 1:
            return lists[0]
    raise ApiError(
        "Could not find the entity list within the response",
        status_code=200,
        error_code="invalid_response",
    )


class ManagementApiClient:
    """Async HTTP client for the tenant management API.

    Usage:
        async with ManagementApiClient.from_config(config) as client:
            endpoints = client.collection("log-streams", pagination=PaginationStyle.NONE)
    """

    def __init__(
        self,
        domain: str,
        access_token: str,
        *,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        page_size: int = MAX_PAGE_SIZE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            domain: Tenant host name (e.g. "acme.example-auth.com").
            access_token: Bearer token for the management API.
            timeout_seconds: Per-request timeout, enforced by httpx.
            page_size: Items requested per page for page-style pagination.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self._domain = domain
        self._page_size = page_size
        self._client = httpx.AsyncClient(
            base_url=f"https://{domain}{API_BASE_PATH}",
            headers={
                "Authorization": f"Bearer {access_token}",
                "User-Agent": USER_AGENT,
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls, config: Config, transport: httpx.AsyncBaseTransport | None = None
    ) -> ManagementApiClient:
        """Create a client from validated configuration."""
        return cls(
            config.domain,
            config.access_token,
            timeout_seconds=config.request_timeout_seconds,
            transport=transport,
        )

    @property
    def domain(self) -> str:
        """Tenant host this client talks to."""
        return self._domain

    async def __aenter__(self) -> ManagementApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            ApiError: If the response status is not 2xx.
        """
        response = await self._client.request(method, path, params=params, json=json)

        if response.is_error:
            error = ApiError.from_response(response)
            logger.debug(
                "Management API error",
                extra={
                    "method": method,
                    "path": path,
                    "status_code": error.status_code,
                    "error_code": error.error_code,
                },
            )
            raise error

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, payload: dict[str, Any]) -> Any:
        return await self.request("POST", path, json=payload)

    async def patch(self, path: str, payload: dict[str, Any]) -> Any:
        return await self.request("PATCH", path, json=payload)

    async def put(self, path: str, payload: dict[str, Any]) -> Any:
        return await self.request("PUT", path, json=payload)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def list_page(
        self,
        path: str,
        params: dict[str, Any],
        pagination: PaginationStyle,
    ) -> Page:
        """Fetch one page of a collection."""
        match pagination:
            case PaginationStyle.PAGE:
                page = int(params.get("page", 0))
                per_page = int(params.get("per_page", self._page_size))
                request_params = {
                    **params,
                    "page": page,
                    "per_page": per_page,
                    "include_totals": "true",
                }
                body = await self.request("GET", path, params=request_params)
                items = extract_collection(body)
                total = body.get("total") if isinstance(body, dict) else None
                fetched = page * per_page + len(items)
                has_more = total is not None and items and fetched < int(total)
                return Page(
                    items=items,
                    next_params={**request_params, "page": page + 1} if has_more else None,
                    total=int(total) if total is not None else None,
                )

            case PaginationStyle.CHECKPOINT:
                # Cursor responses carry no total; ask for it before the first page
                total = None
                if "from" not in params:
                    total = await self._checkpoint_total(path, params)
                request_params = {**params}
                request_params.setdefault("take", CHECKPOINT_PAGE_SIZE)
                body = await self.request("GET", path, params=request_params)
                items = extract_collection(body)
                cursor = body.get("next") if isinstance(body, dict) else None
                return Page(
                    items=items,
                    next_params={**request_params, "from": cursor} if cursor else None,
                    total=total,
                )

            case _:
                body = await self.request("GET", path, params=params or None)
                return Page(items=extract_collection(body))

    async def _checkpoint_total(self, path: str, params: dict[str, Any]) -> int | None:
        base = {key: value for key, value in params.items() if key not in ("take", "from")}
        body = await self.request(
            "GET", path, params={**base, "include_totals": "true", "page": 0, "per_page": 1}
        )
        total = body.get("total") if isinstance(body, dict) else None
        return int(total) if total is not None else None

    def collection(
        self,
        path: str,
        *,
        pagination: PaginationStyle = PaginationStyle.PAGE,
        update_method: str = "PATCH",
        list_params: dict[str, Any] | None = None,
    ) -> ResourceEndpoints:
        """Bind list/create/update/delete for a named collection."""

        async def list_page(params: dict[str, Any]) -> Page:
            return await self.list_page(path, params, pagination)

        async def create(payload: dict[str, Any]) -> Any:
            return await self.request("POST", path, json=payload)

        async def update(remote_id: str | None, payload: dict[str, Any]) -> Any:
            return await self.request(update_method, _item_path(path, remote_id), json=payload)

        async def delete(remote_id: str | None) -> Any:
            return await self.request("DELETE", _item_path(path, remote_id))

        return ResourceEndpoints(
            list_page=list_page,
            create=create,
            update=update,
            delete=delete,
            list_params=dict(list_params or {}),
        )

    def singleton(self, path: str, *, update_method: str = "PATCH") -> ResourceEndpoints:
        """Bind get/update for a single settings object."""

        async def get() -> dict[str, Any] | None:
            body = await self.request("GET", path)
            return body if isinstance(body, dict) else None

        async def update(_remote_id: str | None, payload: dict[str, Any]) -> Any:
            return await self.request(update_method, path, json=payload)

        return ResourceEndpoints(get=get, update=update)

    def endpoints_for(
        self,
        path: str,
        *,
        singleton: bool = False,
        pagination: PaginationStyle = PaginationStyle.PAGE,
        update_method: str = "PATCH",
        list_params: dict[str, Any] | None = None,
    ) -> ResourceEndpoints:
        """Bind the endpoints of a collection or singleton path."""
        if singleton:
            return self.singleton(path, update_method=update_method)
        return self.collection(
            path,
            pagination=pagination,
            update_method=update_method,
            list_params=list_params,
        )


def _item_path(path: str, remote_id: str | None) -> str:
    if not remote_id:
        raise ValueError(f"A remote id is required to address an item of {path}")
    return f"{path.rstrip('/')}/{quote(str(remote_id), safe='')}"
