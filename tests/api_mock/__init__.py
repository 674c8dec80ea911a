"""Management API mocks for testing without a live tenant.

Two levels are provided:
- In-memory stores (MockCollection, MockSingleton) bound directly as
  ResourceEndpoints, for engine-level tests
- MockManagementApi, a stateful fake served through httpx.MockTransport,
  for the HTTP client, the resource catalog and end-to-end runs

Usage:
    from api_mock import MockCollection, resource_for

    roles = MockCollection([{"name": "admin"}])
    resource = resource_for(roles, type="roles")
"""

from .store import MockCollection, MockSingleton, RecordedCall, api_error, resource_for
from .transport import MockManagementApi, RecordedRequest

__all__ = [
    "MockCollection",
    "MockManagementApi",
    "MockSingleton",
    "RecordedCall",
    "RecordedRequest",
    "api_error",
    "resource_for",
]
