"""Error taxonomy for resource reconciliation.

Every error is scoped to one resource type. A fatal error for one type is
recorded on that type's result and never aborts the rest of the run.
"""

from __future__ import annotations


class ReconcileError(Exception):
    """Base class for reconciliation errors."""

    def __init__(self, message: str, *, resource_type: str = "") -> None:
        super().__init__(message)
        self.resource_type = resource_type


class ValidationError(ReconcileError):
    """Desired state is structurally invalid. Raised before any network call."""

    pass


class MissingIdentityError(ValidationError):
    """A desired item does not carry its identity key."""

    pass


class DuplicateIdentityError(ValidationError):
    """Two or more desired items share an identity key."""

    def __init__(
        self, message: str, *, resource_type: str = "", identities: list[str] | None = None
    ) -> None:
        super().__init__(message, resource_type=resource_type)
        self.identities = identities or []


class AbsentResourceError(ReconcileError):
    """The backend does not support this resource kind for the tenant.

    Internal only: the fetcher converts it into the ABSENT marker.
    """

    pass


class FetchError(ReconcileError):
    """Reading remote state failed for a reason other than absence."""

    pass


class MutationError(ReconcileError):
    """A create, update or delete call failed."""

    def __init__(
        self,
        message: str,
        *,
        resource_type: str = "",
        operation: str = "",
        identity: str = "",
    ) -> None:
        super().__init__(message, resource_type=resource_type)
        self.operation = operation
        self.identity = identity
