"""
Error taxonomy for the authorization & audit core.

Services raise these; the request layer (handlers registered in create_app)
turns them into responses.
"""
from __future__ import annotations

DENIAL_MESSAGE = "You are not authorized to perform this action."


class TenantdeskError(Exception):
    pass


class NotAuthorized(TenantdeskError):
    """Permission or tenant predicate failed. Carries no detail on purpose."""

    def __init__(self) -> None:
        super().__init__(DENIAL_MESSAGE)


class NotFound(TenantdeskError):
    """Record absent, discarded, or filtered out of the actor's scope."""

    def __init__(self) -> None:
        super().__init__(DENIAL_MESSAGE)


class HasActiveChildren(TenantdeskError):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailed(TenantdeskError):
    def __init__(self, errors: list[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class AuditWriteFailed(TenantdeskError):
    pass


class AuditLogImmutable(TenantdeskError):
    pass
