"""
Engine-wide exception hierarchy.

Every service raises one of these types. The request tier registers one
handler per type and gets consistent HTTP status codes everywhere.

Usage:
    from capital_planner.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Criterion", resource_id=42)
    raise ValidationError("Score must be between 0 and 10", details={"score": "..."})
"""


class NotFoundError(Exception):
    """Raised when a criterion, cycle, allocation, score or project is unknown.

    Args:
        resource: Human-readable entity name (e.g. "Criterion", "BudgetCycle").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails a business rule.

    Covers out-of-range scores and weights, duplicate active criterion
    names, allocation years outside the cycle window and invalid status
    transitions.

    Args:
        message: Human-readable explanation of what failed.
        details: Field-level breakdown. Keys are field names; values are
                 error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class PermissionDeniedError(Exception):
    """Raised when a non-admin caller attempts an admin-only action.

    Kept distinct from ValidationError so the caller can render an
    access-denied message. Named to avoid shadowing the builtin
    ``PermissionError`` (an ``OSError`` subclass).

    Args:
        action: The action that was refused (e.g. "criteria.permanent_delete").
        role: The caller's role.
    """

    def __init__(self, action: str, role: str | None = None) -> None:
        self.action = action
        self.role = role
        msg = f"Role {role!r} is not allowed to perform {action}"
        super().__init__(msg)


class ConsistencyError(Exception):
    """Raised when a mutation would break a cross-entity invariant.

    Examples: removing the last active criterion, weights that do not sum
    to 100 after normalization, a funding-constraint overrun.

    Args:
        message: Human-readable explanation.
        details: Structured payload (e.g. overrun years and amounts).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)
