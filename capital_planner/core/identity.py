"""
Caller identity passed into mutating service calls.

The request tier builds an Actor from the authenticated request; services
only read ``user_id`` (for scoredBy/changedBy stamps) and ``role`` (for
admin-only gates).
"""

from __future__ import annotations

from dataclasses import dataclass

ROLES = {"admin", "editor", "viewer"}


@dataclass(frozen=True)
class Actor:
    """Authenticated caller: user id (None for system jobs) and role."""

    user_id: int | None = None
    role: str = "viewer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def system(cls) -> Actor:
        return cls(user_id=None, role="admin")
