"""
Request-scoped caller identity.

The CRUD layer resolves the authenticated user once per request and hands
a ``RequestContext`` to producer functions, so nothing downstream has to
dig the caller out of an untyped context map.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from retention.domain.enums import UserRole


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: int
    company_id: int
    email: str = ""
    role: UserRole = UserRole.EMPLOYEE

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.HR_ADMIN


@dataclass(frozen=True)
class RequestContext:
    user: AuthenticatedUser
    language: str = "en"
    request_id: Optional[str] = None

    @property
    def user_id(self) -> int:
        return self.user.user_id

    @property
    def company_id(self) -> int:
        return self.user.company_id
