"""
CareVault Security Context
Identity of an already-authenticated caller.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from carevault.database.types import Role


@dataclass(frozen=True)
class SecurityContext:
    """Security context for authenticated users"""
    user_id: uuid.UUID
    organization_id: uuid.UUID
    role: Role
    email: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(str(self.role).upper()))

    @property
    def is_admin(self) -> bool:
        return self.role.is_admin
