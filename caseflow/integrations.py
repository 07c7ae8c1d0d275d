"""
Contracts for collaborating systems.

The engine only needs to know whether a case exists (plus a little metadata)
and which user currently holds a role. In-memory implementations back tests
and single-node deployments.
"""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field


class CaseInfo(BaseModel):
    """Case metadata used at instantiation."""

    case_id: str
    title: str = ""
    matter_type: Optional[str] = None
    responsible_attorney: Optional[str] = Field(default=None, description="Fallback assignee")


class CaseRegistry(ABC):
    """Case/process registry."""

    @abstractmethod
    async def get_case(self, case_id: str) -> Optional[CaseInfo]:
        """Return case metadata, or None when the case does not exist."""

    async def exists(self, case_id: str) -> bool:
        return await self.get_case(case_id) is not None


class IdentityService(ABC):
    """Resolves assignee roles to concrete user ids."""

    @abstractmethod
    async def resolve_role(self, role: str, case_id: Optional[str] = None) -> Optional[str]:
        """User id currently holding ``role`` (optionally scoped to a case)."""

    async def users_with_role(self, role: str, case_id: Optional[str] = None) -> list[str]:
        user = await self.resolve_role(role, case_id)
        return [user] if user else []


class InMemoryCaseRegistry(CaseRegistry):
    """Case registry backed by a dictionary.

    With ``allow_unknown`` every case id is accepted, which suits deployments
    where the registry lives elsewhere and is not consulted.
    """

    def __init__(self, cases: Optional[list[CaseInfo]] = None, allow_unknown: bool = False):
        self._cases = {case.case_id: case for case in cases or []}
        self.allow_unknown = allow_unknown

    def add_case(self, case: CaseInfo) -> None:
        self._cases[case.case_id] = case

    async def get_case(self, case_id: str) -> Optional[CaseInfo]:
        case = self._cases.get(case_id)
        if case is None and self.allow_unknown:
            return CaseInfo(case_id=case_id)
        return case


class RoleDirectory(IdentityService):
    """
    Static role -> users mapping.

    Case-scoped assignments take precedence over the global mapping; the
    first user listed for a role is the one tasks are assigned to.
    """

    def __init__(self, roles: Optional[dict[str, list[str]]] = None):
        self._roles: dict[str, list[str]] = {
            self._key(role): list(users) for role, users in (roles or {}).items()
        }
        self._case_roles: dict[tuple[str, str], list[str]] = {}

    @staticmethod
    def _key(role: str) -> str:
        return role.strip().lower()

    def assign(self, role: str, user_id: str, case_id: Optional[str] = None) -> None:
        if case_id:
            self._case_roles.setdefault((case_id, self._key(role)), []).append(user_id)
        else:
            self._roles.setdefault(self._key(role), []).append(user_id)

    async def users_with_role(self, role: str, case_id: Optional[str] = None) -> list[str]:
        key = self._key(role)
        if case_id and (case_id, key) in self._case_roles:
            return list(self._case_roles[(case_id, key)])
        return list(self._roles.get(key, []))

    async def resolve_role(self, role: str, case_id: Optional[str] = None) -> Optional[str]:
        users = await self.users_with_role(role, case_id)
        return users[0] if users else None
