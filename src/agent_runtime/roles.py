from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Protocol, runtime_checkable


@dataclass(frozen=True)
class RoleRecord:
    id: str
    name: str
    tool_ids: frozenset[str] = field(default_factory=frozenset)


@runtime_checkable
class RoleSource(Protocol):
    async def get(self, role_id: str) -> RoleRecord | None: ...


class StaticRoleSource:
    """Role lookup backed by an in-memory table."""

    def __init__(self, roles: Mapping[str, RoleRecord] | None = None):
        self._roles: dict[str, RoleRecord] = dict(roles or {})

    @classmethod
    def from_tool_ids(cls, table: Mapping[str, list[str] | tuple[str, ...]]) -> StaticRoleSource:
        return cls({
            role_id: RoleRecord(id=role_id, name=role_id, tool_ids=frozenset(tool_ids))
            for role_id, tool_ids in table.items()
        })

    def add(self, role: RoleRecord) -> None:
        self._roles[role.id] = role

    async def get(self, role_id: str) -> RoleRecord | None:
        return self._roles.get(role_id)
