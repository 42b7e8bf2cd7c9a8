"""
Role vocabularies.

Two closed enumerations:
    - GlobalRole: carried by the authenticated principal.
    - ProgramRole: carried by a ProgramMembership, scoped to one program.

Admin is a global role only; admins have implicit access to every program
and never hold a membership row.
"""

from enum import Enum


class GlobalRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    TEAM_MEMBER = "team_member"
    CLIENT = "client"

    @classmethod
    def parse(cls, value) -> "GlobalRole | None":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class ProgramRole(str, Enum):
    MANAGER = "manager"
    TEAM_MEMBER = "team_member"
    CLIENT = "client"

    @classmethod
    def parse(cls, value) -> "ProgramRole | None":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None

    def as_global(self) -> GlobalRole:
        """Same name in the global vocabulary, used by the transition tables."""
        return GlobalRole(self.value)


ALL_ROLES = frozenset(GlobalRole)
PROGRAM_ROLES = frozenset(ProgramRole)
