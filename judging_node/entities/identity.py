from __future__ import annotations

from dataclasses import dataclass

from judging_node.entities.roster import Role


@dataclass(frozen=True)
class Identity:
    """Who is asking. `role` is resolved from the judges collection, not the claim."""
    id: str | None
    email: str = ""
    role: Role = Role.AUDIENCE
    name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_judge(self) -> bool:
        return self.role == Role.JUDGE


ANONYMOUS = Identity(id=None)
