from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum


class Role(StrEnum):
    ADMIN = "admin"
    JUDGE = "judge"
    AUDIENCE = "audience"


def parse_number(number: str | None) -> int:
    """Contestant numbers are strings ("002"); non-numeric sorts as 0."""
    try:
        return int(str(number).strip())
    except (TypeError, ValueError):
        return 0


@dataclass
class Contestant:
    id: str
    number: str
    name: str
    character: str = ""
    image_url: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def sort_number(self) -> int:
        return parse_number(self.number)


@dataclass
class Judge:
    id: str
    name: str = ""
    email: str = ""
    role: Role = Role.AUDIENCE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.id


def order_contestants(contestants: list[Contestant]) -> list[Contestant]:
    return sorted(contestants, key=lambda c: (c.sort_number, c.id))
