from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from database import from_db_timestamp


class Role(str, Enum):
    STUDENT = "student"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """The authenticated identity attached to a request."""

    user_id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


class User:
    """A registered account. The password hash never leaves this object through to_dict()."""

    def __init__(self, id: int, name: str, email: str, password_hash: str,
                 role: Role | str = Role.STUDENT, created_at: datetime | None = None) -> None:
        self.id = id
        self.name = name
        self.email = email
        self.password_hash = password_hash
        self.role = Role(role)
        self.created_at = created_at

    def principal(self) -> Principal:
        return Principal(user_id=self.id, role=self.role)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_row(row) -> "User":
        data = dict(row)
        return User(
            id=data["id"],
            name=data["name"],
            email=data["email"],
            password_hash=data["password_hash"],
            role=data["role"],
            created_at=from_db_timestamp(data.get("created_at")),
        )
