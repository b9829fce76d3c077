from dataclasses import dataclass, field
from typing import Literal

Role = Literal["user", "agency_owner", "admin"]

_MESSAGING_SCOPES = frozenset({"messages:read", "messages:write"})
_AGENCY_SCOPES = _MESSAGING_SCOPES | {"notifications:read", "notifications:write"}

ROLE_SCOPES: dict[str, frozenset[str]] = {
    "user": _MESSAGING_SCOPES,
    "agency_owner": _AGENCY_SCOPES,
    "admin": _AGENCY_SCOPES | {"messages:moderate", "admin:read", "admin:write"},
}


@dataclass(frozen=True, slots=True)
class Principal:
    """An authenticated Supabase user and the scopes granted by their role."""

    user_id: str
    role: Role = "user"
    email: str | None = None
    scopes: frozenset[str] = field(default=frozenset())

    @classmethod
    def for_role(cls, *, user_id: str, role: Role, email: str | None = None) -> "Principal":
        return cls(user_id=user_id, role=role, email=email, scopes=ROLE_SCOPES[role])

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def missing_scopes(self, required: set[str]) -> list[str]:
        return sorted(required - self.scopes)


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None
