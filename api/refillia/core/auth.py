from dataclasses import dataclass
from enum import Enum

MODERATION_WRITE_SCOPE = "moderation:write"


class PrincipalType(str, Enum):
    HUMAN = "human"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None

    @property
    def is_privileged(self) -> bool:
        return MODERATION_WRITE_SCOPE in self.scopes

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")
