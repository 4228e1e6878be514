"""The authenticated caller, as resolved by the upstream auth layer."""

from dataclasses import dataclass

from taskflow.models.auth import USER_ROLES


@dataclass(frozen=True)
class Actor:
    id: int
    role: str

    def __post_init__(self):
        if self.role not in USER_ROLES:
            raise ValueError(f"Unknown role: {self.role}")
