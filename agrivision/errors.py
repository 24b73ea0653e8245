from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional


class AgriVisionError(Exception):
    """Base class for domain errors raised by the service layer."""


class DuplicateFarmName(AgriVisionError):
    def __init__(self, user_id: str, name: str):
        super().__init__(f"Farm name {name!r} already used by user {user_id!r}")
        self.user_id = user_id
        self.name = name


class DuplicateEmail(AgriVisionError):
    def __init__(self, email: str):
        super().__init__(f"Email {email!r} already registered")
        self.email = email


class DuplicateUser(AgriVisionError):
    def __init__(self, user_id: str):
        super().__init__(f"User {user_id!r} already registered")
        self.user_id = user_id


class OwnerRequired(AgriVisionError):
    """Location search is owner-scoped but no user was supplied."""


class LookupStatus(str, enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"


@dataclass
class FarmLookup:
    status: LookupStatus
    farm: Optional[Any] = None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND
