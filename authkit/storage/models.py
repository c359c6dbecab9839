from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class User:
    """A stored account.

    ``id`` is the internal integer key assigned by the store (0 until
    persisted). ``external_id`` is what clients see.
    """

    external_id: str
    email: str
    name: str
    id: int = 0
    password_hash: Optional[str] = None
    avatar_url: Optional[str] = None
    provider: Optional[str] = None
    provider_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)
