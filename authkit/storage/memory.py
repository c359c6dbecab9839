from __future__ import annotations

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from authkit.logging import get_logger
from authkit.storage.errors import ConstraintViolation
from authkit.storage.models import User


class MemoryStore:
    """In-memory identity store with optional JSON persistence.

    Uniqueness of email and of the (provider, provider_id) pair is checked
    inside ``_data_lock`` so concurrent creates cannot both succeed. Only
    non-deleted users take part in either check.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self._user_id_seq: int = 1
        # RLock so helpers can be called while already holding the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # lookups
    def _live_users(self):
        return (u for u in self.users.values() if u.deleted_at is None)

    def _find_by_email(self, email: str) -> Optional[User]:
        needle = email.lower()
        return next((u for u in self._live_users() if u.email.lower() == needle), None)

    def _find_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        return next(
            (
                u
                for u in self._live_users()
                if u.provider == provider and u.provider_id == provider_id
            ),
            None,
        )

    def _check_unique(self, user: User, *, exclude_id: Optional[int] = None) -> None:
        existing = self._find_by_email(user.email)
        if existing is not None and existing.id != exclude_id:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if user.provider and user.provider_id:
            linked = self._find_by_provider(user.provider, user.provider_id)
            if linked is not None and linked.id != exclude_id:
                raise ConstraintViolation(
                    "provider identity already linked", {"field": "provider_id"}
                )
        for other in self.users.values():
            if other.external_id == user.external_id and other.id != exclude_id:
                raise ConstraintViolation(
                    "external id already exists", {"field": "external_id"}
                )

    # user
    def create_user(self, user: User) -> User:
        with self._data_lock:
            self._check_unique(user)
            stored = copy.copy(user)
            stored.id = self._user_id_seq
            self._user_id_seq += 1
            now = datetime.utcnow()
            stored.created_at = now
            stored.updated_at = now
            stored.deleted_at = None
            self.users[stored.id] = stored
            self._persist_state()
            return copy.copy(stored)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or user.deleted_at is not None:
                return None
            return copy.copy(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_email(email)
            return copy.copy(user) if user else None

    def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self._live_users() if u.external_id == external_id), None
            )
            return copy.copy(user) if user else None

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_provider(provider, provider_id)
            return copy.copy(user) if user else None

    def update_user(self, user: User) -> Optional[User]:
        """Overwrite mutable fields of a live user; ``None`` when it is gone."""
        with self._data_lock:
            current = self.users.get(user.id)
            if current is None or current.deleted_at is not None:
                return None
            self._check_unique(user, exclude_id=user.id)
            current.email = user.email
            current.name = user.name
            current.password_hash = user.password_hash
            current.avatar_url = user.avatar_url
            current.provider = user.provider
            current.provider_id = user.provider_id
            current.updated_at = datetime.utcnow()
            self._persist_state()
            return copy.copy(current)

    def delete_user(self, user_id: int) -> bool:
        """Soft delete. The email and provider pair become reusable."""
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or user.deleted_at is not None:
                return False
            user.deleted_at = datetime.utcnow()
            self._persist_state()
            return True

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # persistence
    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "external_id": user.external_id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "avatar_url": user.avatar_url,
            "provider": user.provider,
            "provider_id": user.provider_id,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "deleted_at": self._serialize_datetime(user.deleted_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            external_id=data["external_id"],
            email=data["email"],
            name=data.get("name") or "",
            password_hash=data.get("password_hash"),
            avatar_url=data.get("avatar_url"),
            provider=data.get("provider"),
            provider_id=data.get("provider_id"),
            created_at=self._deserialize_datetime(data.get("created_at")) or datetime.utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or datetime.utcnow(),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self._user_id_seq = max(self.users, default=0) + 1
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True
