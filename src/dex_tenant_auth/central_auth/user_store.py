"""Persistence of users and their sessions.

This module introduces a *narrow* persistence interface (:class:`UserStore`)
and a JSON-file implementation (:class:`DiskUserStore`).  The design follows
these goals:

* **Uniqueness** – ``(org_id, provider_user_id, auth_provider)`` is enforced by
  the store itself: the identity index entry is created exclusively (hard link
  of a complete temp file, which fails if the entry exists), so two concurrent
  first logins cannot both insert.  The loser sees the constraint violation
  and retries as an update.
* **Atomicity** – record writes use *temp-file + os.replace*.
* **Cascade** – deleting a user deletes its sessions.
* **Filename safety** – identifiers are validated or hashed before they hit
  the filesystem.

Environment variables
---------------------
AUTH_STORAGE_DIR
    Base directory for all persisted data.
    Defaults to ``~/.dex-tenant-auth`` when unset.
"""

from __future__ import annotations

import json
import logging
import os
import re
import secrets
import time
from contextlib import contextmanager
from dataclasses import replace
from hashlib import sha256
from pathlib import Path
from typing import Final, Iterator, Protocol, runtime_checkable

from dex_tenant_auth.central_auth.errors import PersistenceError
from dex_tenant_auth.central_auth.models import User, UserSession

_LOG = logging.getLogger("dex-tenant-auth.central_auth.user_store")

_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9_-]{8,160}$")
SESSION_CLEANUP_GRACE_SECONDS: Final[int] = 7 * 24 * 3600

# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #


def generate_user_id() -> str:
    return f"usr_{secrets.token_urlsafe(16)}"


def generate_session_id() -> str:
    return f"ses_{secrets.token_urlsafe(32)}"


def _identity_key(org_id: str, provider_user_id: str, auth_provider: str) -> str:
    raw = json.dumps([org_id, provider_user_id, auth_provider], separators=(",", ":"))
    return sha256(raw.encode("utf-8")).hexdigest()


def _check_id(value: str) -> str:
    if not _ID_RE.match(value or ""):
        raise ValueError("invalid identifier")
    return value


def _atomic_write(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, separators=(",", ":"), sort_keys=True)
    os.replace(tmp, path)  # atomic on POSIX


def _exclusive_write(path: Path, data: dict) -> None:
    """Create *path* with *data*; raise ``FileExistsError`` if it already exists.

    The record is written to a temp file first and hard-linked into place, so
    the target never exists with partial content.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, separators=(",", ":"), sort_keys=True)
    try:
        os.link(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


def _read_json(path: Path) -> dict | None:
    try:
        with path.open(encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None


@contextmanager
def _file_lock(lock_path: Path, retries: int = 50, delay: float = 0.02):  # noqa: D401
    """Advisory file lock using ``os.O_EXCL`` temp-file creation."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    for attempt in range(retries + 1):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_RDWR)
            os.close(fd)
            break  # acquired!
        except FileExistsError:
            if attempt == retries:
                raise TimeoutError(f"Could not acquire lock {lock_path.name}") from None
            time.sleep(delay)
    try:
        yield
    finally:
        lock_path.unlink(missing_ok=True)


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    """Translate filesystem failures into :class:`PersistenceError`."""
    try:
        yield
    except (OSError, ValueError) as exc:
        if isinstance(exc, FileExistsError):
            raise
        raise PersistenceError(f"{action} failed: {type(exc).__name__}") from exc


# --------------------------------------------------------------------------- #
# public interface                                                            #
# --------------------------------------------------------------------------- #


@runtime_checkable
class UserStore(Protocol):
    """Minimal persistence contract for users and sessions."""

    # ----- users ------------------------------------------------------------ #
    def get_user(self, user_id: str) -> User | None: ...
    def find_user_by_identity(
        self, org_id: str, provider_user_id: str, auth_provider: str
    ) -> User | None: ...
    def upsert_user(self, candidate: User) -> tuple[User, bool]: ...
    def delete_user(self, user_id: str) -> None: ...

    # ----- sessions --------------------------------------------------------- #
    def create_session(self, session: UserSession) -> None: ...
    def get_session(self, session_id: str) -> UserSession | None: ...
    def save_session(self, session: UserSession) -> None: ...
    def invalidate_session(self, session_id: str) -> bool: ...
    def invalidate_user_sessions(self, user_id: str) -> int: ...
    def list_active_sessions(self, user_id: str, now: int) -> list[UserSession]: ...

    # ----- maintenance ------------------------------------------------------ #
    def cleanup_expired_sessions(
        self, now: int, grace_seconds: int = SESSION_CLEANUP_GRACE_SECONDS
    ) -> int: ...


def merge_login(existing: User, candidate: User) -> User:
    """Apply a fresh login (*candidate*) onto the stored *existing* user.

    Tokens are always replaced; profile fields only when the provider sent
    a value, so an absent claim never erases what is already known.
    """
    return replace(
        existing,
        access_token=candidate.access_token,
        refresh_token=candidate.refresh_token or existing.refresh_token,
        id_token=candidate.id_token,
        token_expires_at=candidate.token_expires_at,
        email=candidate.email if candidate.email and not candidate.email.endswith("@unknown") else existing.email,
        name=candidate.name or existing.name,
        display_name=candidate.display_name or existing.display_name,
        picture=candidate.picture or existing.picture,
        last_login_at=candidate.last_login_at,
        updated_at=candidate.updated_at,
    )


# --------------------------------------------------------------------------- #
# Disk implementation                                                         #
# --------------------------------------------------------------------------- #


class DiskUserStore(UserStore):
    """JSON-file implementation of :class:`UserStore`.

    Layout::

        <base_dir>/users/<user_id>.json
        <base_dir>/identities/<sha256(org, sub, provider)>.json
        <base_dir>/sessions/<session_id>.json
    """

    def __init__(self, base_dir: str | os.PathLike | None = None) -> None:
        self.base_dir = Path(
            base_dir
            or os.getenv("AUTH_STORAGE_DIR")
            or Path.home() / ".dex-tenant-auth"
        ).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    # ---------------- paths ----------------------------------------------- #
    def _user_path(self, user_id: str) -> Path:
        return self.base_dir / "users" / f"{_check_id(user_id)}.json"

    def _user_lock(self, user_id: str) -> Path:
        return self._user_path(user_id).with_suffix(".lock")

    def _identity_path(self, org_id: str, provider_user_id: str, auth_provider: str) -> Path:
        key = _identity_key(org_id, provider_user_id, auth_provider)
        return self.base_dir / "identities" / f"{key}.json"

    def _session_path(self, session_id: str) -> Path:
        return self.base_dir / "sessions" / f"{_check_id(session_id)}.json"

    def _session_lock(self, session_id: str) -> Path:
        return self._session_path(session_id).with_suffix(".lock")

    # ---------------- users ----------------------------------------------- #
    def get_user(self, user_id: str) -> User | None:
        try:
            path = self._user_path(user_id)
        except ValueError:
            return None
        with _storage_errors("load user"):
            data = _read_json(path)
        return User.from_dict(data) if data else None

    def find_user_by_identity(
        self, org_id: str, provider_user_id: str, auth_provider: str
    ) -> User | None:
        with _storage_errors("lookup identity"):
            index = _read_json(self._identity_path(org_id, provider_user_id, auth_provider))
        if not index:
            return None
        user = self.get_user(index["user_id"])
        if user is None or user.identity != (org_id, provider_user_id, auth_provider):
            return None
        return user

    def upsert_user(self, candidate: User) -> tuple[User, bool]:
        """Insert *candidate* or merge it into the existing identity.

        Returns ``(user, created)``.
        """
        for _ in range(3):
            existing = self.find_user_by_identity(*candidate.identity)
            if existing is not None:
                return self._apply_login(existing, candidate), False
            try:
                return self._insert_user(candidate), True
            except FileExistsError:
                # unique (org, sub, provider) violated by a concurrent insert
                _LOG.debug("Identity insert lost race for org_id=%s; retrying as update", candidate.org_id)
        raise PersistenceError("user upsert did not converge")

    def _insert_user(self, user: User) -> User:
        user_path = self._user_path(user.user_id)
        with _storage_errors("insert user"):
            # record first, index second: a visible index always has a user file
            _exclusive_write(user_path, user.to_dict())
            try:
                _exclusive_write(
                    self._identity_path(*user.identity), {"user_id": user.user_id}
                )
            except FileExistsError:
                user_path.unlink(missing_ok=True)
                raise
        _LOG.info("Created user_id=%s org_id=%s", user.user_id, user.org_id)
        return user

    def _apply_login(self, existing: User, candidate: User) -> User:
        # lock timeouts are OSErrors and surface as PersistenceError
        with _storage_errors("update user"), _file_lock(self._user_lock(existing.user_id)):
            current = self.get_user(existing.user_id) or existing
            updated = merge_login(current, candidate)
            _atomic_write(self._user_path(existing.user_id), updated.to_dict())
        return updated

    def delete_user(self, user_id: str) -> None:
        user = self.get_user(user_id)
        if user is None:
            return
        with _storage_errors("delete user"):
            for session in self._iter_sessions():
                if session.user_id == user_id:
                    self._session_path(session.session_id).unlink(missing_ok=True)
            self._identity_path(*user.identity).unlink(missing_ok=True)
            self._user_path(user_id).unlink(missing_ok=True)
        _LOG.info("Deleted user_id=%s and its sessions", user_id)

    # ---------------- sessions -------------------------------------------- #
    def _iter_sessions(self) -> Iterator[UserSession]:
        for p in (self.base_dir / "sessions").glob("*.json"):
            data = _read_json(p)
            if data:
                yield UserSession.from_dict(data)

    def create_session(self, session: UserSession) -> None:
        with _storage_errors("create session"):
            if self.get_user(session.user_id) is None:
                raise PersistenceError("session owner does not exist")
            try:
                _exclusive_write(self._session_path(session.session_id), session.to_dict())
            except FileExistsError as exc:
                raise PersistenceError("session id collision") from exc

    def get_session(self, session_id: str) -> UserSession | None:
        try:
            path = self._session_path(session_id)
        except ValueError:
            return None
        with _storage_errors("load session"):
            data = _read_json(path)
        return UserSession.from_dict(data) if data else None

    def save_session(self, session: UserSession) -> None:
        with _storage_errors("save session"), _file_lock(self._session_lock(session.session_id)):
            if not self._session_path(session.session_id).exists():
                raise PersistenceError("session does not exist")
            _atomic_write(self._session_path(session.session_id), session.to_dict())

    def invalidate_session(self, session_id: str) -> bool:
        session = self.get_session(session_id)
        if session is None or not session.is_active:
            return False
        self.save_session(replace(session, is_active=False))
        return True

    def invalidate_user_sessions(self, user_id: str) -> int:
        count = 0
        with _storage_errors("list sessions"):
            sessions = [s for s in self._iter_sessions() if s.user_id == user_id]
        for session in sessions:
            if self.invalidate_session(session.session_id):
                count += 1
        return count

    def list_active_sessions(self, user_id: str, now: int) -> list[UserSession]:
        with _storage_errors("list sessions"):
            sessions = [
                s for s in self._iter_sessions() if s.user_id == user_id and s.is_valid(now)
            ]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    # ---------------- maintenance ----------------------------------------- #
    def cleanup_expired_sessions(
        self, now: int, grace_seconds: int = SESSION_CLEANUP_GRACE_SECONDS
    ) -> int:
        removed = 0
        with _storage_errors("cleanup sessions"):
            for session in list(self._iter_sessions()):
                if session.expires_at < now - grace_seconds:
                    self._session_path(session.session_id).unlink(missing_ok=True)
                    removed += 1
        return removed
