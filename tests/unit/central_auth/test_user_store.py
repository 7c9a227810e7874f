"""
Unit tests for DiskUserStore.

Coverage:
* identity uniqueness under concurrent first logins (retry as update)
* profile merge on re-login never erases known fields
* session lifecycle, cascade delete and cleanup grace period
* filesystem failures surface as PersistenceError
"""

from __future__ import annotations

import os
import threading
from dataclasses import replace
from pathlib import Path

import pytest

from dex_tenant_auth.central_auth.errors import PersistenceError
from dex_tenant_auth.central_auth.models import User, UserSession
from dex_tenant_auth.central_auth.user_store import (
    DiskUserStore,
    generate_session_id,
    generate_user_id,
)

T0 = 1_700_000_000
DAY = 86_400


def _candidate(**overrides) -> User:
    values = dict(
        user_id=generate_user_id(),
        org_id="org_acme",
        auth_provider="auth0",
        provider_user_id="auth0|alice",
        email="alice@acme.test",
        name="Alice Example",
        display_name="Alice Example",
        picture="https://cdn.acme.test/alice.png",
        access_token="at-1",
        refresh_token="rt-1",
        id_token="id-1",
        created_at=T0,
        last_login_at=T0,
        updated_at=T0,
    )
    values.update(overrides)
    return User(**values)


def _session(user: User, *, expires_at: int = T0 + 3600, **overrides) -> UserSession:
    values = dict(
        session_id=generate_session_id(),
        user_id=user.user_id,
        org_id=user.org_id,
        ip_address="203.0.113.7",
        user_agent="pytest",
        created_at=T0,
        expires_at=expires_at,
        last_activity_at=T0,
    )
    values.update(overrides)
    return UserSession(**values)


@pytest.fixture()
def store(tmp_path: Path) -> DiskUserStore:
    return DiskUserStore(base_dir=tmp_path)


# --------------------------------------------------------------------------- #
# users                                                                       #
# --------------------------------------------------------------------------- #
def test_ids_are_prefixed() -> None:
    assert generate_user_id().startswith("usr_")
    assert generate_session_id().startswith("ses_")


def test_upsert_inserts_then_updates(store: DiskUserStore) -> None:
    first, created = store.upsert_user(_candidate())
    assert created is True
    assert store.get_user(first.user_id) == first

    second, created = store.upsert_user(
        _candidate(access_token="at-2", last_login_at=T0 + 60, updated_at=T0 + 60)
    )
    assert created is False
    assert second.user_id == first.user_id
    assert second.access_token == "at-2"
    assert second.last_login_at == T0 + 60
    assert second.created_at == T0


def test_relogin_keeps_profile_fields_the_provider_omitted(store: DiskUserStore) -> None:
    original, _ = store.upsert_user(_candidate())
    updated, _ = store.upsert_user(
        _candidate(
            email="auth0|alice@unknown",
            name=None,
            display_name=None,
            picture=None,
            refresh_token=None,
        )
    )
    assert updated.email == original.email
    assert updated.name == "Alice Example"
    assert updated.picture == original.picture
    assert updated.refresh_token == "rt-1"


def test_identity_is_scoped_by_org_and_provider(store: DiskUserStore) -> None:
    a, _ = store.upsert_user(_candidate())
    b, created_b = store.upsert_user(_candidate(org_id="org_globex"))
    c, created_c = store.upsert_user(_candidate(auth_provider="okta"))
    assert created_b and created_c
    assert len({a.user_id, b.user_id, c.user_id}) == 3
    assert store.find_user_by_identity("org_globex", "auth0|alice", "auth0") == b
    assert store.find_user_by_identity("org_acme", "auth0|bob", "auth0") is None


def test_concurrent_first_logins_create_one_user(store: DiskUserStore) -> None:
    results: list[tuple[User, bool]] = []
    barrier = threading.Barrier(6)

    def _login(i: int) -> None:
        barrier.wait()
        results.append(store.upsert_user(_candidate(access_token=f"at-{i}")))

    threads = [threading.Thread(target=_login, args=(i,)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 6
    assert sum(created for _, created in results) == 1
    assert len({user.user_id for user, _ in results}) == 1
    assert len(list((store.base_dir / "users").glob("*.json"))) == 1


def test_get_user_with_unsafe_id_returns_none(store: DiskUserStore) -> None:
    assert store.get_user("../../etc/passwd") is None


# --------------------------------------------------------------------------- #
# sessions                                                                    #
# --------------------------------------------------------------------------- #
def test_session_lifecycle(store: DiskUserStore) -> None:
    user, _ = store.upsert_user(_candidate())
    session = _session(user)
    store.create_session(session)
    assert store.get_session(session.session_id) == session

    store.save_session(replace(session, expires_at=T0 + 7200))
    assert store.get_session(session.session_id).expires_at == T0 + 7200

    assert store.invalidate_session(session.session_id) is True
    assert store.get_session(session.session_id).is_active is False
    assert store.invalidate_session(session.session_id) is False


def test_create_session_requires_existing_user(store: DiskUserStore) -> None:
    ghost = _candidate()
    with pytest.raises(PersistenceError):
        store.create_session(_session(ghost))


def test_save_unknown_session_fails(store: DiskUserStore) -> None:
    user, _ = store.upsert_user(_candidate())
    with pytest.raises(PersistenceError):
        store.save_session(_session(user))


def test_list_and_invalidate_user_sessions(store: DiskUserStore) -> None:
    user, _ = store.upsert_user(_candidate())
    other, _ = store.upsert_user(_candidate(provider_user_id="auth0|bob"))
    live = [_session(user, created_at=T0 + i) for i in range(3)]
    expired = _session(user, expires_at=T0 - 1)
    for s in (*live, expired, _session(other)):
        store.create_session(s)

    active = store.list_active_sessions(user.user_id, now=T0)
    assert [s.session_id for s in active] == [s.session_id for s in reversed(live)]

    assert store.invalidate_user_sessions(user.user_id) == 4
    assert store.list_active_sessions(user.user_id, now=T0) == []
    assert len(store.list_active_sessions(other.user_id, now=T0)) == 1


def test_delete_user_cascades_to_sessions(store: DiskUserStore) -> None:
    user, _ = store.upsert_user(_candidate())
    session = _session(user)
    store.create_session(session)

    store.delete_user(user.user_id)
    assert store.get_user(user.user_id) is None
    assert store.get_session(session.session_id) is None
    assert store.find_user_by_identity(*user.identity) is None

    # identity is free again
    _, created = store.upsert_user(_candidate())
    assert created is True


def test_cleanup_expired_sessions_honours_grace(store: DiskUserStore) -> None:
    user, _ = store.upsert_user(_candidate())
    long_gone = _session(user, expires_at=T0 - 8 * DAY)
    recently = _session(user, expires_at=T0 - 1 * DAY)
    store.create_session(long_gone)
    store.create_session(recently)

    assert store.cleanup_expired_sessions(now=T0) == 1
    assert store.get_session(long_gone.session_id) is None
    assert store.get_session(recently.session_id) is not None


@pytest.mark.skipif(os.geteuid() == 0, reason="root ignores directory permissions")
def test_unwritable_storage_raises_persistence_error(store: DiskUserStore) -> None:
    users_dir = store.base_dir / "users"
    users_dir.mkdir(parents=True, exist_ok=True)
    users_dir.chmod(0o500)
    try:
        with pytest.raises(PersistenceError):
            store.upsert_user(_candidate())
    finally:
        users_dir.chmod(0o700)
