"""Tests for the in-process store: conditional updates, persistence, timeouts."""

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from keyward.storage.errors import BackendUnavailable, ConstraintViolation
from keyward.storage.memory import MemoryStore
from keyward.storage.models import (
    AccountStatusUpdate,
    AuditCategory,
    AuditEvent,
    AuditQuery,
    AuditStatus,
    LockoutState,
    Session,
    SingleUseToken,
    TokenPurpose,
)

SALT = bytes(range(32))
NOW = datetime.now(timezone.utc)


def _session(account_id, n, *, ttl=timedelta(days=1), now=NOW):
    return Session.new(
        account_id,
        access_fingerprint=f"access-{n}",
        refresh_fingerprint=f"refresh-{n}",
        ttl=ttl,
        ip_address="2001:DB8:0:0::1",
        now=now,
    )


@pytest.fixture
def account(memory_store):
    return memory_store.create_account("User@Example.com", "$argon2id$stub", SALT)


class TestAccounts:
    def test_email_is_normalized_and_unique(self, memory_store, account):
        assert account.email == "user@example.com"
        assert memory_store.get_account_by_email("USER@example.com").id == account.id
        with pytest.raises(ConstraintViolation):
            memory_store.create_account("user@EXAMPLE.com", "h", SALT)

    def test_reads_return_copies(self, memory_store, account):
        loaded = memory_store.get_account(account.id)
        loaded.failed_login_attempts = 99

        assert memory_store.get_account(account.id).failed_login_attempts == 0

    def test_compare_and_set_applies_when_expected_matches(self, memory_store, account):
        new = LockoutState(failed_login_attempts=1, last_failed_login_at=NOW)

        assert memory_store.compare_and_set_lockout(account.id, LockoutState(), new) is True
        assert memory_store.get_account(account.id).failed_login_attempts == 1

    def test_compare_and_set_rejects_stale_expected(self, memory_store, account):
        memory_store.compare_and_set_lockout(
            account.id, LockoutState(), LockoutState(failed_login_attempts=1)
        )

        stale = memory_store.compare_and_set_lockout(
            account.id, LockoutState(), LockoutState(failed_login_attempts=1)
        )

        assert stale is False
        assert memory_store.get_account(account.id).failed_login_attempts == 1

    def test_compare_and_set_records_last_login(self, memory_store, account):
        memory_store.compare_and_set_lockout(
            account.id, LockoutState(), LockoutState(), last_login_at=NOW
        )

        assert memory_store.get_account(account.id).last_login_at == NOW

    def test_update_credentials_clears_lockout(self, memory_store, account):
        memory_store.compare_and_set_lockout(
            account.id,
            LockoutState(),
            LockoutState(failed_login_attempts=5, locked=True, locked_until=NOW),
        )

        assert memory_store.update_credentials(account.id, "new-hash", salt=bytes(32)) is True

        updated = memory_store.get_account(account.id)
        assert updated.credential_hash == "new-hash"
        assert updated.salt == bytes(32)
        assert updated.locked is False
        assert updated.failed_login_attempts == 0
        assert updated.password_changed_at is not None

    def test_update_status_unknown_account(self, memory_store):
        assert memory_store.update_account_status("missing", AccountStatusUpdate(is_active=False)) is None


class TestSessions:
    def test_duplicate_fingerprint_is_rejected(self, memory_store, account):
        memory_store.create_session(_session(account.id, 1))
        clash = _session(account.id, 1)

        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_session(clash)
        assert excinfo.value.detail["field"] == "refresh_fingerprint"

    def test_ip_address_is_canonicalized(self, memory_store, account):
        stored = memory_store.create_session(_session(account.id, 1))

        assert stored.ip_address == "2001:db8::1"

    def test_find_by_refresh_ignores_revoked_and_expired(self, memory_store, account):
        live = memory_store.create_session(_session(account.id, 1))
        revoked = memory_store.create_session(_session(account.id, 2))
        memory_store.revoke_session(revoked.id)
        memory_store.create_session(
            _session(account.id, 3, ttl=timedelta(minutes=1), now=NOW - timedelta(hours=1))
        )

        assert memory_store.find_active_session_by_refresh("refresh-1", NOW).id == live.id
        assert memory_store.find_active_session_by_refresh("refresh-2", NOW) is None
        assert memory_store.find_active_session_by_refresh("refresh-3", NOW) is None

    def test_update_access_requires_current_refresh_fingerprint(self, memory_store, account):
        session = memory_store.create_session(_session(account.id, 1))
        later = NOW + timedelta(minutes=1)

        rotated = memory_store.update_session_access(
            session.id,
            expected_refresh_fingerprint="refresh-1",
            access_fingerprint="access-new",
            now=later,
            new_refresh_fingerprint="refresh-new",
        )
        replay = memory_store.update_session_access(
            session.id,
            expected_refresh_fingerprint="refresh-1",
            access_fingerprint="access-other",
            now=later,
        )

        assert rotated is True
        assert replay is False
        stored = memory_store.get_session(session.id)
        assert stored.access_fingerprint == "access-new"
        assert stored.refresh_fingerprint == "refresh-new"
        assert stored.last_used_at == later

    def test_revoke_is_idempotent(self, memory_store, account):
        session = memory_store.create_session(_session(account.id, 1))

        assert memory_store.revoke_session(session.id) is True
        assert memory_store.revoke_session(session.id) is False
        assert memory_store.revoke_session("missing") is False

    def test_revoke_account_sessions_keeps_exception(self, memory_store, account):
        keep = memory_store.create_session(_session(account.id, 1))
        for n in (2, 3):
            memory_store.create_session(_session(account.id, n))

        assert memory_store.revoke_account_sessions(account.id, except_session_id=keep.id) == 2
        assert memory_store.revoke_account_sessions(account.id, except_session_id=keep.id) == 0
        assert [s.id for s in memory_store.list_sessions(account.id, now=NOW)] == [keep.id]
        assert len(memory_store.list_sessions(account.id, now=NOW, include_inactive=True)) == 3


class TestTokens:
    def _token(self, account_id, fp, *, purpose=TokenPurpose.PASSWORD_RESET, expires_at=None):
        return SingleUseToken(
            id=f"id-{fp}",
            account_id=account_id,
            purpose=purpose,
            token_fingerprint=fp,
            expires_at=expires_at or NOW + timedelta(hours=1),
        )

    def test_consume_marks_used(self, memory_store, account):
        memory_store.create_token(self._token(account.id, "fp-1"))

        first = memory_store.consume_token(TokenPurpose.PASSWORD_RESET, "fp-1", NOW)
        second = memory_store.consume_token(TokenPurpose.PASSWORD_RESET, "fp-1", NOW)

        assert first.used is True
        assert second is None

    def test_consume_scoped_to_account(self, memory_store, account):
        memory_store.create_token(self._token(account.id, "fp-1"))

        assert memory_store.consume_token(
            TokenPurpose.PASSWORD_RESET, "fp-1", NOW, account_id="other"
        ) is None
        assert memory_store.find_token(TokenPurpose.PASSWORD_RESET, "fp-1", NOW) is not None

    def test_duplicate_fingerprint_is_rejected(self, memory_store, account):
        memory_store.create_token(self._token(account.id, "fp-1"))

        with pytest.raises(ConstraintViolation):
            memory_store.create_token(self._token(account.id, "fp-1"))


class TestMaintenance:
    def test_purge_expired_sessions_and_tokens(self, memory_store, account):
        memory_store.create_session(_session(account.id, 1))
        memory_store.create_session(
            _session(account.id, 2, ttl=timedelta(minutes=1), now=NOW - timedelta(hours=1))
        )
        memory_store.create_token(
            SingleUseToken(
                id="t-old",
                account_id=account.id,
                purpose=TokenPurpose.EMAIL_VERIFICATION,
                token_fingerprint="old",
                expires_at=NOW - timedelta(seconds=1),
            )
        )

        assert memory_store.purge_expired(NOW) == {"sessions": 1, "tokens": 1}
        assert memory_store.purge_expired(NOW) == {"sessions": 0, "tokens": 0}

    def test_audit_query_filters_and_orders(self, memory_store):
        for i, status in enumerate([AuditStatus.SUCCESS, AuditStatus.FAILED, AuditStatus.FAILED]):
            memory_store.append_audit_event(
                AuditEvent(
                    category=AuditCategory.AUTH,
                    action=f"a{i}",
                    status=status,
                    account_id="acct",
                    timestamp=NOW + timedelta(seconds=i),
                )
            )

        failed = memory_store.list_audit_events(AuditQuery(status=AuditStatus.FAILED))
        limited = memory_store.list_audit_events(AuditQuery(limit=1))

        assert [e.action for e in failed] == ["a2", "a1"]
        assert [e.action for e in limited] == ["a2"]


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    account = store.create_account("persist@example.com", "hash", SALT, profile={"tier": "pro"})
    session = store.create_session(_session(account.id, 1))
    store.create_token(
        SingleUseToken(
            id="tok",
            account_id=account.id,
            purpose=TokenPurpose.EMAIL_VERIFICATION,
            token_fingerprint="fp",
            expires_at=NOW + timedelta(hours=1),
        )
    )
    store.append_audit_event(
        AuditEvent(category=AuditCategory.AUTH, action="register", status=AuditStatus.SUCCESS)
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))

    restored = reloaded.get_account(account.id)
    assert restored.salt == SALT
    assert restored.profile == {"tier": "pro"}
    assert reloaded.get_session(session.id).expires_at == session.expires_at
    assert reloaded.find_token(TokenPurpose.EMAIL_VERIFICATION, "fp", NOW).id == "tok"
    assert [e.action for e in reloaded.list_audit_events()] == ["register"]
    assert (tmp_path / "state" / "memory_store.json").exists()


def test_lock_timeout_raises_backend_unavailable():
    store = MemoryStore(lock_timeout=0.05)
    held = threading.Event()
    release = threading.Event()

    def hold_lock():
        with store._locked():
            held.set()
            release.wait(timeout=5)

    holder = threading.Thread(target=hold_lock)
    holder.start()
    try:
        assert held.wait(timeout=5)
        with pytest.raises(BackendUnavailable):
            store.get_account("anything")
    finally:
        release.set()
        holder.join()


def _fail_writes(monkeypatch):
    def _raise(self, *args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(Path, "write_text", _raise)


def test_failed_save_rolls_back_token_consumption(tmp_path, monkeypatch):
    store = MemoryStore(fs_root=str(tmp_path))
    account = store.create_account("owner@example.com", "hash", SALT)
    store.create_token(
        SingleUseToken(
            id="tok",
            account_id=account.id,
            purpose=TokenPurpose.PASSWORD_RESET,
            token_fingerprint="fp",
            expires_at=NOW + timedelta(hours=1),
        )
    )
    _fail_writes(monkeypatch)

    with pytest.raises(BackendUnavailable):
        store.consume_token(TokenPurpose.PASSWORD_RESET, "fp", NOW)

    monkeypatch.undo()
    assert store.consume_token(TokenPurpose.PASSWORD_RESET, "fp", NOW).used is True


def test_failed_save_rolls_back_lockout_and_revocation(tmp_path, monkeypatch):
    store = MemoryStore(fs_root=str(tmp_path))
    account = store.create_account("owner@example.com", "hash", SALT)
    session = store.create_session(_session(account.id, 1))
    _fail_writes(monkeypatch)

    with pytest.raises(BackendUnavailable):
        store.compare_and_set_lockout(
            account.id, LockoutState(), LockoutState(failed_login_attempts=1)
        )
    with pytest.raises(BackendUnavailable):
        store.revoke_session(session.id)
    with pytest.raises(BackendUnavailable):
        store.create_account("second@example.com", "hash", SALT)

    assert store.get_account(account.id).failed_login_attempts == 0
    assert store.get_session(session.id).revoked is False
    assert store.get_account_by_email("second@example.com") is None
