"""Tests for single-use token issuance and redemption."""

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from keyward.service.errors import StorageUnavailable
from keyward.service.tokens import SingleUseTokenIssuer, fingerprint
from keyward.storage.errors import ConstraintViolation
from keyward.storage.memory import MemoryStore
from keyward.storage.models import TokenPurpose

SALT = bytes(32)


@pytest.fixture
def account(memory_store):
    return memory_store.create_account("owner@example.com", "$argon2id$stub", SALT)


@pytest.fixture
def issuer(memory_store):
    return SingleUseTokenIssuer(memory_store)


def test_only_fingerprint_is_stored(memory_store, issuer, account):
    token = issuer.issue(account.id, TokenPurpose.PASSWORD_RESET)

    assert len(token) == 64
    stored = list(memory_store.tokens.values())
    assert len(stored) == 1
    assert stored[0].token_fingerprint == fingerprint(token)
    assert token not in stored[0].token_fingerprint
    assert stored[0].used is False


def test_issue_then_consume_succeeds_exactly_once(issuer, account):
    token = issuer.issue(account.id, TokenPurpose.PASSWORD_RESET)

    assert issuer.consume(None, TokenPurpose.PASSWORD_RESET, token) is True
    assert issuer.consume(None, TokenPurpose.PASSWORD_RESET, token) is False


def test_expired_token_fails(issuer, account):
    token = issuer.issue(account.id, TokenPurpose.PASSWORD_RESET, ttl=timedelta(minutes=5))
    issuer._now = lambda: datetime.now(timezone.utc) + timedelta(minutes=6)

    assert issuer.consume(None, TokenPurpose.PASSWORD_RESET, token) is False


def test_wrong_purpose_fails(issuer, account):
    token = issuer.issue(account.id, TokenPurpose.PASSWORD_RESET)

    assert issuer.consume(account.id, TokenPurpose.EMAIL_VERIFICATION, token) is False
    # The failed attempt did not burn the token
    assert issuer.consume(None, TokenPurpose.PASSWORD_RESET, token) is True


def test_new_token_supersedes_previous(issuer, account):
    first = issuer.issue(account.id, TokenPurpose.PASSWORD_RESET)
    second = issuer.issue(account.id, TokenPurpose.PASSWORD_RESET)

    assert issuer.consume(None, TokenPurpose.PASSWORD_RESET, first) is False
    assert issuer.consume(None, TokenPurpose.PASSWORD_RESET, second) is True


def test_supersede_is_scoped_to_purpose(issuer, account):
    reset = issuer.issue(account.id, TokenPurpose.PASSWORD_RESET)
    issuer.issue(account.id, TokenPurpose.EMAIL_VERIFICATION)

    assert issuer.consume(None, TokenPurpose.PASSWORD_RESET, reset) is True


def test_email_verification_requires_owner(memory_store, issuer, account):
    token = issuer.issue(account.id, TokenPurpose.EMAIL_VERIFICATION)

    assert issuer.consume(None, TokenPurpose.EMAIL_VERIFICATION, token) is False
    assert issuer.consume("someone-else", TokenPurpose.EMAIL_VERIFICATION, token) is False
    assert memory_store.get_account(account.id).is_verified is False

    assert issuer.consume(account.id, TokenPurpose.EMAIL_VERIFICATION, token) is True
    assert memory_store.get_account(account.id).is_verified is True


def test_password_reset_consume_does_not_verify_email(memory_store, issuer, account):
    token = issuer.issue(account.id, TokenPurpose.PASSWORD_RESET)

    assert issuer.consume(None, TokenPurpose.PASSWORD_RESET, token) is True
    assert memory_store.get_account(account.id).is_verified is False


def test_peek_does_not_consume(issuer, account):
    token = issuer.issue(account.id, TokenPurpose.PASSWORD_RESET)

    record = issuer.peek(TokenPurpose.PASSWORD_RESET, token)
    assert record is not None
    assert record.account_id == account.id
    assert issuer.peek(TokenPurpose.PASSWORD_RESET, token) is not None
    assert issuer.consume(None, TokenPurpose.PASSWORD_RESET, token) is True
    assert issuer.peek(TokenPurpose.PASSWORD_RESET, token) is None


def test_empty_token_is_rejected(issuer):
    assert issuer.consume(None, TokenPurpose.PASSWORD_RESET, "") is False


def test_concurrent_consume_succeeds_at_most_once(issuer, account):
    token = issuer.issue(account.id, TokenPurpose.PASSWORD_RESET)
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(issuer.consume(None, TokenPurpose.PASSWORD_RESET, token))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert results.count(False) == 7


def test_exhausted_collisions_raise_storage_unavailable(memory_store, issuer, account, monkeypatch):
    def _collide(token):
        raise ConstraintViolation("token fingerprint already exists", {"field": "token_fingerprint"})

    monkeypatch.setattr(memory_store, "create_token", _collide)

    with pytest.raises(StorageUnavailable) as excinfo:
        issuer.issue(account.id, TokenPurpose.PASSWORD_RESET)
    assert excinfo.value.retryable is True


def test_consume_during_outage_leaves_token_redeemable(tmp_path, monkeypatch):
    store = MemoryStore(fs_root=str(tmp_path))
    issuer = SingleUseTokenIssuer(store)
    owner = store.create_account("owner@example.com", "$argon2id$stub", SALT)
    token = issuer.issue(owner.id, TokenPurpose.PASSWORD_RESET)

    def _disk_full(self, *args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(Path, "write_text", _disk_full)
    with pytest.raises(StorageUnavailable):
        issuer.consume(None, TokenPurpose.PASSWORD_RESET, token)

    monkeypatch.undo()
    assert issuer.consume(None, TokenPurpose.PASSWORD_RESET, token) is True
