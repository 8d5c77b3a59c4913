"""Concurrent logins and refreshes against one account must not lose updates."""

import threading

from keyward.service.errors import AccountLocked, InvalidCredentials, InvalidRefreshToken

SALT = bytes(range(32))


def _run_concurrently(n, fn):
    barrier = threading.Barrier(n)
    outcomes = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            result = fn()
        except Exception as exc:  # collected for assertions
            result = exc
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


def test_concurrent_wrong_logins_stop_at_threshold(manager, memory_store):
    registered = manager.register("race@x.com", "right", SALT)

    outcomes = _run_concurrently(10, lambda: manager.login("race@x.com", "wrong"))

    invalid = [o for o in outcomes if isinstance(o, InvalidCredentials)]
    locked = [o for o in outcomes if isinstance(o, AccountLocked)]
    assert len(invalid) == 5
    assert len(locked) == 5
    assert sorted(o.remaining_attempts for o in invalid) == [0, 1, 2, 3, 4]
    account = memory_store.get_account(registered.account.id)
    assert account.failed_login_attempts == 5
    assert account.locked is True


def test_concurrent_rotating_refresh_has_one_winner(manager_factory):
    manager = manager_factory(rotate=True)
    registered = manager.register("rotate@x.com", "right", SALT)

    outcomes = _run_concurrently(
        6, lambda: manager.refresh(registered.grant.refresh_token)
    )

    winners = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(winners) == 1
    assert all(isinstance(o, InvalidRefreshToken) for o in outcomes if o not in winners)
    manager.refresh(winners[0].refresh_token)
