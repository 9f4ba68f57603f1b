"""Sync loop tests (lock handling, failure backoff, shutdown)."""

import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from payments_api.billing.sync_service import KindResult, SyncResult
from payments_api.errors import PersistenceError
from payments_scheduler.loops.sync_loop import next_delay, run_sync_once, sync_loop
from payments_scheduler.shutdown import shutdown_event


def _result(success: bool = True) -> SyncResult:
    settlements = KindResult(synced=3)
    if not success:
        settlements.upstream_error = "PortOne API returned HTTP 503"
    return SyncResult(settlements=settlements, payouts=KindResult(synced=1))


class Lock:
    def __init__(self, token="tok"):
        self.token = token
        self.released = []

    def acquire(self):
        return self.token

    def release(self, token):
        self.released.append(token)


def _service(*results):
    service = MagicMock()
    service.sync_all = AsyncMock(side_effect=list(results))
    return service


def test_run_sync_once_releases_lock():
    lock = Lock()
    service = _service(_result())

    result = run_sync_once(service, lock)

    assert result.success is True
    assert lock.released == ["tok"]


def test_run_sync_once_skips_when_locked():
    lock = Lock(token=None)
    service = _service()

    assert run_sync_once(service, lock) is None
    service.sync_all.assert_not_awaited()
    assert lock.released == []


def test_run_sync_once_releases_lock_on_error():
    lock = Lock()
    service = _service(PersistenceError("db down"))

    with pytest.raises(PersistenceError):
        run_sync_once(service, lock)

    assert lock.released == ["tok"]


@pytest.mark.parametrize(
    "failures,draw,expected",
    [
        (0, 0.5, 900),
        (1, 0.5, 900),  # never below the interval
        (1, 0.999999, 1799),
        (2, 0.999999, 3599),
        (10, 0.999999, 21599),  # capped
    ],
)
def test_next_delay(failures, draw, expected):
    assert next_delay(failures, 900, 21600, rng=lambda: draw) == expected


def test_loop_runs_once_in_test_mode():
    service = _service(_result())
    lock = Lock()

    sync_loop(service, lock, interval_seconds=1, stop_after_one_iteration=True)

    service.sync_all.assert_awaited_once()
    assert lock.released == ["tok"]


def test_loop_exits_when_shutdown_already_requested():
    service = _service()
    shutdown_event.set()

    sync_loop(service, Lock(), interval_seconds=1)

    service.sync_all.assert_not_awaited()


def test_loop_backs_off_after_failures_and_resets_on_success(caplog):
    service = _service(_result(success=False), RuntimeError("boom"), _result())
    fake_event = MagicMock()
    fake_event.is_set.side_effect = [False, False, False, True]

    with patch("payments_scheduler.loops.sync_loop.shutdown_event", fake_event):
        with caplog.at_level(logging.WARNING, logger="payments_scheduler.loops.sync_loop"):
            sync_loop(service, Lock(), interval_seconds=100, max_backoff_seconds=1000, rng=lambda: 0.999999)

    delays = [call.args[0] for call in fake_event.wait.call_args_list]
    assert delays == [199, 399, 100]
    assert sum(1 for record in caplog.records if record.getMessage() == "SYNC_LOOP_BACKING_OFF") == 2
