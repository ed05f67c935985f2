"""Testes da renovação em lote (RefreshScheduler)."""

import pytest

from shop_token_sync.errors import AuthError, NetworkError
from shop_token_sync.models import RefreshStatus
from shop_token_sync.refresh_scheduler import RefreshScheduler

from conftest import make_token


class FakeMonotonic:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value


def by_shop(report):
    return {r.shop_id: r for r in report.results}


@pytest.fixture
def scheduler(manager):
    return RefreshScheduler(manager, threshold_minutes=10, max_workers=4,
                            run_budget_seconds=60, delay_seconds=0)


def test_refreshes_only_tokens_inside_threshold(scheduler, token_store, gateway):
    token_store.save_token(make_token(1, 3))
    token_store.save_token(make_token(2, 20))

    report = scheduler.run()

    results = by_shop(report)
    assert results[1].status == RefreshStatus.SUCCESS
    assert results[2].status == RefreshStatus.SKIPPED
    assert results[2].reason == "token_valid"
    assert [call[1] for call in gateway.refresh_calls] == [1]
    assert report.processed == 2
    assert report.success_count == 1
    assert report.skipped_count == 1
    assert report.failed_count == 0
    assert report.success is True
    assert report.message == "Processed 2 shops: 1 success, 0 failed, 1 skipped"


def test_success_result_carries_old_and_new_expiry(scheduler, token_store):
    token_store.save_token(make_token(1, 3))

    result = scheduler.run().results[0]

    assert result.old_expiry is not None
    assert result.new_expiry is not None
    assert result.new_expiry > result.old_expiry


def test_failures_are_isolated_per_shop(scheduler, token_store, gateway):
    for shop_id in range(1, 7):
        token_store.save_token(make_token(shop_id, 1))
    gateway.failures[2] = AuthError("invalid refresh_token")
    gateway.failures[5] = NetworkError("timeout")
    originals = {sid: token_store.get_token(sid) for sid in (2, 5)}

    report = scheduler.run()

    assert report.processed == 6
    assert report.success_count == 4
    assert report.failed_count == 2
    assert {f.shop_id for f in report.failures} == {2, 5}
    results = by_shop(report)
    assert results[2].error == "invalid refresh_token"
    assert results[2].error_type == "AuthError"
    assert results[5].error_type == "NetworkError"
    # Tokens das lojas que falharam continuam intactos
    for sid, original in originals.items():
        assert token_store.get_token(sid) == original


def test_unexpected_exception_does_not_abort_batch(scheduler, token_store, gateway):
    token_store.save_token(make_token(1, 1))
    token_store.save_token(make_token(2, 1))
    gateway.failures[1] = RuntimeError("bug in gateway")

    report = scheduler.run()

    results = by_shop(report)
    assert results[1].status == RefreshStatus.FAILED
    assert results[1].error_type == "RuntimeError"
    assert results[2].status == RefreshStatus.SUCCESS


def test_missing_refresh_token_is_skipped(scheduler, token_store, gateway):
    token_store.save_token(make_token(1, 1, refresh_token=""))

    report = scheduler.run()

    assert report.results[0].status == RefreshStatus.SKIPPED
    assert report.results[0].reason == "missing_refresh_token"
    assert gateway.refresh_calls == []


def test_shop_with_refresh_in_progress_is_skipped(scheduler, manager, token_store, gateway):
    token_store.save_token(make_token(1, 1))
    token_store.save_token(make_token(2, 1))

    with manager.locks.hold(1):
        report = scheduler.run()

    results = by_shop(report)
    assert results[1].status == RefreshStatus.SKIPPED
    assert results[1].reason == "refresh_in_progress"
    assert results[2].status == RefreshStatus.SUCCESS
    assert [call[1] for call in gateway.refresh_calls] == [2]


def test_run_budget_returns_partial_report(manager, token_store, gateway):
    monotonic = FakeMonotonic()
    scheduler = RefreshScheduler(manager, threshold_minutes=10, max_workers=1,
                                 run_budget_seconds=15, delay_seconds=0, monotonic=monotonic)
    for shop_id in (1, 2, 3):
        token_store.save_token(make_token(shop_id, 1))

    # Cada renovação "consome" 10 segundos
    def advance(shop_id):
        monotonic.value += 10
    gateway.before_refresh = advance

    report = scheduler.run()

    results = by_shop(report)
    assert results[1].status == RefreshStatus.SUCCESS
    assert results[2].status == RefreshStatus.SUCCESS
    assert results[3].status == RefreshStatus.DEFERRED
    assert results[3].reason == "run_budget_exceeded"
    assert report.timed_out is True
    assert report.deferred_count == 1
    assert report.processed == 2
    assert "deferred" in report.message
    # Loja adiada não é tocada
    assert token_store.get_token(3).refresh_token == "rt-initial"


def test_forced_single_shop_ignores_validity(scheduler, token_store, gateway):
    token_store.save_token(make_token(1, 600))
    token_store.save_token(make_token(2, 1))

    report = scheduler.run(shop_id=1, source="manual")

    assert report.processed == 1
    assert report.results[0].shop_id == 1
    assert report.results[0].status == RefreshStatus.SUCCESS
    assert [call[1] for call in gateway.refresh_calls] == [1]
    assert token_store.get_refresh_logs(1)[0]["source"] == "manual"


def test_forced_unknown_shop_is_reported_as_failed(scheduler):
    report = scheduler.run(shop_id=404)

    assert report.failed_count == 1
    assert report.failures[0].error == "Shop not found"


def test_empty_store_produces_empty_report(scheduler):
    report = scheduler.run()

    assert report.processed == 0
    assert report.results == []
    assert report.message == "Processed 0 shops: 0 success, 0 failed, 0 skipped"


def test_batch_event_is_emitted(scheduler, token_store, gateway, events):
    token_store.save_token(make_token(1, 1))
    gateway.failures[1] = NetworkError("timeout")

    scheduler.run()

    batch = [e for e in events if e.action_type == "token_refresh_batch"]
    assert len(batch) == 1
    assert batch[0].status == "failed"
    assert batch[0].source == "scheduled"
    assert batch[0].data["failed_count"] == 1


def test_non_expiring_tokens_are_never_refreshed(scheduler, token_store, gateway):
    token_store.save_token(make_token(1, None))

    report = scheduler.run()

    assert report.results[0].reason == "token_valid"
    assert gateway.refresh_calls == []


def test_token_renewed_after_snapshot_is_not_refreshed_again(scheduler, manager, token_store, gateway):
    token_store.save_token(make_token(1, 3))
    read_token = manager.get_stored_token

    def read_then_renew(shop_id):
        # Uma renovação sob demanda termina logo depois da leitura do lote
        token = read_token(shop_id)
        manager.refresh(shop_id)
        return token
    manager.get_stored_token = read_then_renew

    report = scheduler.run()

    assert [call[0] for call in gateway.refresh_calls] == ["rt-initial"]
    assert report.failed_count == 0
    assert token_store.get_token(1).refresh_token == "rt-1-1"
