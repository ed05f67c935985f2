"""Testes do agendador em background (APScheduler)."""

from datetime import datetime, timedelta, timezone

import pytest

from shop_token_sync.refresh_scheduler import RefreshScheduler
from shop_token_sync.scheduler import TokenScheduler
from shop_token_sync.sync_tracker import SyncStatusTracker

from conftest import make_token


@pytest.fixture
def token_scheduler(manager, sync_store, emitter):
    refresh_scheduler = RefreshScheduler(manager, threshold_minutes=10, run_budget_seconds=60, delay_seconds=0)
    tracker = SyncStatusTracker(sync_store, emitter=emitter)
    scheduler = TokenScheduler(refresh_scheduler, tracker, interval_minutes=60)
    yield scheduler
    if scheduler.is_running:
        scheduler.stop()


def test_trigger_refresh_now_records_report(token_scheduler, token_store):
    token_store.save_token(make_token(1, 3))

    report = token_scheduler.trigger_refresh_now()

    assert report.success_count == 1
    assert token_scheduler.execution_count == 1
    assert token_scheduler.last_report is report
    status = token_scheduler.get_status()
    assert status["is_running"] is False
    assert status["last_report"]["success_count"] == 1
    assert "results" not in status["last_report"]


def test_start_schedules_jobs(token_scheduler):
    before = datetime.now(timezone.utc)

    assert token_scheduler.start(run_on_startup=False, handle_signals=False) is True

    next_run = token_scheduler.get_next_run_time()
    assert next_run is not None
    assert next_run >= before + timedelta(minutes=59)
    assert token_scheduler.scheduler.get_job(TokenScheduler.CLEANUP_JOB_ID) is not None
    assert token_scheduler.get_status()["is_running"] is True

    token_scheduler.stop()
    assert token_scheduler.is_running is False
    assert token_scheduler.get_next_run_time() is None


def test_cleanup_job_resets_stuck_syncs(token_scheduler, sync_store):
    sync_store.try_mark_syncing(7, datetime.now(timezone.utc) - timedelta(hours=2))

    reset = token_scheduler._cleanup_job()

    assert reset == [7]
    assert sync_store.get_status(7).is_syncing is False
