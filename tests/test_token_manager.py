"""Testes do TokenLifecycleManager com gateway falso e relógio fixo."""

import threading
import time

import pytest

from shop_token_sync.database import TokenStore
from shop_token_sync.errors import (
    AuthError,
    ConflictError,
    InvalidRequest,
    NetworkError,
    RefreshError,
)
from shop_token_sync.locks import ShopLockRegistry
from shop_token_sync.token_manager import TokenLifecycleManager

from conftest import MINUTE_MS, NOW_MS, make_token


class TestAuthenticate:

    @pytest.mark.parametrize("code", ["", "   "])
    def test_empty_code_is_invalid_request(self, manager, gateway, code):
        with pytest.raises(InvalidRequest):
            manager.authenticate(code, 1)
        assert gateway.code_calls == []

    def test_missing_shop_id_in_response_uses_caller_value(self, manager, token_store):
        token = manager.authenticate("abc", shop_id=77)

        assert token.shop_id == 77
        assert token.expired_at == NOW_MS + 14400 * 1000
        assert token_store.get_token(77) == token

    def test_no_shop_id_anywhere_is_invalid_request(self, manager, token_store):
        with pytest.raises(InvalidRequest):
            manager.authenticate("abc")
        assert token_store.list_shop_ids() == []

    def test_gateway_rejection_propagates_and_emits_event(self, manager, gateway, events, token_store):
        def reject(code, shop_id=None):
            raise AuthError("invalid code")
        gateway.exchange_code = reject

        with pytest.raises(AuthError):
            manager.authenticate("bad", 1)

        assert token_store.get_token(1) is None
        assert events[-1].action_type == "shop_authenticate"
        assert events[-1].status == "failed"

    def test_success_emits_event_without_secrets(self, manager, events):
        manager.authenticate("abc", 5)

        event = events[-1]
        assert event.action_type == "shop_authenticate"
        assert event.status == "success"
        assert event.shop_id == 5
        assert "refresh-abc" not in event.model_dump_json()


class TestValidity:

    def test_fresh_token_is_valid(self, manager):
        assert manager.is_valid(make_token(1, 60)) is True

    def test_token_inside_buffer_is_invalid(self, manager):
        assert manager.is_valid(make_token(1, 4)) is False

    def test_custom_buffer(self, manager):
        token = make_token(1, 60)
        assert manager.is_valid(token, buffer_minutes=90) is False

    def test_uses_injected_clock(self, manager, clock):
        token = make_token(1, 60)
        clock.advance_minutes(56)
        assert manager.is_valid(token) is False


class TestRefresh:

    def test_refresh_replaces_stored_token(self, manager, token_store, gateway):
        token_store.save_token(make_token(1, 3, merchant_id=500))

        new_token = manager.refresh(1)

        assert gateway.refresh_calls == [("rt-initial", 1, 500)]
        assert new_token.shop_id == 1
        assert new_token.merchant_id == 500
        assert new_token.refresh_token == "rt-1-1"
        assert token_store.get_token(1) == new_token
        assert manager.is_valid(token_store.get_token(1))

    def test_failed_refresh_preserves_previous_token(self, manager, token_store, gateway):
        original = make_token(1, 3)
        token_store.save_token(original)
        gateway.failures[1] = AuthError("invalid refresh_token")

        with pytest.raises(RefreshError) as exc_info:
            manager.refresh(1)

        assert isinstance(exc_info.value.cause, AuthError)
        assert exc_info.value.requires_reauthorization is True
        assert exc_info.value.retryable is False
        assert token_store.get_token(1) == original

    def test_network_failure_is_retryable(self, manager, token_store, gateway):
        token_store.save_token(make_token(1, 3))
        gateway.failures[1] = NetworkError("timeout")

        with pytest.raises(RefreshError) as exc_info:
            manager.refresh(1)

        assert exc_info.value.retryable is True
        assert exc_info.value.requires_reauthorization is False

    def test_missing_refresh_token_requires_reauthorization(self, manager, token_store, gateway):
        token_store.save_token(make_token(1, 3, refresh_token=""))

        with pytest.raises(RefreshError) as exc_info:
            manager.refresh(1)

        assert isinstance(exc_info.value.cause, AuthError)
        assert gateway.refresh_calls == []

    def test_unknown_shop_raises_refresh_error(self, manager):
        with pytest.raises(RefreshError):
            manager.refresh(999)

    def test_response_without_refresh_token_keeps_previous_one(self, manager, token_store, gateway):
        token_store.save_token(make_token(1, 3, refresh_token="rt-keep"))

        original = gateway.exchange_refresh_token

        def without_refresh_token(refresh_token, shop_id=None, merchant_id=None):
            token = original(refresh_token, shop_id, merchant_id)
            token.refresh_token = ""
            return token
        gateway.exchange_refresh_token = without_refresh_token

        manager.refresh(1)
        assert token_store.get_token(1).refresh_token == "rt-keep"

    def test_refresh_is_logged_and_emitted(self, manager, token_store, gateway, events):
        token_store.save_token(make_token(1, 3))
        manager.refresh(1, source="auto")
        gateway.failures[1] = NetworkError("boom")
        with pytest.raises(RefreshError):
            manager.refresh(1)

        logs = token_store.get_refresh_logs(1)
        assert [log["success"] for log in logs] == [False, True]
        assert logs[1]["source"] == "auto"
        assert logs[1]["new_expired_at"] == NOW_MS + 14400 * 1000

        refresh_events = [e for e in events if e.action_type == "token_refresh"]
        assert [e.status for e in refresh_events] == ["success", "failed"]
        assert refresh_events[0].source == "scheduled"
        assert refresh_events[1].source == "manual"

    def test_concurrent_refreshes_do_not_double_refresh(self, manager, token_store, gateway):
        token_store.save_token(make_token(1, 3))
        entered = threading.Event()
        release = threading.Event()

        def hold_first_call(shop_id):
            entered.set()
            release.wait(5)
        gateway.before_refresh = hold_first_call

        results = []
        first = threading.Thread(target=lambda: results.append(manager.refresh(1)))
        first.start()
        assert entered.wait(5)

        # A segunda chamada lê o token antigo e fica esperando o lock da loja
        second = threading.Thread(target=lambda: results.append(manager.refresh(1)))
        second.start()
        time.sleep(0.1)
        release.set()
        first.join()
        second.join()

        assert len(gateway.refresh_calls) == 1
        assert [r.access_token for r in results] == ["access-1-1", "access-1-1"]
        assert token_store.get_token(1).refresh_token == "rt-1-1"

    def test_stale_expected_token_returns_current_without_exchange(self, manager, token_store, gateway):
        stale = token_store.save_token(make_token(1, 3))
        renewed = manager.refresh(1)

        result = manager.refresh(1, expected=stale)

        assert result == renewed
        assert len(gateway.refresh_calls) == 1

    def test_sequential_refreshes_each_exchange(self, manager, token_store, gateway):
        token_store.save_token(make_token(1, 3))
        manager.refresh(1)
        manager.refresh(1)

        assert [call[0] for call in gateway.refresh_calls] == ["rt-initial", "rt-1-1"]
        assert token_store.get_token(1).refresh_token == "rt-1-2"

    def test_different_shops_refresh_in_parallel(self, manager, token_store, gateway):
        token_store.save_token(make_token(1, 3))
        token_store.save_token(make_token(2, 3))
        inside = threading.Barrier(2, timeout=5)
        # Ambas as lojas precisam estar dentro do gateway ao mesmo tempo
        gateway.before_refresh = lambda shop_id: inside.wait()

        threads = [threading.Thread(target=manager.refresh, args=(sid,)) for sid in (1, 2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert gateway.max_active == 2

    def test_no_wait_on_busy_shop_raises_conflict(self, manager, token_store, gateway):
        token_store.save_token(make_token(1, 3))

        with manager.locks.hold(1):
            with pytest.raises(ConflictError):
                manager.refresh(1, wait=False)

        assert gateway.refresh_calls == []


class TestEnsureValidAndDisconnect:

    def test_ensure_valid_returns_stored_when_valid(self, manager, token_store, gateway):
        stored = token_store.save_token(make_token(1, 60))
        assert manager.ensure_valid_token(1) == stored
        assert gateway.refresh_calls == []

    def test_ensure_valid_refreshes_expiring_token(self, manager, token_store, gateway):
        token_store.save_token(make_token(1, 2))
        token = manager.ensure_valid_token(1)
        assert len(gateway.refresh_calls) == 1
        assert token.expired_at - NOW_MS == 14400 * 1000
        assert token.expired_at > NOW_MS + 5 * MINUTE_MS

    def test_disconnect_removes_token(self, manager, token_store, events):
        token_store.save_token(make_token(1, 60))

        assert manager.disconnect(1) is True
        assert manager.get_stored_token(1) is None
        assert manager.disconnect(1) is False
        assert events[-1].action_type == "shop_disconnect"


class TestCrossProcessRefresh:
    """Dois managers com registros de lock próprios no mesmo arquivo SQLite."""

    @pytest.fixture
    def other_manager(self, db_path, gateway, emitter, clock):
        return TokenLifecycleManager(TokenStore(db_path), gateway, locks=ShopLockRegistry(),
                                     emitter=emitter, buffer_minutes=5, clock=clock,
                                     claim_wait_seconds=5, claim_poll_seconds=0.01)

    def _hold_gateway(self, gateway):
        entered = threading.Event()
        release = threading.Event()

        def hold(shop_id):
            entered.set()
            release.wait(5)
        gateway.before_refresh = hold
        return entered, release

    def test_second_process_waits_and_reuses_new_token(self, manager, other_manager, token_store, gateway):
        token_store.save_token(make_token(1, 3))
        entered, release = self._hold_gateway(gateway)
        results = []

        first = threading.Thread(target=lambda: results.append(manager.refresh(1)))
        first.start()
        assert entered.wait(5)
        second = threading.Thread(target=lambda: results.append(other_manager.refresh(1)))
        second.start()
        time.sleep(0.1)
        release.set()
        first.join()
        second.join()

        assert gateway.refresh_calls == [("rt-initial", 1, None)]
        assert gateway.max_active == 1
        assert sorted(r.refresh_token for r in results) == ["rt-1-1", "rt-1-1"]

    def test_no_wait_in_other_process_is_conflict(self, manager, other_manager, token_store, gateway):
        token_store.save_token(make_token(1, 3))
        entered, release = self._hold_gateway(gateway)

        first = threading.Thread(target=manager.refresh, args=(1,))
        first.start()
        try:
            assert entered.wait(5)
            with pytest.raises(ConflictError):
                other_manager.refresh(1, wait=False)
        finally:
            release.set()
            first.join()

        assert len(gateway.refresh_calls) == 1
        assert token_store.get_token(1).refresh_token == "rt-1-1"

    def test_failed_refresh_releases_claim(self, manager, other_manager, token_store, gateway):
        token_store.save_token(make_token(1, 3))
        gateway.failures[1] = NetworkError("timeout")
        with pytest.raises(RefreshError):
            manager.refresh(1)

        del gateway.failures[1]
        token = other_manager.refresh(1, wait=False)

        assert token.refresh_token == "rt-1-2"
