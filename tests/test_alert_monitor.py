"""
アラート監視（価格更新・評価・トリガー）のテスト
"""

import threading
from datetime import timedelta

from sqlalchemy.exc import OperationalError

from cryptoalert.schemas.alert import ExecutionAction, PRICE_HISTORY_LIMIT
from cryptoalert.services.price_source import PriceSourceError


def _cycle(monitor):
    """価格更新 → 評価を1回ずつ実行"""
    monitor.refresh_prices()
    return monitor.evaluate_alerts()


class TestPriceAbove:
    """一回限りの価格上昇アラート"""

    def test_triggers_on_second_cycle(self, monitor, make_alert, price_source, store, email_service):
        alert = make_alert()
        monitor.load_active_alerts()

        price_source.set_price("BTC", 44000)
        assert _cycle(monitor) == 0

        price_source.set_price("BTC", 45250)
        assert _cycle(monitor) == 1

        saved = store.get(alert.id)
        assert saved.is_triggered is True
        assert saved.trigger_count == 1
        assert saved.condition.current_price == 45250
        assert email_service.sent[0]["body"] == (
            "BTC has reached $45250.00, above your target of $45000.00"
        )

    def test_one_shot_alert_leaves_index_but_stays_in_store(self, monitor, make_alert, price_source, store):
        alert = make_alert()
        monitor.load_active_alerts()
        price_source.set_price("BTC", 46000)
        _cycle(monitor)

        assert alert.id not in monitor.index
        assert store.get(alert.id) is not None
        assert store.load_active() == []

    def test_trigger_event_published_to_owner(self, monitor, make_alert, price_source, transport, test_user):
        make_alert()
        monitor.load_active_alerts()
        price_source.set_price("BTC", 46000)
        _cycle(monitor)

        assert transport.topics() == ["price_update", "alert_triggered"]
        event = transport.published[1]
        assert event["user_id"] == test_user
        assert event["payload"]["alert"]["trigger_count"] == 1
        assert event["payload"]["notifications"]["email"]["status"] == "sent"

    def test_notification_history_recorded(self, monitor, make_alert, price_source, db_session, test_user):
        from cryptoalert.models.notification_history import Notification
        from cryptoalert.models.user import User

        make_alert(notifications={"email": {"enabled": True}, "sms": {"enabled": False}, "push": {"enabled": True}})
        monitor.load_active_alerts()
        price_source.set_price("BTC", 46000)
        _cycle(monitor)

        db_session.expire_all()
        channels = sorted(n.channel for n in db_session.query(Notification).all())
        assert channels == ["email", "push"]
        assert db_session.get(User, test_user).triggered_alerts == 1


class TestRepeatingAlert:
    """繰り返しアラートの再アーム"""

    def test_rearms_after_interval(self, monitor, make_alert, price_source, clock, sms_service):
        alert = make_alert(
            symbol="ETH",
            alert_type="price_below",
            condition={"target_price": 3000},
            repeat_interval=60,
            max_triggers=3,
            notifications={"email": {"enabled": False}, "sms": {"enabled": True}, "push": {"enabled": False}},
        )
        monitor.load_active_alerts()
        price_source.set_price("ETH", 2950)

        assert _cycle(monitor) == 1
        assert alert.id in monitor.index

        # 30分後: まだ再アームされない
        clock.advance(minutes=30)
        assert _cycle(monitor) == 0
        assert len(sms_service.sent) == 1

        # 61分後: 再アームされ、条件を満たしたままなので再トリガー
        clock.advance(minutes=31)
        assert _cycle(monitor) == 1
        assert len(sms_service.sent) == 2
        assert monitor.index.get(alert.id).trigger_count == 2

    def test_exhausted_after_max_triggers(self, monitor, make_alert, price_source, clock, store):
        alert = make_alert(repeat_interval=10, max_triggers=2)
        monitor.load_active_alerts()
        price_source.set_price("BTC", 50000)

        assert _cycle(monitor) == 1
        clock.advance(minutes=11)
        assert _cycle(monitor) == 1

        assert alert.id not in monitor.index
        saved = store.get(alert.id)
        assert saved.trigger_count == 2
        assert saved.is_exhausted()

        clock.advance(minutes=11)
        assert _cycle(monitor) == 0

    def test_rearm_survives_reload(self, monitor, make_alert, price_source, clock):
        """再アーム待ちのアラートは再同期後も監視対象"""
        alert = make_alert(repeat_interval=15, max_triggers=5)
        monitor.load_active_alerts()
        price_source.set_price("BTC", 50000)
        _cycle(monitor)

        assert monitor.load_active_alerts() == 1
        reloaded = monitor.index.get(alert.id)
        assert reloaded.is_triggered is True
        assert reloaded.rearm_at == clock() + timedelta(minutes=15)


class TestVolumeSpike:
    def test_triggers_once_with_audit_entry(self, monitor, make_alert, price_source, store):
        alert = make_alert(alert_type="volume_spike", condition={"volume_threshold": 1e9})
        monitor.load_active_alerts()

        price_source.set_price("BTC", 45000, volume_24h=9.5e8)
        assert _cycle(monitor) == 0

        price_source.set_price("BTC", 45000, volume_24h=1.05e9)
        assert _cycle(monitor) == 1

        log = store.get(alert.id).execution_log
        triggered = [e for e in log if e.action == ExecutionAction.TRIGGERED]
        assert len(triggered) == 1
        assert triggered[0].details["trigger_data"]["volume_24h"] == 1.05e9


class TestExpiry:
    def test_expired_alert_removed_without_notification(self, monitor, make_alert, price_source, clock, email_service):
        alert = make_alert(expires_at=clock() + timedelta(minutes=5))
        monitor.load_active_alerts()
        price_source.set_price("BTC", 44000)
        _cycle(monitor)

        clock.advance(minutes=10)
        price_source.set_price("BTC", 50000)
        assert _cycle(monitor) == 0
        assert alert.id not in monitor.index
        assert email_service.sent == []


class TestPriceSourceFailure:
    """価格ソース障害時はキャッシュの直近値で評価を続ける"""

    def test_cache_retained_for_all_symbols(self, monitor, make_alert, price_source):
        symbols = ["BTC", "ETH", "SOL", "ADA", "DOT"]
        for symbol in symbols:
            make_alert(symbol=symbol, condition={"target_price": 1_000_000})
            price_source.set_price(symbol, 100)
        monitor.load_active_alerts()
        monitor.refresh_prices()

        price_source.error = PriceSourceError("HTTPエラー: 503")
        assert monitor.refresh_prices() == {}

        for symbol in symbols:
            assert monitor.price_cache.get(symbol).price == 100
        assert monitor.evaluate_alerts() == 0

    def test_stale_price_still_triggers(self, monitor, make_alert, price_source):
        make_alert()
        monitor.load_active_alerts()
        price_source.set_price("BTC", 46000)
        monitor.refresh_prices()

        price_source.error = RuntimeError("connection reset")
        monitor.refresh_prices()
        assert monitor.evaluate_alerts() == 1

    def test_cache_miss_fetches_single_symbol(self, monitor, make_alert, price_source):
        make_alert(symbol="SOL", condition={"target_price": 100})
        monitor.load_active_alerts()
        price_source.set_price("SOL", 120)

        assert monitor.evaluate_alerts() == 1
        assert price_source.calls == [{"SOL"}]
        assert monitor.price_cache.get("SOL").price == 120

    def test_refresh_skipped_without_alerts(self, monitor, price_source):
        assert monitor.refresh_prices() == {}
        assert price_source.calls == []

    def test_refresh_batches_symbols(self, monitor, make_alert, price_source):
        make_alert(symbol="BTC")
        make_alert(symbol="BTC", name="second")
        make_alert(symbol="ETH")
        monitor.load_active_alerts()
        monitor.refresh_prices()
        assert price_source.calls == [{"BTC", "ETH"}]


class TestResilience:
    """1件のエラーで他のアラートや監視が止まらない"""

    def test_price_history_capped(self, monitor, make_alert, price_source, store, clock):
        alert = make_alert(condition={"target_price": 1_000_000})
        monitor.load_active_alerts()
        for i in range(PRICE_HISTORY_LIMIT + 5):
            price_source.set_price("BTC", 40000 + i)
            clock.advance(seconds=5)
            _cycle(monitor)

        history = store.get(alert.id).price_history
        assert len(history) == PRICE_HISTORY_LIMIT
        assert history[0].price == 40005
        assert history[-1].price == 40000 + PRICE_HISTORY_LIMIT + 4

    def test_store_failure_keeps_in_memory_trigger(self, monitor, make_alert, price_source, store, email_service):
        alert = make_alert()
        monitor.load_active_alerts()
        price_source.set_price("BTC", 46000)

        def failing_save(_alert):
            raise OperationalError("UPDATE alerts", {}, Exception("database is locked"))

        store.save = failing_save
        monitor.refresh_prices()
        in_memory = monitor.index.get(alert.id)

        assert monitor.evaluate_alerts() == 1
        assert in_memory.is_triggered is True
        assert in_memory.trigger_count == 1
        assert len(email_service.sent) == 1

    def test_one_bad_alert_does_not_abort_cycle(self, monitor, make_alert, price_source):
        bad = make_alert(symbol="BTC")
        good = make_alert(symbol="ETH", condition={"target_price": 100})
        monitor.load_active_alerts()
        price_source.set_price("BTC", 50000)
        price_source.set_price("ETH", 200)
        monitor.refresh_prices()

        process_alert = monitor.process_alert

        def flaky(alert, now):
            if alert.id == bad.id:
                raise ValueError("corrupted history")
            return process_alert(alert, now)

        monitor.process_alert = flaky

        assert monitor.evaluate_alerts() == 1
        assert good.id not in monitor.index
        assert bad.id in monitor.index


class TestLifecycle:
    """開始・停止と状態"""

    def test_start_is_idempotent(self, monitor, make_alert):
        make_alert()
        monitor.start()
        monitor.start()
        assert monitor.running is True
        status = monitor.get_status()
        assert status["active_alerts"] == 1
        assert sorted(job["id"] for job in status["jobs"]) == [
            "alert_evaluation",
            "alert_resync",
            "price_refresh",
        ]

        monitor.stop()
        monitor.stop()
        assert monitor.running is False
        assert monitor.get_status()["jobs"] == []

    def test_track_and_untrack(self, monitor, make_alert):
        alert = make_alert()
        assert monitor.track(alert) is True
        assert alert.id in monitor.index

        monitor.untrack(alert.id)
        assert alert.id not in monitor.index

        alert.is_active = False
        assert monitor.track(alert) is False


class TestResync:
    """再同期と評価が重なってもトリガーは1回だけ"""

    def test_trigger_between_read_and_swap_is_kept(self, monitor, make_alert, price_source, store, email_service):
        alert = make_alert()
        monitor.load_active_alerts()
        price_source.set_price("BTC", 46000)
        monitor.refresh_prices()

        load_active = store.load_active

        def load_then_evaluate(now=None):
            rows = load_active(now)
            # DBを読んだ後、作業セットを置き換える前に評価が走る
            assert monitor.evaluate_alerts() == 1
            return rows

        store.load_active = load_then_evaluate
        monitor.load_active_alerts()
        store.load_active = load_active

        assert alert.id not in monitor.index
        assert monitor.evaluate_alerts() == 0
        assert len(email_service.sent) == 1

    def test_evaluation_waits_for_reload(self, monitor, make_alert, price_source, store, email_service):
        make_alert()
        monitor.load_active_alerts()
        price_source.set_price("BTC", 46000)
        monitor.refresh_prices()

        results = []
        evaluation = threading.Thread(target=lambda: results.append(monitor.evaluate_alerts()))
        load_active = store.load_active

        def load_while_evaluating(now=None):
            rows = load_active(now)
            evaluation.start()
            evaluation.join(0.2)
            # 再同期中はロック待ちになる
            assert evaluation.is_alive()
            return rows

        store.load_active = load_while_evaluating
        monitor.load_active_alerts()
        store.load_active = load_active
        evaluation.join(5)

        # 置き換え前のオブジェクトは評価されない
        assert results == [0]
        assert monitor.evaluate_alerts() == 1
        assert monitor.evaluate_alerts() == 0
        assert len(email_service.sent) == 1

    def test_unsaved_trigger_survives_reload(self, monitor, make_alert, price_source, store, email_service):
        """保存に失敗したトリガーをDBの古い行で巻き戻さない"""
        alert = make_alert(repeat_interval=30, max_triggers=5)
        monitor.load_active_alerts()
        price_source.set_price("BTC", 46000)
        monitor.refresh_prices()

        save = store.save

        def failing_save(_alert):
            raise OperationalError("UPDATE alerts", {}, Exception("database is locked"))

        store.save = failing_save
        assert monitor.evaluate_alerts() == 1
        store.save = save

        monitor.load_active_alerts()
        reloaded = monitor.index.get(alert.id)
        assert reloaded.is_triggered is True
        assert reloaded.trigger_count == 1
        assert monitor.evaluate_alerts() == 0
        assert len(email_service.sent) == 1
        assert store.get(alert.id).trigger_count == 1
