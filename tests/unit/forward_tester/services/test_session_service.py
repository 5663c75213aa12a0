from datetime import datetime, timezone

import pytest

from forward_tester.errors import AuthError, ConnectionFailedError
from forward_tester.models import ConnectionState, Environment, ExecutionRecord, LogType, RiskParameters
from forward_tester.services.session_service import ForwardTestingService, default_risk
from tests.fakes import FakeBroker


def _start(service, **overrides):
    params = {
        "user_id": "user-1",
        "strategy_id": "strat-1",
        "strategy_name": "EMA Cross",
        "strategy_code": "result = None",
        "symbol": "EUR_USD",
        "timeframe": "5M",
        "account_id": "101-001-1",
        "api_key": "token-1",
    }
    params.update(overrides)
    return service.start_session(**params)


def test_start_session_persists_active_session(db):
    service = ForwardTestingService(db)

    session = _start(service, environment="live", reverse_signals=True)

    stored = db.get_session(session.id)
    assert stored.is_active is True
    assert stored.environment == Environment.LIVE
    assert stored.reverse_signals is True
    assert stored.risk == default_risk()
    assert stored.last_execution is not None


def test_start_session_keeps_custom_risk(db):
    risk = RiskParameters(risk_per_trade=0.5, stop_loss=20, take_profit=60, max_position_size=5000)
    session = _start(ForwardTestingService(db), risk=risk)
    assert db.get_session(session.id).risk == risk


@pytest.mark.parametrize(
    "overrides",
    [{"api_key": ""}, {"account_id": ""}, {"timeframe": "7m"}, {"environment": "sandbox"}],
)
def test_start_session_validates_input(db, overrides):
    with pytest.raises(ValueError):
        _start(ForwardTestingService(db), **overrides)
    assert db.get_active_sessions() == []


def test_stop_one_then_all(db):
    service = ForwardTestingService(db)
    first = _start(service)
    _start(service)
    _start(service)

    assert service.stop_session("user-1", first.id) == 1
    assert len(service.get_active_sessions("user-1")) == 2
    assert service.stop_session("user-1") == 2
    assert service.get_active_sessions("user-1") == []


def test_get_stats_counts_trade_outcomes(db, session_factory):
    service = ForwardTestingService(db)
    session = session_factory(id="s1")
    db.create_session(session)
    db.update_last_execution("s1", datetime(2024, 1, 10, 13, 5, tzinfo=timezone.utc))
    for success in (True, True, False):
        db.insert_log(
            ExecutionRecord(
                session_id="s1",
                user_id="user-1",
                step="TRADE_EXECUTED" if success else "TRADE_FAILED",
                log_type=LogType.TRADE,
                message="trade",
                trade_data={"success": success},
            )
        )
    db.insert_log(ExecutionRecord(session_id="s1", user_id="user-1", step="NO_SIGNAL", log_type=LogType.INFO, message="x"))

    stats = service.get_stats("user-1")

    assert stats == {
        "total_trades": 3,
        "successful_trades": 2,
        "failed_trades": 1,
        "last_execution": "2024-01-10T13:05:00+00:00",
    }


def test_get_stats_without_history(db):
    assert ForwardTestingService(db).get_stats("nobody") == {
        "total_trades": 0,
        "successful_trades": 0,
        "failed_trades": 0,
        "last_execution": None,
    }


@pytest.mark.asyncio
async def test_reconnect_recovers_failed_connection(db, registry_factory, session_factory):
    broker = FakeBroker(connect_results=[AuthError("bad token", status=401)])
    registry = registry_factory(broker)
    service = ForwardTestingService(db, registry)
    session = session_factory(id="s1")
    db.create_session(session)

    supervisor = registry.get(session.credentials)
    with pytest.raises(ConnectionFailedError):
        await supervisor.ensure_connected()
    assert supervisor.state == ConnectionState.FAILED

    assert await service.reconnect("user-1", "s1") == ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_reconnect_rejects_foreign_session(db, registry_factory, session_factory):
    db.create_session(session_factory(id="s1"))
    service = ForwardTestingService(db, registry_factory(FakeBroker()))
    with pytest.raises(ValueError):
        await service.reconnect("user-2", "s1")
