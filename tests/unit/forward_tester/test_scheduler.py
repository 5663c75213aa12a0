import asyncio
from datetime import datetime, timezone

import pytest

from forward_tester.connection_supervisor import ConnectionRegistry
from forward_tester.errors import AuthError
from forward_tester.execution_adapter import BrokerExecutionAdapter
from forward_tester.market_clock import MarketClock
from forward_tester.market_data import MarketDataGateway
from forward_tester.models import BrokerCredentials, Environment, SessionOutcome, SessionResult, SessionState
from forward_tester.order_sizer import OrderSizer
from forward_tester.pipeline import SessionPipeline
from forward_tester.retry import RetryPolicy
from forward_tester.scheduler import SessionScheduler
from forward_tester.signal_interpreter import SignalInterpreter
from tests.fakes import FakeBroker, FakeSandbox, entry_on_last_bar

SATURDAY = datetime(2024, 1, 13, 12, 0, tzinfo=timezone.utc)
WEDNESDAY = datetime(2024, 1, 10, 13, 0, tzinfo=timezone.utc)


class StubPipeline:
    """Pipeline double: per-session outcome, exception or coroutine hook."""

    def __init__(self, behaviour=None):
        self.behaviour = behaviour or {}
        self.calls = []
        self.running = 0
        self.peak = 0

    async def run(self, session, status, tick_id=None):
        self.calls.append(session.id)
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            action = self.behaviour.get(session.id)
            if isinstance(action, Exception):
                raise action
            if callable(action):
                await action()
            else:
                await asyncio.sleep(0)
            return SessionResult(
                session_id=session.id,
                outcome=SessionOutcome.NO_SIGNAL,
                states=[SessionState.ACTIVE, SessionState.EVALUATING, SessionState.ACTIVE],
            )
        finally:
            self.running -= 1


def _scheduler(db, audit, pipeline, now=WEDNESDAY, **kwargs):
    options = {"interval": 0.01, "tick_deadline": 5, "max_concurrency": 4}
    options.update(kwargs)
    return SessionScheduler(MarketClock(), db, pipeline, audit, now=lambda: now, **options)


@pytest.mark.asyncio
async def test_closed_market_tick_does_no_session_work(db, audit, session_factory):
    db.create_session(session_factory(id="a"))
    pipeline = StubPipeline()
    scheduler = _scheduler(db, audit, pipeline, now=SATURDAY)

    summary = await scheduler.tick()

    assert summary.market_status.is_open is False
    assert summary.results == []
    assert pipeline.calls == []
    system = audit.system_records()
    assert [r["step"] for r in system] == ["SKIPPED_MARKET_CONDITIONS"]
    assert audit.records_for("a") == []
    assert db.get_session("a").last_execution is None


@pytest.mark.asyncio
async def test_open_tick_runs_every_active_session(db, audit, session_factory):
    for sid in ("a", "b"):
        db.create_session(session_factory(id=sid))
    db.create_session(session_factory(id="stopped", is_active=False))
    pipeline = StubPipeline()
    scheduler = _scheduler(db, audit, pipeline)

    summary = await scheduler.tick()

    assert sorted(pipeline.calls) == ["a", "b"]
    assert summary.counts()["NO_SIGNAL"] == 2
    for sid in ("a", "b"):
        assert db.get_session(sid).last_execution == WEDNESDAY
        terminal = audit.records_for(sid)
        assert [r["step"] for r in terminal] == ["NO_SIGNAL"]
        assert terminal[0]["trade_data"]["tick_id"] == summary.tick_id
    assert db.get_session("stopped").last_execution is None


@pytest.mark.asyncio
async def test_failing_session_does_not_affect_others(db, audit, session_factory):
    for sid in ("good", "bad"):
        db.create_session(session_factory(id=sid))
    pipeline = StubPipeline({"bad": RuntimeError("strategy host crashed")})
    scheduler = _scheduler(db, audit, pipeline)

    summary = await scheduler.tick()

    outcomes = {r.session_id: r.outcome for r in summary.results}
    assert outcomes == {"good": SessionOutcome.NO_SIGNAL, "bad": SessionOutcome.ERROR}
    bad = audit.records_for("bad")
    assert len(bad) == 1
    assert bad[0]["log_type"] == "error"
    assert bad[0]["trade_data"]["error_type"] == "RuntimeError"
    assert db.get_session("bad").last_execution == WEDNESDAY
    assert db.get_session("good").last_execution == WEDNESDAY


@pytest.mark.asyncio
async def test_fan_out_is_bounded(db, audit, session_factory):
    behaviour = {}
    for i in range(6):
        sid = f"s{i}"
        db.create_session(session_factory(id=sid))
        behaviour[sid] = lambda: asyncio.sleep(0.01)
    pipeline = StubPipeline(behaviour)
    scheduler = _scheduler(db, audit, pipeline, max_concurrency=2)

    await scheduler.tick()

    assert len(pipeline.calls) == 6
    assert pipeline.peak <= 2


@pytest.mark.asyncio
async def test_overlapping_tick_is_suppressed(db, audit, session_factory):
    db.create_session(session_factory(id="slow"))
    release = asyncio.Event()
    pipeline = StubPipeline({"slow": release.wait})
    scheduler = _scheduler(db, audit, pipeline, tick_deadline=0.05)

    assert await scheduler.run_once_guarded() is None
    assert scheduler.tick_in_flight

    assert await scheduler.run_once_guarded() is None
    assert scheduler.ticks_suppressed == 1
    assert scheduler.ticks_started == 1

    release.set()
    summary = await scheduler._inflight
    assert summary.results[0].session_id == "slow"
    assert not scheduler.tick_in_flight
    # the late tick still wrote its terminal record
    assert [r["step"] for r in audit.records_for("slow")] == ["NO_SIGNAL"]


@pytest.mark.asyncio
async def test_run_forever_stops_after_max_ticks(db, audit):
    scheduler = _scheduler(db, audit, StubPipeline())

    await scheduler.run_forever(max_ticks=2)

    assert scheduler.ticks_started == 2
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_request_stop_ends_loop_after_current_tick(db, audit, session_factory):
    db.create_session(session_factory(id="a"))
    holder = {}

    async def stop_during_tick():
        holder["scheduler"].request_stop()

    scheduler = _scheduler(db, audit, StubPipeline({"a": stop_during_tick}), interval=60)
    holder["scheduler"] = scheduler

    await asyncio.wait_for(scheduler.run_forever(), timeout=5)

    assert scheduler.ticks_started == 1
    assert [r["step"] for r in audit.records_for("a")] == ["NO_SIGNAL"]


def _credentials(account_id):
    return BrokerCredentials(account_id=account_id, api_key=f"token-{account_id}", environment=Environment.PRACTICE)


@pytest.mark.asyncio
async def test_stage_failure_inside_tick_writes_step_and_terminal_records(db, audit, session_factory, sleep_recorder):
    brokers = {
        "acct-revoked": FakeBroker(candle_results=[AuthError("token revoked", status=401)]),
        "acct-ok": FakeBroker(),
    }
    registry = ConnectionRegistry(
        broker_factory=lambda creds: brokers[creds.account_id],
        supervisor_kwargs={"sleep": sleep_recorder},
    )
    pipeline = SessionPipeline(
        market_data=MarketDataGateway(registry, retry_policy=RetryPolicy(max_attempts=3, sleep=sleep_recorder)),
        sandbox=FakeSandbox(lambda candles: entry_on_last_bar(len(candles), "BUY")),
        interpreter=SignalInterpreter(),
        sizer=OrderSizer(default_units=1000),
        executor=BrokerExecutionAdapter(registry, retry_policy=RetryPolicy(max_attempts=4, sleep=sleep_recorder)),
        audit=audit,
    )
    db.create_session(session_factory(id="revoked", credentials=_credentials("acct-revoked")))
    db.create_session(session_factory(id="healthy", credentials=_credentials("acct-ok")))
    scheduler = _scheduler(db, audit, pipeline)

    summary = await scheduler.tick()

    outcomes = {r.session_id: r.outcome for r in summary.results}
    assert outcomes == {"revoked": SessionOutcome.ERROR, "healthy": SessionOutcome.TRADE_EXECUTED}

    revoked = audit.records_for("revoked")
    assert [r["step"] for r in revoked] == ["EVALUATION_START", "DATA_FETCH", "ERROR"]
    assert revoked[1]["log_type"] == "error"
    assert revoked[1]["trade_data"]["error_type"] == "DataFetchError"
    assert "token revoked" in revoked[1]["trade_data"]["error_message"]
    assert revoked[2]["trade_data"]["step"] == "DATA_FETCH"
    assert revoked[2]["trade_data"]["tick_id"] == summary.tick_id
    assert brokers["acct-revoked"].order_calls == []

    healthy = audit.records_for("healthy")
    assert [r["step"] for r in healthy][-2:] == ["TRADE_EXECUTED", "TRADE_EXECUTED"]
    assert brokers["acct-ok"].order_calls[0].client_id == f"healthy-{summary.tick_id}"
    assert db.get_session("revoked").is_active is True
