import asyncio

import pytest

from forward_tester.errors import AuthError, ConnectionFailedError, NetworkError, OrderRejected
from forward_tester.execution_adapter import BrokerExecutionAdapter
from forward_tester.connection_supervisor import ConnectionRegistry
from forward_tester.models import Order, OrderAck
from forward_tester.oanda_broker import OandaBroker
from forward_tester.retry import RetryPolicy
from tests.fakes import FakeBroker, FakeHttpResponse, FakeHttpSession

ORDER = Order(instrument="EUR_USD", units=1000, stop_loss_distance=0.004, take_profit_distance=0.008)


def _adapter(registry, sleep_recorder, attempts=4):
    return BrokerExecutionAdapter(registry, retry_policy=RetryPolicy(max_attempts=attempts, sleep=sleep_recorder))


@pytest.mark.asyncio
async def test_submit_order_returns_ack(registry_factory, session_factory, sleep_recorder):
    broker = FakeBroker(order_results=[OrderAck("42", "43", 1.1001)])
    adapter = _adapter(registry_factory(broker), sleep_recorder)

    ack = await adapter.submit_order(ORDER, session_factory().credentials)

    assert ack.order_id == "42"
    assert broker.order_calls == [ORDER]


@pytest.mark.asyncio
async def test_transient_failures_retry_then_succeed(registry_factory, session_factory, sleep_recorder):
    failures = [NetworkError("unavailable", status=503) for _ in range(3)]
    broker = FakeBroker(order_results=failures + [OrderAck("7", "8", 1.1)])
    adapter = _adapter(registry_factory(broker), sleep_recorder)
    retries = []

    ack = await adapter.submit_order(
        ORDER,
        session_factory().credentials,
        on_retry=lambda attempt, exc, delay: retries.append((attempt, exc.status)),
    )

    assert ack.order_id == "7"
    assert len(broker.order_calls) == 4
    assert retries == [(1, 503), (2, 503), (3, 503)]
    assert len(sleep_recorder.delays) == 3


@pytest.mark.asyncio
async def test_retries_are_bounded(registry_factory, session_factory, sleep_recorder):
    broker = FakeBroker(order_results=[NetworkError("down", status=503) for _ in range(5)])
    adapter = _adapter(registry_factory(broker), sleep_recorder, attempts=4)

    with pytest.raises(NetworkError):
        await adapter.submit_order(ORDER, session_factory().credentials)
    assert len(broker.order_calls) == 4


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure",
    [AuthError("revoked", status=401), OrderRejected("no margin", status=400, reason="INSUFFICIENT_MARGIN")],
)
async def test_terminal_failures_are_not_retried(registry_factory, session_factory, sleep_recorder, failure):
    broker = FakeBroker(order_results=[failure])
    adapter = _adapter(registry_factory(broker), sleep_recorder)
    retries = []

    with pytest.raises(type(failure)):
        await adapter.submit_order(ORDER, session_factory().credentials, on_retry=lambda *a: retries.append(a))

    assert len(broker.order_calls) == 1
    assert retries == []


@pytest.mark.asyncio
async def test_failed_connection_blocks_submission(registry_factory, session_factory, sleep_recorder):
    broker = FakeBroker(connect_results=[AuthError("bad token", status=401)])
    adapter = _adapter(registry_factory(broker), sleep_recorder)

    with pytest.raises(ConnectionFailedError):
        await adapter.submit_order(ORDER, session_factory().credentials)
    assert broker.order_calls == []


@pytest.mark.asyncio
async def test_account_reads(registry_factory, session_factory, sleep_recorder):
    broker = FakeBroker(
        summary={"account_id": "101-001-1", "balance": 5000.0},
        positions=[{"symbol": "EUR_USD", "quantity": 1000.0, "unrealized_pl": 0.0}],
    )
    adapter = _adapter(registry_factory(broker), sleep_recorder)
    credentials = session_factory().credentials

    summary = await adapter.get_account_summary(credentials)
    positions = await adapter.get_open_positions(credentials)

    assert summary["balance"] == 5000.0
    assert positions[0]["symbol"] == "EUR_USD"


@pytest.mark.asyncio
async def test_http_503_three_times_then_success(session_factory, sleep_recorder):
    summary = FakeHttpResponse(200, {"account": {"id": "101-001-1", "balance": "1000"}})
    unavailable = FakeHttpResponse(503, {"errorMessage": "Service Unavailable"})
    filled = FakeHttpResponse(
        201,
        {"orderCreateTransaction": {"id": "11"}, "orderFillTransaction": {"id": "12", "price": "1.10010"}},
    )
    # every 503 bounces the connection, so each retry reconnects with an account read first
    http = FakeHttpSession([summary, unavailable, summary, unavailable, summary, unavailable, summary, filled])
    registry = ConnectionRegistry(
        broker_factory=lambda creds: OandaBroker(creds, http_session=http),
        supervisor_kwargs={"sleep": sleep_recorder},
    )
    adapter = _adapter(registry, sleep_recorder, attempts=4)
    retries = []

    ack = await adapter.submit_order(ORDER, session_factory().credentials, on_retry=lambda *a: retries.append(a))

    assert ack.order_id == "11"
    assert ack.fill_price == pytest.approx(1.1001)
    assert [r["method"] for r in http.requests].count("POST") == 4
    assert len(retries) == 3
    assert http.responses == []


@pytest.mark.asyncio
async def test_timeout_after_venue_accepted_does_not_place_twice(session_factory, sleep_recorder):
    summary = FakeHttpResponse(200, {"account": {"id": "101-001-1", "balance": "1000"}})
    duplicate = FakeHttpResponse(
        400,
        {
            "errorCode": "CLIENT_ORDER_ID_ALREADY_EXISTS",
            "errorMessage": "client order ID already exists",
            "orderRejectTransaction": {"rejectReason": "CLIENT_ORDER_ID_ALREADY_EXISTS"},
        },
    )
    existing = FakeHttpResponse(200, {"order": {"id": "11", "state": "FILLED", "fillingTransactionID": "12"}})
    http = FakeHttpSession([summary, asyncio.TimeoutError(), summary, duplicate, existing])
    registry = ConnectionRegistry(
        broker_factory=lambda creds: OandaBroker(creds, http_session=http),
        supervisor_kwargs={"sleep": sleep_recorder},
    )
    adapter = _adapter(registry, sleep_recorder, attempts=4)
    order = Order(
        instrument="EUR_USD",
        units=1000,
        stop_loss_distance=0.004,
        take_profit_distance=0.008,
        client_id="session-1-tick1",
    )
    retries = []

    ack = await adapter.submit_order(order, session_factory().credentials, on_retry=lambda *a: retries.append(a))

    assert ack.already_placed is True
    assert ack.order_id == "11"
    assert ack.transaction_id == "12"
    posts = [r for r in http.requests if r["method"] == "POST"]
    assert len(posts) == 2
    assert all(p["json"]["order"]["clientExtensions"] == {"id": "session-1-tick1"} for p in posts)
    assert http.requests[-1]["method"] == "GET"
    assert http.requests[-1]["url"].endswith("/orders/@session-1-tick1")
    assert len(retries) == 1
    assert http.responses == []
