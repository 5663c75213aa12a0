import logging
import uuid
from typing import Optional

from forward_tester.audit_log import AuditLog
from forward_tester.errors import ForwardTestingError, StrategyRuntimeError
from forward_tester.execution_adapter import BrokerExecutionAdapter
from forward_tester.market_data import MarketDataGateway
from forward_tester.models import (
    MarketStatus,
    SessionOutcome,
    SessionResult,
    SessionState,
    TradingSession,
)
from forward_tester.order_sizer import OrderSizer
from forward_tester.sandbox.strategy_sandbox import StrategySandbox
from forward_tester.signal_interpreter import SignalInterpreter

logger = logging.getLogger(__name__)
bot_actions_logger = logging.getLogger("bot_actions")


class SessionPipeline:
    """
    One session's pass through data -> strategy -> signal -> order.

    Stages run sequentially. Each stage catches engine errors at its boundary,
    writes an error audit entry and ends the pass with an ERROR outcome; the
    session itself stays active.
    """

    def __init__(
        self,
        market_data: MarketDataGateway,
        sandbox: StrategySandbox,
        interpreter: SignalInterpreter,
        sizer: OrderSizer,
        executor: BrokerExecutionAdapter,
        audit: AuditLog,
    ):
        self.market_data = market_data
        self.sandbox = sandbox
        self.interpreter = interpreter
        self.sizer = sizer
        self.executor = executor
        self.audit = audit

    def _fail(self, result: SessionResult, session: TradingSession, step: str, exc: Exception) -> SessionResult:
        detail = exc.to_dict() if isinstance(exc, ForwardTestingError) else {
            "error_type": type(exc).__name__,
            "error_message": str(exc),
        }
        result.states.append(SessionState.ERROR_LOGGED)
        logger.warning(f"{step} failed for session {session.id}: {exc}", extra={"session_id": session.id})
        self.audit.error(session, step, f"{step} failed: {exc}", **detail)
        result.outcome = SessionOutcome.ERROR
        result.detail = {"step": step, **detail}
        result.states.append(SessionState.ACTIVE)
        return result

    async def run(
        self,
        session: TradingSession,
        market_status: MarketStatus,
        tick_id: Optional[str] = None,
    ) -> SessionResult:
        result = SessionResult(session_id=session.id, outcome=SessionOutcome.NO_SIGNAL, states=[SessionState.ACTIVE])
        try:
            return await self._run_stages(session, market_status, result, tick_id or uuid.uuid4().hex[:12])
        except ForwardTestingError as exc:
            return self._fail(result, session, "PIPELINE", exc)
        except Exception as exc:
            logger.exception(f"Unexpected error in session {session.id}", extra={"session_id": session.id})
            return self._fail(result, session, "UNEXPECTED", exc)

    async def _run_stages(
        self,
        session: TradingSession,
        market_status: MarketStatus,
        result: SessionResult,
        tick_id: str,
    ) -> SessionResult:
        if not self.interpreter.should_execute(market_status, session):
            self.audit.info(
                session,
                "MARKET_CONDITIONS",
                f"Skipped: {market_status.volume_regime.value} volume and low-volume trading is disabled",
                market=market_status.to_dict(),
            )
            result.outcome = SessionOutcome.SKIPPED_MARKET_CONDITIONS
            result.detail = {"volume_regime": market_status.volume_regime.value}
            return result

        result.states.append(SessionState.EVALUATING)
        self.audit.info(
            session,
            "EVALUATION_START",
            f"Evaluating {session.strategy_name} on {session.symbol} {session.timeframe}",
            market=market_status.to_dict(),
            environment=session.environment.value,
        )

        try:
            candles = await self.market_data.fetch(session)
        except ForwardTestingError as exc:
            return self._fail(result, session, "DATA_FETCH", exc)
        last = candles.candles[-1]
        self.audit.info(
            session,
            "DATA_FETCHED",
            f"Fetched {len(candles)} {candles.timeframe} candles for {session.symbol}",
            candles=len(candles),
            last_time=last.time,
            last_close=last.close,
        )

        series = await self.sandbox.evaluate(session.strategy_code, candles)
        if series.error:
            return self._fail(result, session, "STRATEGY_EXECUTION", StrategyRuntimeError(series.error))
        self.audit.info(session, "STRATEGY_EXECUTED", "Strategy evaluated", **series.summary())

        signal = self.interpreter.interpret(series, session, market_status)
        if signal is None:
            self.audit.info(session, "NO_SIGNAL", "No actionable signal on the current bar", bar=len(series) - 1)
            result.outcome = SessionOutcome.NO_SIGNAL
            result.states.append(SessionState.ACTIVE)
            return result

        self.audit.info(
            session,
            "SIGNAL_DETECTED",
            f"{signal.direction.value} signal on bar {signal.bar_index}"
            + (" (reversed)" if signal.reversed else ""),
            direction=signal.direction.value,
            bar=signal.bar_index,
            confidence=signal.confidence,
            reversed=signal.reversed,
        )
        result.states.append(SessionState.EXECUTING)

        balance = await self._account_balance(session)
        # client id is unique per session and tick
        order = self.sizer.size(signal, session, balance, client_id=f"{session.id}-{tick_id}")
        self.audit.info(
            session,
            "ORDER_PREPARED",
            f"{order.direction.value} {abs(order.units)} {order.instrument}",
            order=order.to_payload(),
            balance=balance,
        )

        async def _on_retry(attempt: int, exc: BaseException, delay: float):
            detail = exc.to_dict() if isinstance(exc, ForwardTestingError) else {"error_message": str(exc)}
            self.audit.error(
                session,
                "ORDER_RETRY",
                f"Order attempt {attempt} failed: {exc}; retrying in {delay:.2f}s",
                attempt=attempt,
                delay=delay,
                **detail,
            )

        try:
            ack = await self.executor.submit_order(order, session.credentials, on_retry=_on_retry)
        except ForwardTestingError as exc:
            self.audit.trade(
                session,
                "TRADE_FAILED",
                f"{order.direction.value} {order.instrument} not executed: {exc}",
                success=False,
                units=order.units,
                **exc.to_dict(),
            )
            bot_actions_logger.info(f"❌ {session.strategy_name}: {order.direction.value} {order.instrument} failed ({exc})")
            return self._fail(result, session, "ORDER_SUBMIT", exc)

        self.audit.trade(
            session,
            "TRADE_EXECUTED",
            f"{order.direction.value} {abs(order.units)} {order.instrument} executed",
            success=True,
            direction=order.direction.value,
            units=order.units,
            reversed=signal.reversed,
            **ack.to_dict(),
        )
        bot_actions_logger.info(
            f"✅ {session.strategy_name}: {order.direction.value} {abs(order.units)} {order.instrument}"
            f" @ {ack.fill_price if ack.fill_price is not None else 'market'}"
        )
        result.outcome = SessionOutcome.TRADE_EXECUTED
        result.detail = {"order": order.to_payload(), "ack": ack.to_dict()}
        result.states.append(SessionState.ACTIVE)
        return result

    async def _account_balance(self, session: TradingSession) -> Optional[float]:
        try:
            summary = await self.executor.get_account_summary(session.credentials)
        except ForwardTestingError as exc:
            self.audit.info(
                session,
                "BALANCE_UNAVAILABLE",
                f"Account balance unavailable, using default units: {exc}",
                **exc.to_dict(),
            )
            return None
        balance = summary.get("balance")
        return float(balance) if balance is not None else None
