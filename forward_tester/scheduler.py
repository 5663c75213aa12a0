import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from forward_tester.audit_log import AuditLog
from forward_tester.config import LOOP_INTERVAL_SECONDS, MAX_CONCURRENT_SESSIONS, TICK_DEADLINE_SECONDS
from forward_tester.database import TradingDatabase
from forward_tester.logger_config import set_logging_context
from forward_tester.market_clock import MarketClock, format_status
from forward_tester.models import (
    LogType,
    MarketStatus,
    SessionOutcome,
    SessionResult,
    SessionState,
    TradingSession,
)
from forward_tester.pipeline import SessionPipeline

logger = logging.getLogger(__name__)
bot_actions_logger = logging.getLogger("bot_actions")
telemetry_logger = logging.getLogger("telemetry")


@dataclass
class TickSummary:
    tick_id: str
    started_at: datetime
    market_status: MarketStatus
    results: List[SessionResult] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        counts = {outcome.value: 0 for outcome in SessionOutcome}
        for result in self.results:
            counts[result.outcome.value] += 1
        return counts


class SessionScheduler:
    """
    Periodic driver for every active forward-testing session.

    A tick computes the market status once, skips entirely when the venue is
    closed, otherwise runs each active session's pipeline with bounded
    concurrency and, once all of them have settled, stamps last_execution and
    writes one terminal audit record per session.
    """

    def __init__(
        self,
        clock: MarketClock,
        store: TradingDatabase,
        pipeline: SessionPipeline,
        audit: AuditLog,
        *,
        interval: float = LOOP_INTERVAL_SECONDS,
        tick_deadline: float = TICK_DEADLINE_SECONDS,
        max_concurrency: int = MAX_CONCURRENT_SESSIONS,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.clock = clock
        self.store = store
        self.pipeline = pipeline
        self.audit = audit
        self.interval = interval
        self.tick_deadline = tick_deadline
        self.max_concurrency = max(1, max_concurrency)
        self._now = now or (lambda: datetime.now(timezone.utc))

        self.running = False
        self.ticks_started = 0
        self.ticks_suppressed = 0
        self.last_summary: Optional[TickSummary] = None
        self._inflight: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def _emit_telemetry(self, record: dict):
        """Emit structured telemetry as JSON line."""
        try:
            telemetry_logger.info(json.dumps(record, default=str))
        except Exception as e:
            logger.debug(f"Telemetry emit failed: {e}")

    async def tick(self, now: Optional[datetime] = None) -> TickSummary:
        tick_id = uuid.uuid4().hex[:12]
        set_logging_context(tick_id=tick_id)
        started = time.monotonic()
        now = now or self._now()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        self.ticks_started += 1

        status = self.clock.status(now)
        summary = TickSummary(tick_id=tick_id, started_at=now, market_status=status)

        if not status.is_open:
            self.audit.info(
                None,
                SessionOutcome.SKIPPED_MARKET_CONDITIONS.value,
                f"{format_status(status)}; next open {status.next_transition.isoformat()}",
                tick_id=tick_id,
                market=status.to_dict(),
            )
            bot_actions_logger.info(f"💤 {format_status(status)}; tick skipped")
            self._finish(summary, started, sessions=0)
            return summary

        sessions = self.store.get_active_sessions()
        logger.info(f"Tick {tick_id}: {format_status(status)}, {len(sessions)} active session(s)")

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _guarded(session: TradingSession) -> SessionResult:
            async with semaphore:
                return await self.pipeline.run(session, status, tick_id=tick_id)

        settled = await asyncio.gather(*(_guarded(s) for s in sessions), return_exceptions=True)

        for session, outcome in zip(sessions, settled):
            if isinstance(outcome, SessionResult):
                result = outcome
            elif isinstance(outcome, Exception):
                logger.error(f"Session {session.id} pipeline raised: {outcome}", extra={"session_id": session.id})
                result = SessionResult(
                    session_id=session.id,
                    outcome=SessionOutcome.ERROR,
                    detail={"error_type": type(outcome).__name__, "error_message": str(outcome)},
                    states=[SessionState.ACTIVE, SessionState.ERROR_LOGGED, SessionState.ACTIVE],
                )
            else:
                raise outcome
            summary.results.append(result)
            self._finalize_session(session, result, tick_id, now)

        self._finish(summary, started, sessions=len(sessions))
        return summary

    def _finalize_session(self, session: TradingSession, result: SessionResult, tick_id: str, now: datetime):
        """Stamp last_execution and write the terminal record; failures stay local to this session."""
        try:
            self.store.update_last_execution(session.id, now)
        except Exception as exc:
            logger.error(f"Could not update last_execution for {session.id}: {exc}", extra={"session_id": session.id})

        log_type = LogType.ERROR if result.outcome == SessionOutcome.ERROR else LogType.INFO
        try:
            self.audit.record(
                session,
                result.outcome.value,
                log_type,
                f"Tick {tick_id} finished for {session.strategy_name}: {result.outcome.value}",
                {"tick_id": tick_id, "states": [s.value for s in result.states], **result.detail},
            )
        except Exception as exc:
            logger.error(f"Could not write terminal record for {session.id}: {exc}", extra={"session_id": session.id})

    def _finish(self, summary: TickSummary, started: float, sessions: int):
        self.last_summary = summary
        counts = summary.counts()
        self._emit_telemetry(
            {
                "event": "tick",
                "tick_id": summary.tick_id,
                "at": summary.started_at.isoformat(),
                "market_open": summary.market_status.is_open,
                "volume_regime": summary.market_status.volume_regime.value,
                "sessions": sessions,
                "outcomes": counts,
                "duration_ms": int((time.monotonic() - started) * 1000),
            }
        )
        if summary.results:
            bot_actions_logger.info(
                f"🔁 Tick {summary.tick_id}: "
                + ", ".join(f"{k}={v}" for k, v in counts.items() if v)
            )

    @property
    def tick_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @staticmethod
    def _log_tick_failure(task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Tick failed: {exc}", exc_info=exc)

    async def run_once_guarded(self) -> Optional[TickSummary]:
        """
        Start a tick unless the previous one is still running.

        The tick is awaited up to the deadline; past it, the work is left to
        finish in the background and later calls are suppressed until it has.
        """
        if self.tick_in_flight:
            self.ticks_suppressed += 1
            logger.warning("Previous tick still running; suppressing this tick")
            bot_actions_logger.info("⏭️ Previous tick still running; skipped")
            return None

        self._inflight = asyncio.create_task(self.tick())
        self._inflight.add_done_callback(self._log_tick_failure)
        try:
            return await asyncio.wait_for(asyncio.shield(self._inflight), timeout=self.tick_deadline)
        except asyncio.TimeoutError:
            logger.warning(f"Tick exceeded {self.tick_deadline}s deadline; letting it settle in the background")
            return None
        except Exception:
            # already logged by the done callback
            return None

    async def run_forever(self, max_ticks: Optional[int] = None):
        """Main loop. Ends after the current tick once request_stop() is called."""
        self.running = True
        self._stop_event.clear()
        bot_actions_logger.info(f"🚀 Forward-testing scheduler started (every {self.interval}s)")
        ticks = 0
        try:
            while self.running:
                await self.run_once_guarded()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                if not self.running:
                    break
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.running = False
            if self.tick_in_flight:
                logger.info("Waiting for in-flight tick to settle before exit")
                await asyncio.wait([self._inflight])
            bot_actions_logger.info("🛑 Forward-testing scheduler stopped")

    def request_stop(self):
        self.running = False
        self._stop_event.set()
