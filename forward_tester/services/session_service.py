import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd

from forward_tester.config import (
    DEFAULT_MAX_POSITION_SIZE,
    DEFAULT_RISK_PER_TRADE,
    DEFAULT_STOP_LOSS_PIPS,
    DEFAULT_TAKE_PROFIT_PIPS,
)
from forward_tester.connection_supervisor import ConnectionRegistry
from forward_tester.database import TradingDatabase
from forward_tester.market_data import normalize_granularity
from forward_tester.models import (
    BrokerCredentials,
    ConnectionState,
    Environment,
    LogType,
    RiskParameters,
    TradingSession,
)

logger = logging.getLogger(__name__)
bot_actions_logger = logging.getLogger("bot_actions")


def default_risk() -> RiskParameters:
    return RiskParameters(
        risk_per_trade=DEFAULT_RISK_PER_TRADE,
        stop_loss=DEFAULT_STOP_LOSS_PIPS,
        take_profit=DEFAULT_TAKE_PROFIT_PIPS,
        max_position_size=DEFAULT_MAX_POSITION_SIZE,
    )


class ForwardTestingService:
    """User-facing operations on forward-testing sessions."""

    def __init__(self, db: TradingDatabase, connections: Optional[ConnectionRegistry] = None):
        self.db = db
        self.connections = connections

    def start_session(
        self,
        user_id: str,
        strategy_id: Optional[str],
        strategy_name: str,
        strategy_code: str,
        symbol: str,
        timeframe: str,
        account_id: str,
        api_key: str,
        environment: str = Environment.PRACTICE.value,
        *,
        risk: Optional[RiskParameters] = None,
        reverse_signals: bool = False,
        avoid_low_volume: bool = False,
    ) -> TradingSession:
        """
        Register a new active session.

        Raises ValueError for an unknown environment or timeframe, or missing
        credentials.
        """
        if not account_id or not api_key:
            raise ValueError("OANDA account id and API key are required")
        normalize_granularity(timeframe)

        session = TradingSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            strategy_id=strategy_id,
            strategy_name=strategy_name,
            strategy_code=strategy_code,
            symbol=symbol,
            timeframe=timeframe,
            credentials=BrokerCredentials(
                account_id=account_id,
                api_key=api_key,
                environment=Environment(environment),
            ),
            risk=risk or default_risk(),
            reverse_signals=reverse_signals,
            avoid_low_volume=avoid_low_volume,
            is_active=True,
            last_execution=datetime.now(timezone.utc),
        )
        self.db.create_session(session)
        bot_actions_logger.info(f"▶️ Forward test started: {strategy_name} on {symbol} {timeframe} ({environment})")
        return session

    def stop_session(self, user_id: str, session_id: Optional[str] = None) -> int:
        """Deactivate one session, or every session of the user when session_id is None."""
        stopped = self.db.deactivate_sessions(user_id, session_id)
        logger.info(f"Stopped {stopped} forward-testing session(s) for user {user_id}")
        if stopped:
            bot_actions_logger.info(f"⏹️ Forward test stopped ({stopped} session(s))")
        return stopped

    def get_active_sessions(self, user_id: str) -> List[TradingSession]:
        sessions = self.db.get_active_sessions(user_id)
        logger.debug(f"Found {len(sessions)} active forward-testing session(s) for {user_id}")
        return sessions

    def get_stats(self, user_id: str) -> Dict[str, Any]:
        """Trade totals from the audit log plus the most recent execution time."""
        logs = pd.DataFrame(self.db.get_logs(user_id=user_id, log_type=LogType.TRADE.value))
        if logs.empty:
            successful = failed = total = 0
        else:
            outcome = logs["trade_data"].map(
                lambda data: data.get("success") if isinstance(data, dict) else None
            )
            total = int(len(logs))
            successful = int(outcome.map(lambda v: v is True).sum())
            failed = int(outcome.map(lambda v: v is False).sum())

        executions = pd.to_datetime(
            pd.Series([s.last_execution for s in self.db.get_sessions(user_id)], dtype="object"),
            utc=True,
        )
        latest = executions.max() if not executions.empty else None

        return {
            "total_trades": total,
            "successful_trades": successful,
            "failed_trades": failed,
            "last_execution": None if latest is None or pd.isna(latest) else latest.isoformat(),
        }

    async def reconnect(self, user_id: str, session_id: str) -> ConnectionState:
        """User-initiated reconnect for the credentials behind a session."""
        if self.connections is None:
            raise RuntimeError("No connection registry configured")
        session = self.db.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise ValueError(f"Unknown session {session_id}")
        supervisor = await self.connections.reconnect(session.credentials)
        bot_actions_logger.info(f"🔌 Reconnected {supervisor.key}")
        return supervisor.state
