import logging
from typing import Any, Dict, List, Optional

from forward_tester.database import TradingDatabase
from forward_tester.models import ExecutionRecord, LogType, TradingSession

logger = logging.getLogger(__name__)


class AuditLog:
    """
    Append-only record of every engine step.

    Each append is committed before returning, so a record is durable once
    append() has returned. Records for one session come back in append order.
    """

    def __init__(self, db: TradingDatabase):
        self.db = db

    def append(self, record: ExecutionRecord) -> int:
        row_id = self.db.insert_log(record)
        logger.debug(
            f"audit[{record.log_type.value}] {record.step} session={record.session_id}: {record.message}"
        )
        return row_id

    def record(
        self,
        session: Optional[TradingSession],
        step: str,
        log_type: LogType,
        message: str,
        trade_data: Optional[Dict[str, Any]] = None,
    ) -> ExecutionRecord:
        entry = ExecutionRecord(
            session_id=session.id if session else None,
            user_id=session.user_id if session else None,
            step=step,
            log_type=log_type,
            message=message,
            trade_data=dict(trade_data or {}),
        )
        self.append(entry)
        return entry

    def info(self, session: Optional[TradingSession], step: str, message: str, **trade_data) -> ExecutionRecord:
        return self.record(session, step, LogType.INFO, message, trade_data)

    def trade(self, session: TradingSession, step: str, message: str, **trade_data) -> ExecutionRecord:
        return self.record(session, step, LogType.TRADE, message, trade_data)

    def error(self, session: Optional[TradingSession], step: str, message: str, **trade_data) -> ExecutionRecord:
        return self.record(session, step, LogType.ERROR, message, trade_data)

    def records_for(self, session_id: str) -> List[Dict[str, Any]]:
        return self.db.get_logs(session_id=session_id)

    def system_records(self) -> List[Dict[str, Any]]:
        return [row for row in self.db.get_logs() if row["session_id"] is None]
