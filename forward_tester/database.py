import json
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from forward_tester.models import (
    BrokerCredentials,
    Environment,
    ExecutionRecord,
    RiskParameters,
    TradingSession,
)

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.debug(f"Unparsable timestamp in store: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TradingDatabase:
    """SQLite store for forward-testing sessions and their execution log."""

    def __init__(self, db_path: Optional[str] = None):
        # Allow tests or env overrides to point at an isolated database
        self.db_path = db_path or os.getenv("TRADING_DB_PATH", "forward_testing.db")
        self.conn = None
        self.initialize_database()

    @staticmethod
    def _column_exists(cursor: sqlite3.Cursor, table: str, column: str) -> bool:
        cursor.execute(f"PRAGMA table_info({table})")
        return any(row["name"] == column for row in cursor.fetchall())

    def _ensure_column(self, cursor: sqlite3.Cursor, table: str, column_def: str):
        """Add a column if it is missing (idempotent for schema upgrades)."""
        column_name = column_def.split()[0]
        if not self._column_exists(cursor, table, column_name):
            cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column_def}")

    def initialize_database(self):
        """Create database and tables if they don't exist."""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS trading_sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                strategy_id TEXT,
                strategy_name TEXT NOT NULL,
                strategy_code TEXT NOT NULL,
                symbol TEXT NOT NULL,
                timeframe TEXT NOT NULL,
                oanda_account_id TEXT NOT NULL,
                oanda_api_key TEXT NOT NULL,
                environment TEXT NOT NULL DEFAULT 'practice',
                risk_per_trade REAL DEFAULT 2.0,
                stop_loss REAL DEFAULT 40,
                take_profit REAL DEFAULT 80,
                max_position_size INTEGER DEFAULT 100000,
                is_active INTEGER DEFAULT 1,
                last_execution TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)
        self._ensure_column(cursor, "trading_sessions", "reverse_signals INTEGER DEFAULT 0")
        self._ensure_column(cursor, "trading_sessions", "avoid_low_volume INTEGER DEFAULT 0")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS trading_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT,
                user_id TEXT,
                step TEXT,
                log_type TEXT NOT NULL,
                message TEXT NOT NULL,
                trade_data TEXT,
                timestamp TEXT NOT NULL
            )
        """)
        try:
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_trading_logs_session_ts ON trading_logs (session_id, timestamp)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_trading_sessions_user_active ON trading_sessions (user_id, is_active)"
            )
        except Exception as exc:
            logger.debug(f"Could not create indexes: {exc}")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS health_state (
                key TEXT PRIMARY KEY,
                value TEXT,
                detail TEXT,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self.conn.commit()
        logger.info(f"Database initialized at {self.db_path}")

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> TradingSession:
        return TradingSession(
            id=row["id"],
            user_id=row["user_id"],
            strategy_id=row["strategy_id"],
            strategy_name=row["strategy_name"],
            strategy_code=row["strategy_code"],
            symbol=row["symbol"],
            timeframe=row["timeframe"],
            credentials=BrokerCredentials(
                account_id=row["oanda_account_id"],
                api_key=row["oanda_api_key"],
                environment=Environment(row["environment"] or Environment.PRACTICE.value),
            ),
            risk=RiskParameters(
                risk_per_trade=float(row["risk_per_trade"] if row["risk_per_trade"] is not None else 2.0),
                stop_loss=float(row["stop_loss"] if row["stop_loss"] is not None else 40),
                take_profit=float(row["take_profit"] if row["take_profit"] is not None else 80),
                max_position_size=int(row["max_position_size"] or 100000),
            ),
            reverse_signals=bool(row["reverse_signals"]),
            avoid_low_volume=bool(row["avoid_low_volume"]),
            is_active=bool(row["is_active"]),
            last_execution=_parse_timestamp(row["last_execution"]),
        )

    def create_session(self, session: TradingSession) -> str:
        """Persist a new session; returns its id (generated when blank)."""
        session_id = session.id or str(uuid.uuid4())
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO trading_sessions (
                id, user_id, strategy_id, strategy_name, strategy_code, symbol, timeframe,
                oanda_account_id, oanda_api_key, environment,
                risk_per_trade, stop_loss, take_profit, max_position_size,
                reverse_signals, avoid_low_volume, is_active, last_execution, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session_id,
                session.user_id,
                session.strategy_id,
                session.strategy_name,
                session.strategy_code,
                session.symbol,
                session.timeframe,
                session.credentials.account_id,
                session.credentials.api_key,
                session.credentials.environment.value,
                session.risk.risk_per_trade,
                session.risk.stop_loss,
                session.risk.take_profit,
                session.risk.max_position_size,
                int(session.reverse_signals),
                int(session.avoid_low_volume),
                int(session.is_active),
                session.last_execution.isoformat() if session.last_execution else None,
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        self.conn.commit()
        logger.debug(f"Created trading session {session_id} for user {session.user_id}")
        return session_id

    def get_session(self, session_id: str) -> Optional[TradingSession]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM trading_sessions WHERE id = ?", (session_id,))
        row = cursor.fetchone()
        return self._row_to_session(row) if row else None

    def get_active_sessions(self, user_id: Optional[str] = None) -> List[TradingSession]:
        """Active sessions, newest first; all users when user_id is None."""
        cursor = self.conn.cursor()
        if user_id is None:
            cursor.execute(
                "SELECT * FROM trading_sessions WHERE is_active = 1 ORDER BY created_at DESC, rowid DESC"
            )
        else:
            cursor.execute(
                """
                SELECT * FROM trading_sessions
                WHERE is_active = 1 AND user_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (user_id,),
            )
        return [self._row_to_session(row) for row in cursor.fetchall()]

    def get_sessions(self, user_id: str) -> List[TradingSession]:
        """Every session of a user, active or not, newest first."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM trading_sessions WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
            (user_id,),
        )
        return [self._row_to_session(row) for row in cursor.fetchall()]

    def deactivate_sessions(self, user_id: str, session_id: Optional[str] = None) -> int:
        """Soft-stop one session or every session of a user. Returns rows changed."""
        cursor = self.conn.cursor()
        if session_id is None:
            cursor.execute(
                "UPDATE trading_sessions SET is_active = 0 WHERE user_id = ? AND is_active = 1",
                (user_id,),
            )
        else:
            cursor.execute(
                "UPDATE trading_sessions SET is_active = 0 WHERE user_id = ? AND id = ?",
                (user_id, session_id),
            )
        self.conn.commit()
        return cursor.rowcount

    def update_last_execution(self, session_id: str, timestamp: datetime):
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE trading_sessions SET last_execution = ? WHERE id = ?",
            (timestamp.isoformat(), session_id),
        )
        self.conn.commit()

    def insert_log(self, record: ExecutionRecord) -> int:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO trading_logs (session_id, user_id, step, log_type, message, trade_data, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.session_id,
                record.user_id,
                record.step,
                record.log_type.value,
                record.message,
                json.dumps(record.trade_data, default=str),
                record.timestamp.isoformat(),
            ),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get_logs(
        self,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        log_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Log rows in append order with trade_data decoded."""
        clauses = []
        params: List[Any] = []
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if log_type is not None:
            clauses.append("log_type = ?")
            params.append(log_type)

        query = "SELECT * FROM trading_logs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        cursor = self.conn.cursor()
        cursor.execute(query, params)
        rows = []
        for row in cursor.fetchall():
            entry = dict(row)
            try:
                entry["trade_data"] = json.loads(entry["trade_data"]) if entry["trade_data"] else {}
            except ValueError:
                entry["trade_data"] = {"raw": entry["trade_data"]}
            rows.append(entry)
        return rows

    def set_health_state(self, key: str, value: str, detail: str = None):
        """Upsert health state key/value with optional detail JSON/text."""
        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO health_state (key, value, detail, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET
                value=excluded.value,
                detail=excluded.detail,
                updated_at=CURRENT_TIMESTAMP
        """, (key, value, detail))
        self.conn.commit()

    def get_health_state(self) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT key, value, detail, updated_at FROM health_state ORDER BY key")
        return [dict(row) for row in cursor.fetchall()]

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed")
