import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from forward_tester.audit_log import AuditLog
from forward_tester.config import (
    DATA_MAX_ATTEMPTS,
    ENGINE_VERSION,
    LOOP_INTERVAL_SECONDS,
    ORDER_MAX_ATTEMPTS,
    RETRY_BASE_DELAY,
    RETRY_MAX_DELAY,
)
from forward_tester.connection_supervisor import ConnectionRegistry
from forward_tester.database import TradingDatabase
from forward_tester.execution_adapter import BrokerExecutionAdapter
from forward_tester.logger_config import setup_logging
from forward_tester.market_clock import MarketClock
from forward_tester.market_data import MarketDataGateway
from forward_tester.order_sizer import OrderSizer
from forward_tester.pipeline import SessionPipeline
from forward_tester.retry import RetryPolicy, exponential_backoff
from forward_tester.sandbox.strategy_sandbox import StrategySandbox
from forward_tester.scheduler import SessionScheduler
from forward_tester.signal_interpreter import SignalInterpreter

logger = logging.getLogger(__name__)
bot_actions_logger = logging.getLogger("bot_actions")


@dataclass
class Engine:
    scheduler: SessionScheduler
    db: TradingDatabase
    connections: ConnectionRegistry

    async def cleanup(self):
        logger.info("Cleaning up connections...")
        await self.connections.close_all()
        self.db.close()


def build_engine(db_path: Optional[str] = None) -> Engine:
    """Construct every collaborator once and wire them explicitly."""
    db = TradingDatabase(db_path)

    def record_health_state(key: str, value: str, detail: Optional[dict] = None):
        db.set_health_state(key, value, json.dumps(detail, default=str) if detail else None)

    connections = ConnectionRegistry(record_health_state=record_health_state)
    backoff = exponential_backoff(RETRY_BASE_DELAY, RETRY_MAX_DELAY)
    audit = AuditLog(db)

    pipeline = SessionPipeline(
        market_data=MarketDataGateway(connections, retry_policy=RetryPolicy(DATA_MAX_ATTEMPTS, backoff)),
        sandbox=StrategySandbox(),
        interpreter=SignalInterpreter(),
        sizer=OrderSizer(),
        executor=BrokerExecutionAdapter(connections, retry_policy=RetryPolicy(ORDER_MAX_ATTEMPTS, backoff)),
        audit=audit,
    )
    scheduler = SessionScheduler(MarketClock(), db, pipeline, audit)
    return Engine(scheduler=scheduler, db=db, connections=connections)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Forward-testing execution engine")
    parser.add_argument("--once", action="store_true", help="run a single tick and exit")
    parser.add_argument("--db", default=None, help="path to the SQLite store (default: TRADING_DB_PATH)")
    parser.add_argument("--log-dir", default=None, help="directory for log files")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_dir)
    engine = build_engine(args.db)
    scheduler = engine.scheduler

    bot_actions_logger.info(f"⚙️ Forward tester {ENGINE_VERSION} starting")

    def signal_handler(sig, frame):
        """Handle Ctrl+C gracefully"""
        logger.info("Received shutdown signal, stopping scheduler...")
        bot_actions_logger.info("🛑 Forward tester shutting down...")
        scheduler.request_stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if args.once:
            summary = await scheduler.tick()
            logger.info(f"Tick {summary.tick_id} finished: {summary.counts()}")
        else:
            logger.info(f"Running every {LOOP_INTERVAL_SECONDS}s")
            await scheduler.run_forever()
    finally:
        await engine.cleanup()
        logger.info("Forward tester stopped")
    return 0


def run():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nForward tester stopped by user")
        sys.exit(0)


if __name__ == "__main__":
    run()
