import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from forward_tester.broker import BaseBroker
from forward_tester.errors import AuthError, BrokerError, ForwardTestingError, NetworkError, RateLimited
from forward_tester.models import BrokerCredentials, CandleSeries
from forward_tester.oanda_broker import OandaBroker
from forward_tester.sandbox.strategy_sandbox import StrategySandbox
from forward_tester.sandbox.worker import PolicyViolation, check_source

logger = logging.getLogger(__name__)

RESULT_MARKERS = ("strategy_logic", "result", "entry")


def friendly_broker_error(exc: Exception) -> str:
    """Map a broker failure to a message a strategy author can act on."""
    status = getattr(exc, "status", None)
    if status == 401:
        return "Invalid API key. Please check your OANDA API credentials and ensure the token is active."
    if status == 403:
        return "Access forbidden. Please verify your API key has proper permissions."
    if status == 404:
        return "Account not found. Please verify your Account ID is correct."
    if isinstance(exc, AuthError):
        return "Invalid API key. Please check your OANDA API credentials and ensure the token is active."
    if isinstance(exc, RateLimited):
        return "OANDA is rate limiting requests. Please wait a moment and try again."
    if isinstance(exc, NetworkError):
        return "Network error. Please check your internet connection and try again."
    return f"OANDA connection failed: {exc}"


class ForwardTestingDiagnostics:
    """Pre-flight checks run before (or instead of) starting a forward test."""

    def __init__(
        self,
        sandbox: Optional[StrategySandbox] = None,
        broker_factory: Callable[[BrokerCredentials], BaseBroker] = OandaBroker,
    ):
        self.sandbox = sandbox or StrategySandbox()
        self.broker_factory = broker_factory

    def check_strategy_source(self, code: str) -> Dict[str, Any]:
        if not code or not code.strip():
            return {"valid": False, "error": "Strategy code is empty"}
        try:
            check_source(code)
        except SyntaxError as exc:
            return {"valid": False, "error": f"Strategy syntax error: {exc.msg} (line {exc.lineno})"}
        except PolicyViolation as exc:
            return {"valid": False, "error": f"Strategy rejected by sandbox policy: {exc}"}

        if not any(marker in code for marker in RESULT_MARKERS):
            return {
                "valid": False,
                "error": "Strategy must define a strategy_logic function or a result/entry variable",
            }
        if "BUY" not in code and "SELL" not in code:
            return {"valid": False, "error": "Strategy must generate BUY or SELL signals"}
        return {"valid": True, "message": "Strategy structure looks valid"}

    async def dry_run(self, code: str, candles: CandleSeries) -> Dict[str, Any]:
        """Run the strategy once in the sandbox and summarize what it signalled."""
        series = await self.sandbox.evaluate(code, candles)
        summary = series.summary()
        last = len(series) - 1
        summary["last_bar_entry"] = bool(series.entry[last]) if last >= 0 else False
        summary["last_bar_direction"] = series.direction[last] if last >= 0 else None
        return {"valid": series.error is None, **summary}

    async def check_broker_connection(self, credentials: Optional[BrokerCredentials]) -> Dict[str, Any]:
        if credentials is None or not credentials.account_id or not credentials.api_key:
            return {"connected": False, "error": "OANDA credentials missing"}

        broker = self.broker_factory(credentials)
        try:
            summary = await broker.connect_async()
        except BrokerError as exc:
            logger.info(f"Connection test failed for {credentials.account_id}: {exc}")
            return {"connected": False, "error": friendly_broker_error(exc), "detail": exc.to_dict()}
        except ForwardTestingError as exc:
            return {"connected": False, "error": f"Connection test failed: {exc}", "detail": exc.to_dict()}
        finally:
            await broker.close()
        return {"connected": True, "message": "OANDA connection successful", "account": summary}

    async def run_full_diagnostics(
        self,
        code: str,
        credentials: Optional[BrokerCredentials],
        candles: Optional[CandleSeries] = None,
    ) -> Dict[str, Any]:
        logger.info("Running full forward testing diagnostics")
        results: Dict[str, Any] = {
            "strategy": self.check_strategy_source(code),
            "oanda": await self.check_broker_connection(credentials),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if candles is not None and results["strategy"]["valid"]:
            results["dry_run"] = await self.dry_run(code, candles)
        return results
