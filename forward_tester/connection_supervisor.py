import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from forward_tester.broker import BaseBroker
from forward_tester.config import RECONNECT_BASE_DELAY, RECONNECT_MAX_ATTEMPTS, RECONNECT_MAX_DELAY
from forward_tester.errors import AuthError, ConnectionFailedError, ForwardTestingError
from forward_tester.models import BrokerCredentials, ConnectionState
from forward_tester.oanda_broker import OandaBroker


class ConnectionSupervisor:
    """
    Owns the brokerage connection for one credential set.

    DISCONNECTED -> CONNECTING -> CONNECTED; an I/O failure moves CONNECTED to
    RECONNECTING, and the next caller reconnects with exponential backoff.
    Running out of attempts (or an auth failure) lands in FAILED, which blocks
    every caller until reconnect() succeeds.
    """

    def __init__(
        self,
        broker: BaseBroker,
        *,
        key: str = "-",
        max_attempts: int = RECONNECT_MAX_ATTEMPTS,
        base_delay: float = RECONNECT_BASE_DELAY,
        max_delay: float = RECONNECT_MAX_DELAY,
        record_health_state: Optional[Callable[[str, str, Optional[dict]], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.broker = broker
        self.key = key
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.record_health_state = record_health_state or (lambda *_: None)
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

        self.state = ConnectionState.DISCONNECTED
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self.account_summary: Optional[Dict[str, Any]] = None
        self._lock = asyncio.Lock()

    @property
    def is_live(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def is_failed(self) -> bool:
        return self.state == ConnectionState.FAILED

    def backoff_delay(self, failures: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** max(0, failures - 1)))

    def _transition(self, new_state: ConnectionState, detail: Optional[dict] = None) -> None:
        if new_state == self.state:
            return
        previous = self.state
        self.state = new_state
        self.logger.info(f"Connection {self.key}: {previous.value} -> {new_state.value}")
        payload = {"previous": previous.value, "failures": self.consecutive_failures}
        if detail:
            payload.update(detail)
        try:
            self.record_health_state(f"connection:{self.key}", new_state.value, payload)
        except Exception as exc:
            self.logger.debug(f"Could not record connection state for {self.key}: {exc}")

    async def ensure_connected(self) -> BaseBroker:
        """Return the broker once CONNECTED, connecting if required."""
        if self.is_live:
            return self.broker
        if self.is_failed:
            raise ConnectionFailedError(
                f"Connection {self.key} is FAILED ({self.last_error}); user reconnect required"
            )
        async with self._lock:
            # Another session may have settled the state while we waited
            if self.is_live:
                return self.broker
            if self.is_failed:
                raise ConnectionFailedError(
                    f"Connection {self.key} is FAILED ({self.last_error}); user reconnect required"
                )
            await self._connect_with_backoff()
        return self.broker

    async def _connect_with_backoff(self) -> None:
        if self.state == ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.CONNECTING)
        else:
            self._transition(ConnectionState.RECONNECTING)

        while True:
            try:
                self.account_summary = await self.broker.connect_async()
            except AuthError as exc:
                self.last_error = str(exc)
                self.consecutive_failures += 1
                self._transition(ConnectionState.FAILED, {"error": self.last_error, "reason": "auth"})
                raise ConnectionFailedError(f"Authentication failed for {self.key}: {exc}") from exc
            except ForwardTestingError as exc:
                self.last_error = str(exc)
                self.consecutive_failures += 1
                if self.consecutive_failures >= self.max_attempts:
                    self._transition(ConnectionState.FAILED, {"error": self.last_error})
                    raise ConnectionFailedError(
                        f"Gave up connecting {self.key} after {self.consecutive_failures} attempts: {exc}"
                    ) from exc
                delay = self.backoff_delay(self.consecutive_failures)
                self.logger.warning(
                    f"Connect attempt {self.consecutive_failures}/{self.max_attempts} for {self.key} failed: "
                    f"{exc}; retrying in {delay:.1f}s"
                )
                self._transition(ConnectionState.RECONNECTING, {"error": self.last_error})
                await self.sleep(delay)
                continue

            self.consecutive_failures = 0
            self.last_error = None
            self._transition(ConnectionState.CONNECTED)
            return

    async def report_failure(self, error: Exception | str | None = None) -> None:
        """Called by I/O users when a request fails at the transport level."""
        async with self._lock:
            if self.is_live:
                self.last_error = str(error) if error is not None else None
                self._transition(ConnectionState.RECONNECTING, {"error": self.last_error})

    async def reconnect(self) -> BaseBroker:
        """User-initiated reconnect; the only way out of FAILED."""
        async with self._lock:
            self.consecutive_failures = 0
            self.last_error = None
            self._transition(ConnectionState.DISCONNECTED, {"note": "manual reconnect"})
            await self._connect_with_backoff()
        return self.broker

    async def close(self) -> None:
        try:
            await self.broker.close()
        finally:
            self.state = ConnectionState.DISCONNECTED


class ConnectionRegistry:
    """Lazily builds one supervisor per credential set and shares it."""

    def __init__(
        self,
        broker_factory: Callable[[BrokerCredentials], BaseBroker] = OandaBroker,
        record_health_state: Optional[Callable[[str, str, Optional[dict]], None]] = None,
        supervisor_kwargs: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.broker_factory = broker_factory
        self.record_health_state = record_health_state
        self.supervisor_kwargs = supervisor_kwargs or {}
        self.logger = logger or logging.getLogger(__name__)
        self._supervisors: Dict[Tuple[str, str, str], ConnectionSupervisor] = {}

    def get(self, credentials: BrokerCredentials) -> ConnectionSupervisor:
        supervisor = self._supervisors.get(credentials.key)
        if supervisor is None:
            supervisor = ConnectionSupervisor(
                self.broker_factory(credentials),
                key=f"{credentials.environment.value}:{credentials.account_id}",
                record_health_state=self.record_health_state,
                logger=self.logger,
                **self.supervisor_kwargs,
            )
            self._supervisors[credentials.key] = supervisor
        return supervisor

    async def reconnect(self, credentials: BrokerCredentials) -> ConnectionSupervisor:
        supervisor = self.get(credentials)
        await supervisor.reconnect()
        return supervisor

    def states(self) -> Dict[str, str]:
        return {sup.key: sup.state.value for sup in self._supervisors.values()}

    async def close_all(self) -> None:
        for supervisor in list(self._supervisors.values()):
            try:
                await supervisor.close()
            except Exception as exc:
                self.logger.warning(f"Error closing connection {supervisor.key}: {exc}")
        self._supervisors.clear()
