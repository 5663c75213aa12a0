import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from forward_tester.config import ORDER_MAX_ATTEMPTS
from forward_tester.connection_supervisor import ConnectionRegistry
from forward_tester.errors import NetworkError
from forward_tester.models import BrokerCredentials, Order, OrderAck
from forward_tester.retry import RetryPolicy

logger = logging.getLogger(__name__)

RetryHook = Callable[[int, BaseException, float], Optional[Awaitable[None]]]


class BrokerExecutionAdapter:
    """
    Submits orders and reads account state through supervised connections.

    Auth failures and venue rejections surface immediately; network failures
    and rate limits are retried, and each failed attempt is reported through
    `on_retry` so callers can audit it.
    """

    def __init__(
        self,
        connections: ConnectionRegistry,
        retry_policy: Optional[RetryPolicy] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.connections = connections
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=ORDER_MAX_ATTEMPTS)
        self.logger = logger or logging.getLogger(__name__)

    async def _call(self, credentials: BrokerCredentials, action: Callable[[Any], Awaitable[Any]]):
        supervisor = self.connections.get(credentials)
        broker = await supervisor.ensure_connected()
        try:
            return await action(broker)
        except NetworkError as exc:
            await supervisor.report_failure(exc)
            raise

    async def submit_order(
        self,
        order: Order,
        credentials: BrokerCredentials,
        on_retry: Optional[RetryHook] = None,
    ) -> OrderAck:
        self.logger.info(
            f"Submitting {order.direction.value} {abs(order.units)} {order.instrument} "
            f"for account {credentials.account_id}"
        )

        async def _attempt():
            return await self._call(credentials, lambda broker: broker.place_order_async(order))

        ack = await self.retry_policy.run(_attempt, on_retry=on_retry)
        self.logger.info(f"Order accepted: id={ack.order_id} fill={ack.fill_price}")
        return ack

    async def get_account_summary(self, credentials: BrokerCredentials) -> Dict[str, Any]:
        return await self._call(credentials, lambda broker: broker.get_account_summary_async())

    async def get_open_positions(self, credentials: BrokerCredentials) -> List[Dict[str, Any]]:
        return await self._call(credentials, lambda broker: broker.get_positions_async())
