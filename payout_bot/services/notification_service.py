"""Relay of realtime deposit events into Telegram chats.

``SubscriptionRegistry`` owns one realtime connection per organization channel.
Each subscription has a single consumer task draining its client's event
queue, so events of one channel are handled in the order they arrived.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from payout_bot.logging_config import LoggerAdapter, get_logger, mask_token
from payout_bot.schemas.notification import DepositNotification, RealtimeEvent, RealtimeEventType
from payout_bot.schemas.session import SessionData
from payout_bot.services.bot_messages import format_deposit_notification
from payout_bot.services.payments_client import PaymentsClient
from payout_bot.services.realtime_client import RealtimeClient
from payout_bot.services.session_service import list_authenticated_sessions
from payout_bot.services.telegram_service import TelegramService

logger = get_logger("notification_service")

ClientFactory = Callable[[str], RealtimeClient]


def channel_name(organization_id: str) -> str:
    return f"private-org-{organization_id}"


@dataclass
class Subscription:
    organization_id: str
    chat_id: int
    channel: str
    client: RealtimeClient
    log: LoggerAdapter
    consumer: Optional[asyncio.Task] = None
    timers: set = field(default_factory=set)
    resubscribe_attempted: bool = False


class SubscriptionRegistry:
    def __init__(
        self,
        telegram: TelegramService,
        payments: PaymentsClient,
        pusher_key: str = "",
        pusher_cluster: str = "",
        client_factory: Optional[ClientFactory] = None,
        reconnect_delay: float = 5.0,
        resubscribe_delay: float = 5.0,
        delivery_retry_delay: float = 2.0,
    ):
        self.telegram = telegram
        self.payments = payments
        self.pusher_key = pusher_key
        self.pusher_cluster = pusher_cluster
        self.client_factory = client_factory or self._default_client
        self.reconnect_delay = reconnect_delay
        self.resubscribe_delay = resubscribe_delay
        self.delivery_retry_delay = delivery_retry_delay
        self._subscriptions: dict[str, Subscription] = {}
        self._confirmed: set[str] = set()
        self._deliveries: set[asyncio.Task] = set()

    def _default_client(self, auth_token: str) -> RealtimeClient:
        async def authorize(socket_id: str, channel: str) -> dict:
            return await asyncio.to_thread(self.payments.authenticate_realtime, auth_token, socket_id, channel)

        return RealtimeClient(self.pusher_key, self.pusher_cluster, authorize)

    @property
    def active_channels(self) -> set[str]:
        """Channels whose subscription the push service confirmed."""
        return set(self._confirmed)

    def is_subscribed(self, organization_id: str) -> bool:
        return channel_name(organization_id) in self._subscriptions

    async def subscribe(self, organization_id: str, chat_id: int, auth_token: str) -> Subscription:
        """Open the organization's channel, replacing any existing subscription to it."""
        channel = channel_name(organization_id)
        if channel in self._subscriptions:
            logger.info(f"Replacing existing subscription for {channel}")
            await self._teardown(channel)

        client = self.client_factory(auth_token)
        subscription = Subscription(
            organization_id=organization_id,
            chat_id=chat_id,
            channel=channel,
            client=client,
            log=LoggerAdapter(logger, {"channel": channel, "chat_id": chat_id}),
        )
        self._subscriptions[channel] = subscription
        subscription.consumer = asyncio.create_task(self._consume(subscription))

        subscription.log.info("Subscribing", context={"auth_token": mask_token(auth_token)})
        await client.connect()
        await client.subscribe(channel)
        return subscription

    async def unsubscribe(self, organization_id: str) -> None:
        await self._teardown(channel_name(organization_id))

    async def shutdown_all(self) -> None:
        channels = list(self._subscriptions)
        for channel in channels:
            await self._teardown(channel)
        logger.info(f"Closed {len(channels)} realtime subscriptions")

    async def replay_persisted_sessions(self, db: Session) -> int:
        """Re-open channels for every stored session that is logged in."""
        rows = list_authenticated_sessions(db)
        logger.info(f"Found {len(rows)} authenticated sessions to resubscribe")

        count = 0
        for row in rows:
            try:
                session = SessionData.from_document(row.session_data)
            except ValidationError as e:
                logger.warning(f"Skipping unreadable session for user {row.user_id}: {e}")
                continue
            try:
                await self.subscribe(session.organization_id, row.chat_id, session.auth_token)
                count += 1
            except Exception as e:
                logger.error(
                    "Failed to restore subscription",
                    extra={"context": {"user_id": row.user_id, "error": str(e)}},
                )
        return count

    async def _teardown(self, channel: str) -> None:
        subscription = self._subscriptions.pop(channel, None)
        self._confirmed.discard(channel)
        if not subscription:
            return

        for timer in subscription.timers:
            timer.cancel()
        subscription.timers.clear()

        try:
            await subscription.client.unsubscribe(channel)
            await subscription.client.disconnect()
        except Exception as e:
            subscription.log.warning(f"Error while closing subscription: {e}")

        consumer = subscription.consumer
        if consumer and consumer is not asyncio.current_task() and not consumer.done():
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        subscription.log.info("Unsubscribed")

    def _is_current(self, subscription: Subscription) -> bool:
        return self._subscriptions.get(subscription.channel) is subscription

    def _schedule(self, subscription: Subscription, coro) -> None:
        task = asyncio.create_task(coro)
        subscription.timers.add(task)
        task.add_done_callback(subscription.timers.discard)

    async def _consume(self, subscription: Subscription) -> None:
        while self._is_current(subscription):
            event = await subscription.client.events.get()
            try:
                await self._handle_event(subscription, event)
            except Exception as e:
                subscription.log.error(f"Failed to handle realtime event {event.type.value}: {e}", exc_info=True)

    async def _handle_event(self, subscription: Subscription, event: RealtimeEvent) -> None:
        log = subscription.log

        if event.type in (RealtimeEventType.CONNECTING, RealtimeEventType.CONNECTED):
            log.info(f"Realtime connection {event.type.value}")

        elif event.type == RealtimeEventType.DISCONNECTED:
            log.warning(f"Realtime connection lost, reconnecting in {self.reconnect_delay}s")
            self._schedule(subscription, self._reconnect_later(subscription))

        elif event.type == RealtimeEventType.ERROR:
            log.error("Realtime connection error", context={"error": event.error})

        elif event.type == RealtimeEventType.SUBSCRIPTION_SUCCEEDED:
            self._confirmed.add(subscription.channel)
            subscription.resubscribe_attempted = False
            log.info("Subscription succeeded")

        elif event.type == RealtimeEventType.SUBSCRIPTION_ERROR:
            self._confirmed.discard(subscription.channel)
            log.error("Subscription error", context={"error": event.error})
            if subscription.client.connected and not subscription.resubscribe_attempted:
                subscription.resubscribe_attempted = True
                self._schedule(subscription, self._resubscribe_later(subscription))
            else:
                await self._teardown(subscription.channel)

        elif event.type == RealtimeEventType.CHANNEL_EVENT and event.name == "deposit":
            task = asyncio.create_task(self.deliver_deposit(subscription.chat_id, event.data))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)

        else:
            log.debug(f"Ignoring channel event {event.name}")

    async def _reconnect_later(self, subscription: Subscription) -> None:
        await asyncio.sleep(self.reconnect_delay)
        if self._is_current(subscription):
            subscription.log.info("Attempting to reconnect")
            await subscription.client.connect()

    async def _resubscribe_later(self, subscription: Subscription) -> None:
        await asyncio.sleep(self.resubscribe_delay)
        if self._is_current(subscription) and subscription.client.connected:
            subscription.log.info("Attempting to resubscribe")
            await subscription.client.subscribe(subscription.channel)

    async def _send(self, chat_id: int, text: str) -> bool:
        result = await asyncio.to_thread(self.telegram.send_message, chat_id, text)
        return bool(result.get("ok"))

    async def deliver_deposit(self, chat_id: int, data) -> bool:
        """Send a deposit notification, retrying once after a short delay."""
        try:
            notification = DepositNotification.model_validate(data)
        except ValidationError as e:
            logger.error(f"Invalid deposit notification for chat {chat_id}: {e}")
            return False

        text = format_deposit_notification(notification)
        if await self._send(chat_id, text):
            logger.info(f"Deposit notification {notification.transaction_id} sent to chat {chat_id}")
            return True

        await asyncio.sleep(self.delivery_retry_delay)
        if await self._send(chat_id, text):
            logger.info(f"Deposit notification {notification.transaction_id} sent to chat {chat_id} on retry")
            return True

        logger.error(f"Dropping deposit notification {notification.transaction_id} for chat {chat_id}")
        return False
