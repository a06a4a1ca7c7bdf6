"""Minimal Pusher (protocol 7) client over websockets.

Everything the connection observes is pushed onto ``RealtimeClient.events`` as
a :class:`RealtimeEvent`; the client never calls back into application code.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import websockets

from payout_bot.logging_config import get_logger
from payout_bot.schemas.notification import RealtimeEvent, RealtimeEventType

logger = get_logger("realtime_client")

PROTOCOL_VERSION = 7
CLIENT_NAME = "payout-bot"
CLIENT_VERSION = "0.1.0"

# async (socket_id, channel_name) -> {"auth": "<key>:<signature>"}
Authorizer = Callable[[str, str], Awaitable[dict]]


class ConnectionState:
    INITIALIZED = "initialized"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


def build_url(key: str, cluster: str) -> str:
    return (
        f"wss://ws-{cluster}.pusher.com/app/{key}"
        f"?protocol={PROTOCOL_VERSION}&client={CLIENT_NAME}&version={CLIENT_VERSION}&flash=false"
    )


def _decode(data: Any) -> Any:
    # Pusher double-encodes event data as a JSON string
    if isinstance(data, str):
        try:
            return json.loads(data)
        except ValueError:
            return data
    return data


class RealtimeClient:
    def __init__(
        self,
        key: str,
        cluster: str,
        authorizer: Authorizer,
        url: Optional[str] = None,
        connect: Callable = websockets.connect,
    ):
        self.url = url or build_url(key, cluster)
        self.events: asyncio.Queue = asyncio.Queue()
        self.state = ConnectionState.INITIALIZED
        self.socket_id: Optional[str] = None
        self._authorizer = authorizer
        self._connect = connect
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._channels: set[str] = set()
        self._closed = False

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def _emit(self, event_type: RealtimeEventType, **kwargs) -> None:
        self.events.put_nowait(RealtimeEvent(type=event_type, **kwargs))

    async def connect(self) -> None:
        """Open the socket in the background. Safe to call again after a disconnect."""
        if self._closed:
            return
        if self._reader and not self._reader.done():
            return
        self.state = ConnectionState.CONNECTING
        self._emit(RealtimeEventType.CONNECTING)
        self._reader = asyncio.create_task(self._run())

    async def _run(self) -> None:
        try:
            async with self._connect(self.url) as ws:
                self._ws = ws
                async for raw in ws:
                    await self._dispatch(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Realtime connection error: {e}")
            self._emit(RealtimeEventType.ERROR, error=str(e))
        finally:
            self._ws = None
            self.socket_id = None
            self.state = ConnectionState.DISCONNECTED
            self._emit(RealtimeEventType.DISCONNECTED)

    async def _dispatch(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning(f"Dropping non-JSON realtime frame: {raw[:100]}")
            return

        event = message.get("event")
        channel = message.get("channel")
        data = _decode(message.get("data"))

        if event == "pusher:connection_established":
            self.socket_id = data.get("socket_id")
            self.state = ConnectionState.CONNECTED
            self._emit(RealtimeEventType.CONNECTED)
            for name in sorted(self._channels):
                await self._send_subscribe(name)
        elif event == "pusher:ping":
            await self._send({"event": "pusher:pong", "data": {}})
        elif event == "pusher:error":
            message_text = data.get("message") if isinstance(data, dict) else str(data)
            self._emit(RealtimeEventType.ERROR, error=message_text, data=data)
        elif event == "pusher_internal:subscription_succeeded":
            self._emit(RealtimeEventType.SUBSCRIPTION_SUCCEEDED, channel=channel)
        elif event == "pusher:subscription_error":
            error = data.get("error") if isinstance(data, dict) else str(data)
            self._emit(RealtimeEventType.SUBSCRIPTION_ERROR, channel=channel, error=error, data=data)
        elif event and channel:
            self._emit(RealtimeEventType.CHANNEL_EVENT, channel=channel, name=event, data=data)

    async def _send(self, payload: dict) -> None:
        if self._ws is None:
            return
        await self._ws.send(json.dumps(payload))

    async def _send_subscribe(self, channel: str) -> None:
        data = {"channel": channel}
        if channel.startswith("private-"):
            try:
                response = await self._authorizer(self.socket_id, channel)
                data["auth"] = response["auth"]
            except Exception as e:
                self._emit(RealtimeEventType.SUBSCRIPTION_ERROR, channel=channel, error=str(e))
                return
        await self._send({"event": "pusher:subscribe", "data": data})

    async def subscribe(self, channel: str) -> None:
        self._channels.add(channel)
        if self.connected:
            await self._send_subscribe(channel)

    async def unsubscribe(self, channel: str) -> None:
        self._channels.discard(channel)
        if self.connected:
            await self._send({"event": "pusher:unsubscribe", "data": {"channel": channel}})

    async def disconnect(self) -> None:
        """Close for good; later connect() calls are ignored."""
        self._closed = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Error while closing realtime socket: {e}")
        if self._reader and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self.state = ConnectionState.DISCONNECTED
