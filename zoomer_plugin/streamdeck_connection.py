"""WebSocket link between the plugin process and the Stream Deck application."""
from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, Mapping, Optional

import websockets
from websockets.exceptions import ConnectionClosed

_LOGGER = logging.getLogger("Zoomer.Plugin.Connection")

MessageHandler = Callable[[Dict[str, Any]], None]
ConnectFn = Callable[[str], Any]

PENDING_LIMIT = 64


class StreamDeckConnection:
    """Registers with Stream Deck, dispatches inbound events and flushes outbound ones.

    Outbound messages are fire-and-forget: they are queued and written by a
    sender task, or held in a bounded pending buffer until the socket is up.
    """

    def __init__(
        self,
        port: int,
        plugin_uuid: str,
        register_event: str,
        *,
        host: str = "127.0.0.1",
        connect: Optional[ConnectFn] = None,
    ) -> None:
        self.port = port
        self.plugin_uuid = plugin_uuid
        self.register_event = register_event
        self.host = host
        self._connect = connect or websockets.connect
        self._outgoing: Optional[asyncio.Queue[Optional[str]]] = None
        self._pending: Deque[str] = deque(maxlen=PENDING_LIMIT)
        self._connected = False

    @property
    def uri(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @property
    def connected(self) -> bool:
        return self._connected

    # Outbound -------------------------------------------------------------

    def send(self, event: str, context: Optional[str] = None, payload: Optional[Mapping[str, Any]] = None) -> bool:
        message: Dict[str, Any] = {"event": event}
        if context is not None:
            message["context"] = context
        if payload is not None:
            message["payload"] = dict(payload)
        try:
            serialised = json.dumps(message, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            _LOGGER.debug("Failed to serialise %s message: %s", event, exc)
            return False
        queue_ref = self._outgoing
        if queue_ref is not None:
            queue_ref.put_nowait(serialised)
            return True
        self._pending.append(serialised)
        return True

    def set_state(self, context: str, state: int) -> bool:
        return self.send("setState", context, {"state": int(state)})

    def set_title(self, context: str, title: str) -> bool:
        return self.send("setTitle", context, {"title": title})

    def show_alert(self, context: str) -> bool:
        return self.send("showAlert", context)

    def log_message(self, message: str) -> bool:
        return self.send("logMessage", payload={"message": message})

    # Connection loop ------------------------------------------------------

    async def run(self, handler: MessageHandler) -> None:
        """Connect, register, and dispatch events until the socket closes."""
        _LOGGER.info("Connecting to Stream Deck at %s", self.uri)
        async with self._connect(self.uri) as ws:
            await ws.send(json.dumps({"event": self.register_event, "uuid": self.plugin_uuid}))
            self._connected = True
            outgoing: asyncio.Queue[Optional[str]] = asyncio.Queue()
            while self._pending:
                outgoing.put_nowait(self._pending.popleft())
            self._outgoing = outgoing
            sender_task = asyncio.create_task(self._flush_outgoing(ws, outgoing))
            try:
                async for raw in ws:
                    message = self._decode(raw)
                    if message is None:
                        continue
                    try:
                        handler(message)
                    except Exception:
                        _LOGGER.exception("Failed to handle %s event", message.get("event"))
            except ConnectionClosed as exc:
                _LOGGER.warning("Stream Deck connection closed: %s", exc)
            finally:
                self._connected = False
                self._outgoing = None
                outgoing.put_nowait(None)
                try:
                    await sender_task
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # pragma: no cover - unexpected sender failures
                    _LOGGER.warning("Sender task terminated with error: %s", exc)
        _LOGGER.info("Stream Deck connection ended")

    async def _flush_outgoing(self, ws: Any, queue_ref: "asyncio.Queue[Optional[str]]") -> None:
        while True:
            payload = await queue_ref.get()
            if payload is None:
                break
            try:
                await ws.send(payload)
            except (ConnectionClosed, OSError) as exc:
                _LOGGER.warning("Failed to write to Stream Deck, holding further messages: %s", exc)
                if self._outgoing is queue_ref:
                    self._outgoing = None
                    self._connected = False
                break

    @staticmethod
    def _decode(raw: Any) -> Optional[Dict[str, Any]]:
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                _LOGGER.warning("Failed to decode message bytes from Stream Deck: %s", exc)
                return None
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as exc:
            _LOGGER.debug("Dropped invalid JSON message from Stream Deck: %s", exc)
            return None
        if not isinstance(message, dict) or not message.get("event"):
            return None
        return message
