"""
Supabase Realtime subscription (Phoenix channels over WebSocket).

Only what the bridge needs: join one channel with a postgres_changes filter,
keep the socket alive with heartbeats, yield inserted records, reconnect when
the socket drops.
"""

import asyncio
import itertools
import json
import logging
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets

from . import config

log = logging.getLogger("yamen_bridge.realtime")


def realtime_url(supabase_url: str, key: str) -> str:
    parts = urlsplit(supabase_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    query = urlencode({"apikey": key, "vsn": "1.0.0"})
    return urlunsplit((scheme, parts.netloc, "/realtime/v1/websocket", query, ""))


def extract_record(message: dict):
    """Return the new row carried by a postgres_changes message, or None."""
    event = message.get("event")
    payload = message.get("payload") or {}
    if event == "postgres_changes":
        data = payload.get("data") or {}
        if data.get("type", "INSERT") != "INSERT":
            return None
        return data.get("record")
    if event == "INSERT":
        return payload.get("record")
    return None


class RealtimeChannel:
    def __init__(
        self,
        supabase_url,
        key,
        name,
        changes,
        heartbeat_interval=config.REALTIME_HEARTBEAT_INTERVAL,
        reconnect_delay=config.REALTIME_RECONNECT_DELAY,
        connect=websockets.connect,
    ):
        self.url = realtime_url(supabase_url, key)
        self.key = key
        self.topic = f"realtime:{name}"
        self.changes = changes
        self.heartbeat_interval = heartbeat_interval
        self.reconnect_delay = reconnect_delay
        self._connect = connect
        self._refs = itertools.count(1)

    def join_message(self) -> dict:
        ref = str(next(self._refs))
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": {
                "config": {
                    "broadcast": {"self": False},
                    "presence": {"key": ""},
                    "postgres_changes": self.changes,
                },
                "access_token": self.key,
            },
            "ref": ref,
            "join_ref": ref,
        }

    def heartbeat_message(self) -> dict:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": str(next(self._refs))}

    async def _heartbeat(self, ws):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await ws.send(json.dumps(self.heartbeat_message()))

    async def records(self):
        """Yield inserted records forever, reconnecting after socket errors."""
        while True:
            try:
                async with self._connect(self.url) as ws:
                    await ws.send(json.dumps(self.join_message()))
                    log.info("Subscribed to %s", self.topic)
                    heartbeat = asyncio.create_task(self._heartbeat(ws))
                    try:
                        async for raw in ws:
                            record = self._handle(raw)
                            if record is not None:
                                yield record
                    finally:
                        heartbeat.cancel()
                log.warning("Realtime socket closed")
            except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
                # covers dropped sockets and rejected handshakes (HTTP 5xx, bad key)
                log.warning("Realtime connection lost: %s", e)
            await asyncio.sleep(self.reconnect_delay)

    def _handle(self, raw):
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            log.debug("Ignoring non-JSON realtime frame")
            return None
        if message.get("event") == "phx_reply":
            status = (message.get("payload") or {}).get("status")
            if status != "ok":
                log.error("Realtime join/heartbeat rejected: %s", message.get("payload"))
            return None
        if message.get("event") == "phx_error":
            log.warning("Realtime channel error: %s", message.get("payload"))
            return None
        if message.get("event") == "system":
            log.info("Realtime: %s", (message.get("payload") or {}).get("message"))
            return None
        return extract_record(message)
