"""
Operator notifications.

Everything is logged. When the local operator socket is enabled, messages
are also broadcast as JSON to browsers / kiosk UIs connected on localhost.
"""

import json
import logging

import websockets

from . import config

log = logging.getLogger("yamen_bridge.notify")


class Notifier:
    def __init__(self):
        self.clients = set()
        self.reader_connected = False
        self._server = None

    async def start(self, host=config.OPERATOR_WS_HOST, port=config.OPERATOR_WS_PORT):
        self._server = await websockets.serve(self.handle_client, host, port)
        log.info("Operator socket listening on ws://%s:%d", host, port)

    async def stop(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def broadcast(self, message: dict):
        """Send a JSON message to all connected clients."""
        if not self.clients:
            return
        text = json.dumps(message)
        disconnected = set()
        for ws in list(self.clients):
            try:
                await ws.send(text)
            except websockets.ConnectionClosed:
                disconnected.add(ws)
        self.clients -= disconnected

    async def handle_client(self, websocket):
        """Register a client and keep it until it disconnects. Inbound messages are ignored."""
        self.clients.add(websocket)
        log.info("Operator client connected (%d total)", len(self.clients))

        await websocket.send(json.dumps({
            "type": "reader_status",
            "connected": self.reader_connected,
        }))

        try:
            async for _ in websocket:
                pass
        except websockets.ConnectionClosed:
            pass
        finally:
            self.clients.discard(websocket)
            log.info("Operator client disconnected (%d remaining)", len(self.clients))

    async def notify(self, title, message, level=logging.INFO):
        log.log(level, "%s: %s", title, message)
        await self.broadcast({"type": "notification", "title": title, "message": message})

    async def scan(self, uid, status, secured=None, device_id=None):
        await self.broadcast({
            "type": "scan",
            "uid": uid,
            "status": status,
            "secured": secured,
            "device_id": device_id,
        })

    async def reader_status(self, connected: bool):
        if connected != self.reader_connected:
            self.reader_connected = connected
            await self.broadcast({"type": "reader_status", "connected": connected})
