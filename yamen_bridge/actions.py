"""
Remote terminal actions.

The dashboard inserts rows into `terminal_actions`; the bridge receives them
over Realtime and terminates each PENDING one exactly once with COMPLETED or
FAILED. The only action type is WRITE_SIGNATURE: write the supplied 16-byte
signature to whichever card currently sits on one of our readers.
"""

import asyncio
import logging
from collections import deque

from . import config
from .cloud import SECURED_METADATA, TERMINAL_ACTIONS
from .errors import ActionExecutionError, SyncError
from .presence import normalize_uid
from .signature import parse_signature_hex

log = logging.getLogger("yamen_bridge.actions")

WRITE_SIGNATURE = "WRITE_SIGNATURE"
PENDING = "PENDING"


def action_changes(terminal_id) -> list:
    return [{
        "event": "INSERT",
        "schema": "public",
        "table": TERMINAL_ACTIONS,
        "filter": f"terminal_id=eq.{terminal_id}",
    }]


class RemoteActionListener:
    def __init__(self, channel, cloud, registry, codec, notifier,
                 history=config.HANDLED_ACTIONS_HISTORY):
        self.channel = channel
        self.cloud = cloud
        self.registry = registry  # provides find_device(uid)
        self.codec = codec
        self.notifier = notifier
        self._handled = set()
        self._handled_order = deque()
        self.history = history
        self._tasks = set()

    async def run(self):
        async for action in self.channel.records():
            self.dispatch(action)

    def dispatch(self, action):
        task = asyncio.create_task(self.handle(action))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self):
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def handle(self, action: dict):
        action_id = action.get("id")
        log.info("[ACTION] Received command %s (%s)", action.get("action_type"), action_id)

        if action.get("status") != PENDING:
            return
        if action_id is None or action_id in self._handled:
            return
        if action.get("action_type") != WRITE_SIGNATURE:
            log.warning("[ACTION] Unsupported action type: %s", action.get("action_type"))
            return
        self._remember(action_id)

        try:
            await self.execute_write(action)
        except SyncError as e:
            log.error("[ACTION] Could not report result of %s: %s", action_id, e)

    def _remember(self, action_id):
        self._handled.add(action_id)
        self._handled_order.append(action_id)
        while len(self._handled_order) > self.history:
            self._handled.discard(self._handled_order.popleft())

    async def execute_write(self, action: dict):
        action_id = action["id"]
        payload = action.get("payload") or {}
        uid = normalize_uid(payload.get("uid"))
        signature = parse_signature_hex(payload.get("signature"))

        if uid is None or signature is None:
            log.error("[WRITE] Action %s has an invalid payload", action_id)
            await self.cloud.fail_action(action_id, "Invalid signature payload")
            return

        if not self.codec.verify(uid, signature):
            log.warning("[WRITE] Signature for %s does not match this bridge's secret", uid)

        device = self.registry.find_device(uid)
        if device is None:
            log.error("[WRITE] Card %s not found on any reader", uid)
            await self.cloud.fail_action(action_id, "Card not present")
            return

        log.info("[WRITE] Writing signature to %s on %s", uid, device.device_id)
        try:
            event_id = await device.submit_write(uid, signature)
        except ActionExecutionError as e:
            message = str(e)
            log.error("[WRITE] %s: %s", uid, message)
            await self.cloud.fail_action(action_id, message)
            await self.notifier.notify("Injection Failed", message, logging.ERROR)
            return

        # the card is signed now: record it even if the action status update fails
        try:
            await self.cloud.mark_card_secured(uid, signature.hex().upper())
            log.info("[WRITE] Card record %s updated as SECURED", uid)
        except SyncError as e:
            log.error("[WRITE] Card record sync failed: %s", e)

        await self.notifier.notify("Injection Successful", f"Card {uid} secured.")

        if event_id is not None:
            try:
                await self.cloud.update_scan(event_id, {"metadata": dict(SECURED_METADATA)})
            except SyncError as e:
                log.error("[WRITE] Scan event %s not updated: %s", event_id, e)

        await self.cloud.complete_action(action_id)
