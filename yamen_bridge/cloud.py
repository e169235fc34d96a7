"""
Remote bookkeeping for scans, cards, terminal actions and liveness.

All methods are coroutines; the blocking REST calls run on a dedicated
network executor so hardware callbacks are never held up by the network.
"""

import asyncio
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from . import config
from .aio import linear_backoff, retry_async
from .errors import SyncError
from .store import StoreError

log = logging.getLogger("yamen_bridge.cloud")

SCAN_EVENTS = "scan_events"
CARDS = "cards"
TERMINALS = "terminals"
BRANCHES = "branches"
TERMINAL_ACTIONS = "terminal_actions"

STATUS_PRESENT = "PRESENT"
STATUS_REMOVED = "REMOVED"

SECURED_METADATA = {"secured": True, "signature_valid": True}


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def scan_payload(terminal_id, uid, secured: bool) -> dict:
    return {
        "terminal_id": terminal_id,
        "uid": uid,
        "processed": False,
        "status": STATUS_PRESENT,
        "metadata": {"secured": secured, "signature_valid": secured},
    }


class CloudSync:
    def __init__(
        self,
        store,
        scan_attempts=config.SCAN_SYNC_ATTEMPTS,
        scan_delay=config.SCAN_SYNC_DELAY,
        update_attempts=config.UPDATE_SYNC_ATTEMPTS,
        update_delay=config.UPDATE_SYNC_DELAY,
        executor=None,
    ):
        self.store = store
        self.scan_attempts = scan_attempts
        self.scan_delay = scan_delay
        self.update_attempts = update_attempts
        self.update_delay = update_delay
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="yamen-net"
        )

    async def _call(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    def close(self):
        self._executor.shutdown(wait=False)

    # -- scan events ---------------------------------------------------------

    async def record_scan(self, payload: dict):
        """Create one scan_events row; returns its id. Raises SyncError."""
        async def attempt():
            row = await self._call(self.store.insert, SCAN_EVENTS, payload)
            return row["id"]

        try:
            return await retry_async(
                attempt,
                self.scan_attempts,
                linear_backoff(self.scan_delay),
                retry_on=(StoreError, KeyError, TypeError),
                label=f"record scan {payload.get('uid')}",
            )
        except (StoreError, KeyError, TypeError) as e:
            raise SyncError(f"Max retries exceeded: {e}") from e

    async def update_scan(self, event_id, fields: dict):
        async def attempt():
            await self._call(self.store.update, SCAN_EVENTS, fields, {"id": f"eq.{event_id}"})

        try:
            await retry_async(
                attempt,
                self.update_attempts,
                linear_backoff(self.update_delay),
                retry_on=(StoreError,),
                label=f"update scan {event_id}",
            )
        except StoreError as e:
            raise SyncError(f"Failed to update event {event_id}: {e}") from e

    async def close_scan(self, event_id):
        await self.update_scan(event_id, {"status": STATUS_REMOVED, "processed": True})

    # -- cards ---------------------------------------------------------------

    async def mark_card_secured(self, uid, signature_hex=None, only_if_unknown=False):
        values = {"metadata": dict(SECURED_METADATA)}
        if signature_hex is not None:
            values["signature"] = signature_hex
        filters = {"uid": f"eq.{uid}"}
        if only_if_unknown:
            filters["metadata->secured"] = "is.null"
        try:
            await self._call(self.store.update, CARDS, values, filters)
        except StoreError as e:
            raise SyncError(f"Error syncing card status: {e}") from e

    # -- terminal actions ----------------------------------------------------

    async def _update_action(self, action_id, values):
        async def attempt():
            await self._call(
                self.store.update, TERMINAL_ACTIONS, values, {"id": f"eq.{action_id}"}
            )

        try:
            await retry_async(
                attempt,
                self.update_attempts,
                linear_backoff(self.update_delay),
                retry_on=(StoreError,),
                label=f"update action {action_id}",
            )
        except StoreError as e:
            raise SyncError(f"Failed to update action {action_id}: {e}") from e

    async def complete_action(self, action_id):
        await self._update_action(action_id, {"status": "COMPLETED", "completed_at": utcnow_iso()})

    async def fail_action(self, action_id, message):
        await self._update_action(action_id, {"status": "FAILED", "message": message})

    # -- terminal ------------------------------------------------------------

    async def send_heartbeat(self, terminal_id, metadata: dict):
        try:
            await self._call(
                self.store.update,
                TERMINALS,
                {"last_sync": utcnow_iso(), "metadata": metadata},
                {"id": f"eq.{terminal_id}"},
            )
        except StoreError as e:
            raise SyncError(f"Heartbeat failed: {e}") from e

    async def ensure_terminal(self, terminal_id, terminal_name) -> bool:
        """Create the terminals row (and a default branch) when missing."""
        try:
            existing = await self._call(
                self.store.select, TERMINALS, {"id": f"eq.{terminal_id}"}, "id", 1
            )
            if existing:
                log.info("Terminal %s exists in database", terminal_id)
                return True

            branches = await self._call(self.store.select, BRANCHES, None, "id", 1)
            if branches:
                branch_id = branches[0]["id"]
            else:
                branch = await self._call(
                    self.store.insert, BRANCHES, {"name": "Default Branch", "location": "Main"}
                )
                branch_id = branch["id"]
                log.info("Created default branch: %s", branch_id)

            log.warning("Terminal %s not found. Creating...", terminal_id)
            await self._call(self.store.insert, TERMINALS, {
                "id": terminal_id,
                "branch_id": branch_id,
                "name": terminal_name,
                "connection_url": "local://nfc-bridge",
                "terminal_secret": str(uuid.uuid4()),
            })
            log.info("Terminal created successfully: ID %s", terminal_id)
            return True
        except (StoreError, KeyError) as e:
            log.error("Error ensuring terminal exists: %s", e)
            return False
