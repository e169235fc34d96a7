"""
One actor per attached reader.

A Device owns its ReaderState and consumes its own queue of raw reader
events and write requests strictly in arrival order. Nothing else mutates
the state, so no locking is needed. Blocking reader I/O runs on the reader's
single-worker executor.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from . import config
from .aio import run_with_deadline
from .cloud import STATUS_PRESENT, STATUS_REMOVED, scan_payload
from .errors import ActionExecutionError, AuthenticationFailure, HardwareError, SyncError
from .presence import EMPTY, CardRemoved, CloseEpisode, OpenEpisode, transition, with_event_id

log = logging.getLogger("yamen_bridge.device")

_STOP = object()


def friendly_write_error(exc) -> str:
    if getattr(exc, "status", None) == 0x6300 or "0x6300" in str(exc):
        return "Failed: Auth Required or Block Locked (0x6300)"
    return str(exc) or type(exc).__name__


@dataclass
class DeviceInfo:
    device_id: str
    label: str
    connected_at: str
    scans_count: int = 0
    errors_count: int = 0
    last_scan: str | None = None
    last_error: dict | None = None

    def record_scan(self):
        self.scans_count += 1
        self.last_scan = datetime.now(timezone.utc).isoformat()

    def record_error(self, message):
        self.errors_count += 1
        self.last_error = {
            "message": str(message),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


@dataclass
class WriteRequest:
    uid: str
    signature: bytes
    future: asyncio.Future


class Device:
    def __init__(
        self,
        device_id,
        reader,
        codec,
        cloud,
        notifier,
        terminal_id,
        clock=time.monotonic,
        verify_timeout=config.VERIFY_TIMEOUT,
        new_card_window=config.NEW_CARD_WINDOW,
    ):
        self.device_id = device_id
        self.reader = reader
        self.codec = codec
        self.cloud = cloud
        self.notifier = notifier
        self.terminal_id = terminal_id
        self.clock = clock
        self.verify_timeout = verify_timeout
        self.new_card_window = new_card_window

        self.state = EMPTY
        self.info = DeviceInfo(
            device_id=device_id,
            label=getattr(reader, "label", reader.name),
            connected_at=datetime.now(timezone.utc).isoformat(),
        )
        self.queue = asyncio.Queue()
        self._task = None
        self._stopping = False
        self._background = set()

    @property
    def label(self):
        return self.info.label

    # -- lifecycle -----------------------------------------------------------

    def start(self):
        self._task = asyncio.create_task(self.run(), name=f"device-{self.device_id}")

    def post(self, event):
        if not self._stopping:
            self.queue.put_nowait(event)

    async def stop(self, close_episode=True):
        """Close the open episode (if any), drain the queue and stop the worker."""
        if self._task is None or self._stopping:
            return
        if close_episode:
            self.queue.put_nowait(CardRemoved(None))
        self._stopping = True
        self.queue.put_nowait(_STOP)
        await self._task
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def submit_write(self, uid, signature: bytes):
        """Queue a signature write behind any pending reader events; returns the open scan id."""
        if self._stopping:
            raise ActionExecutionError("Card not present")
        future = asyncio.get_running_loop().create_future()
        self.queue.put_nowait(WriteRequest(uid, bytes(signature), future))
        return await future

    async def idle(self):
        """Wait until every queued message has been processed."""
        await self.queue.join()

    async def run(self):
        while True:
            msg = await self.queue.get()
            try:
                if msg is _STOP:
                    break
                if isinstance(msg, WriteRequest):
                    await self._handle_write(msg)
                else:
                    await self.handle(msg)
            except Exception as e:
                log.exception("[%s] System error while handling %r", self.device_id, msg)
                self.info.record_error(e)
                if isinstance(msg, WriteRequest):
                    if not msg.future.done():
                        msg.future.set_exception(ActionExecutionError(str(e)))
                elif self.state.remote_event_id is None:
                    # a recorded episode stays open so the removal can close it
                    self.state = EMPTY
            finally:
                self.queue.task_done()

    # -- presence ------------------------------------------------------------

    async def handle(self, event):
        self.state, effects = transition(self.state, event, self.clock(), self.new_card_window)
        for effect in effects:
            if isinstance(effect, CloseEpisode):
                await self._close_episode(effect)
            elif isinstance(effect, OpenEpisode):
                await self._open_episode(effect.uid)

    async def _open_episode(self, uid):
        log.info("[%s] New card: %s", self.device_id, uid)
        secured = await self.verify(uid)
        card_type = "SECURE" if secured else "UNVERIFIED"

        try:
            event_id = await self.cloud.record_scan(scan_payload(self.terminal_id, uid, secured))
        except SyncError as e:
            log.error("[%s] Sync error for %s: %s", self.device_id, uid, e)
            self.info.record_error(e)
            self.state = EMPTY
            await self.notifier.notify("Sync Failed", str(e), logging.ERROR)
            return

        self.state = with_event_id(self.state, uid, event_id)
        self.info.record_scan()
        log.info("[%s] Synced scan %s (event %s, %s)", self.device_id, uid, event_id, card_type)
        await self.notifier.notify("Scan Successful", f"UID: {uid}\nType: {card_type}")
        await self.notifier.scan(uid, STATUS_PRESENT, secured, self.device_id)

    async def _close_episode(self, effect: CloseEpisode):
        log.info("[%s] Card removed: %s", self.device_id, effect.uid)
        if effect.remote_event_id is not None:
            try:
                await self.cloud.close_scan(effect.remote_event_id)
                log.info("[%s] Event %s closed", self.device_id, effect.remote_event_id)
            except SyncError as e:
                log.error("[%s] Failed to close event %s: %s",
                          self.device_id, effect.remote_event_id, e)
                self.info.record_error(e)
        await self.notifier.scan(effect.uid, STATUS_REMOVED, device_id=self.device_id)

    # -- verification --------------------------------------------------------

    async def _io(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self.reader.executor, fn, *args)
        except RuntimeError as e:
            # executor already shut down
            raise HardwareError(f"{self.reader.name}: reader closed") from e

    async def _read_signature_block(self):
        block = config.SIGNATURE_BLOCK
        try:
            await self._io(self.reader.authenticate, block, config.KEY_TYPE_A, config.MIFARE_KEY)
            return await self._io(self.reader.read, block, config.SIGNATURE_LENGTH)
        except HardwareError as e:
            log.debug("[%s] Authenticated read failed (%s), trying direct read", self.device_id, e)
        try:
            return await self._io(self.reader.read, block, config.SIGNATURE_LENGTH)
        except HardwareError as e:
            log.debug("[%s] Direct read failed: %s", self.device_id, e)
            return None

    async def verify(self, uid) -> bool:
        """Read and check the signature block within the verification budget."""
        data = await run_with_deadline(self._read_signature_block(), self.verify_timeout)
        if data is not None and self.codec.verify(uid, data):
            log.info("[%s] Yamen signature verified for %s", self.device_id, uid)
            self._spawn(self._heal_card_record(uid))
            return True

        log.warning("[%s] Card %s not signed or verification failed", self.device_id, uid)
        if data is not None:
            log.debug("[%s] raw read %s, expected %s",
                      self.device_id, bytes(data).hex().upper(), self.codec.generate_hex(uid))
        return False

    async def _heal_card_record(self, uid):
        try:
            await self.cloud.mark_card_secured(uid, only_if_unknown=True)
        except SyncError as e:
            log.error("[%s] %s", self.device_id, e)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -- remote writes -------------------------------------------------------

    async def _handle_write(self, request: WriteRequest):
        try:
            result = await self._write_signature(request)
        except ActionExecutionError as e:
            if not request.future.done():
                request.future.set_exception(e)
        else:
            if not request.future.done():
                request.future.set_result(result)

    async def _write_signature(self, request: WriteRequest):
        if self.state.uid != request.uid:
            raise ActionExecutionError("Card not present")

        block = config.SIGNATURE_BLOCK
        block_size = config.SIGNATURE_LENGTH
        try:
            await self._io(self.reader.authenticate, block, config.KEY_TYPE_A, config.MIFARE_KEY)
            log.info("[%s] Authentication successful", self.device_id)
        except AuthenticationFailure as e:
            log.info("[%s] Auth skipped (Ultralight/NTAG): %s", self.device_id, e)
            block_size = config.ULTRALIGHT_PAGE_SIZE
        except HardwareError as e:
            self.info.record_error(e)
            raise ActionExecutionError(friendly_write_error(e)) from e

        try:
            await self._io(self.reader.write, block, request.signature, block_size)
        except HardwareError as e:
            log.error("[%s] Write error: %s", self.device_id, e)
            self.info.record_error(e)
            raise ActionExecutionError(friendly_write_error(e)) from e

        log.info("[%s] Signature written to %s", self.device_id, request.uid)
        return self.state.remote_event_id
