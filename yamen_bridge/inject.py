"""
Card injector: writes the Yamen signature to cards presented on a local
reader, without going through the dashboard. Do not remove a card until the
result is logged.
"""

import asyncio
import logging

from . import config
from .errors import AuthenticationFailure, HardwareError
from .presence import CardDetected

log = logging.getLogger("yamen_bridge.inject")


def inject_card(reader, codec, uid) -> bool:
    """
    Write the signature for `uid` and read it back. Blocking.

    Tries an authenticated 16-byte block write (MIFARE Classic) first, then
    four 4-byte page writes (Ultralight / NTAG).
    """
    signature = codec.generate(uid)
    block = config.SIGNATURE_BLOCK
    try:
        reader.authenticate(block, config.KEY_TYPE_A, config.MIFARE_KEY)
        reader.write(block, signature, config.SIGNATURE_LENGTH)
        log.info("Written using authenticated block write")
    except HardwareError as e:
        log.warning("Auth/write failed (%s), trying page write", e)
        try:
            reader.write(block, signature, config.ULTRALIGHT_PAGE_SIZE)
            log.info("Written using page write (Ultralight)")
        except HardwareError as e2:
            log.error("Write failed: %s", e2)
            return False

    try:
        try:
            reader.authenticate(block, config.KEY_TYPE_A, config.MIFARE_KEY)
        except AuthenticationFailure:
            pass
        data = reader.read(block, config.SIGNATURE_LENGTH)
    except HardwareError as e:
        log.warning("Verification read failed: %s", e)
        return False
    return codec.verify(uid, data)


class Injector:
    """Transport sink that signs every newly presented card."""

    def __init__(self, codec, transport_factory):
        self.codec = codec
        self.transport = transport_factory(self)
        self.results = {}
        self._tasks = set()

    def reader_attached(self, reader):
        log.info("Found reader: %s", reader.label)

    def reader_detached(self, reader):
        log.info("Reader removed: %s", reader.label)

    def reader_error(self, reader, error):
        log.error("Reader error on %s: %s", reader.label, error)

    def reader_event(self, reader, event):
        if isinstance(event, CardDetected):
            task = asyncio.create_task(self.inject(reader, event.uid))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            log.info("Waiting for next card...")

    async def inject(self, reader, uid):
        log.info("Card detected: %s, injecting...", uid)
        loop = asyncio.get_running_loop()
        try:
            ok = await loop.run_in_executor(reader.executor, inject_card, reader, self.codec, uid)
        except RuntimeError:
            ok = False
        self.results[uid] = ok
        if ok:
            log.info("SUCCESS! Card %s is now SECURED.", uid)
        else:
            log.error("INJECTION FAILED for %s. Is the card locked?", uid)
        return ok

    async def run(self, stop_event: asyncio.Event):
        log.info("Waiting for card to inject...")
        self.transport.start()
        try:
            await stop_event.wait()
        finally:
            await self.transport.stop()
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
