"""
PC/SC transport (pyscard).

pyscard's ReaderMonitor / CardMonitor call their observers from background
threads. The observers only hand notifications to the event loop; all card
I/O for one reader then runs on that reader's single-worker executor, so the
UID read on insertion can never overlap a verification read or a write.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

from smartcard.CardMonitoring import CardMonitor, CardObserver
from smartcard.Exceptions import CardConnectionException, NoCardException
from smartcard.ReaderMonitoring import ReaderMonitor, ReaderObserver
from smartcard.System import readers
from smartcard.util import toHexString

from .apdu import ApduReader, tag_type_name
from .errors import HardwareError
from .presence import CardDetected, CardRemoved

log = logging.getLogger("yamen_bridge.pcsc")


class PcscReader(ApduReader):
    def __init__(self, reader):
        self.reader = reader
        self.name = str(reader)
        self.label = self.name
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pcsc")
        self._connection = None
        self._uid = None

    def transmit(self, apdu):
        if self._connection is None:
            raise HardwareError(f"{self.name}: no card connected")
        try:
            return self._connection.transmit(list(apdu))
        except CardConnectionException as e:
            raise HardwareError(f"{self.name}: transmit error: {e}") from e

    def open_card(self, card) -> str:
        """Connect to a newly inserted card and return its UID."""
        self.release_card()
        try:
            connection = card.createConnection()
            connection.connect()
            atr = connection.getATR()
        except (NoCardException, CardConnectionException) as e:
            raise HardwareError(f"{self.name}: cannot connect to card: {e}") from e
        log.info("Card detected on %s: ATR %s (%s)", self.name, toHexString(atr), tag_type_name(atr))
        self._connection = connection
        try:
            self._uid = self.get_uid()
        except HardwareError:
            self.release_card()
            raise
        return self._uid

    def release_card(self):
        """Drop the card connection; returns the UID it belonged to, if any."""
        uid, connection = self._uid, self._connection
        self._uid = None
        self._connection = None
        if connection is not None:
            try:
                connection.disconnect()
            except CardConnectionException:
                pass
        return uid

    def close(self):
        self.executor.submit(self.release_card)
        self.executor.shutdown(wait=False)


class _ReaderWatcher(ReaderObserver):
    def __init__(self, transport):
        self.transport = transport

    def update(self, observable, actions):
        added, removed = actions
        self.transport.post(self.transport.readers_changed, list(added), list(removed))


class _CardWatcher(CardObserver):
    def __init__(self, transport):
        self.transport = transport

    def update(self, observable, actions):
        added, removed = actions
        self.transport.post(self.transport.cards_changed, list(added), list(removed))


class PcscTransport:
    """Reports reader attach/detach and card presence to `sink`."""

    def __init__(self, sink):
        self.sink = sink
        self.readers = {}
        self._loop = None
        self._reader_monitor = None
        self._card_monitor = None
        self._reader_watcher = _ReaderWatcher(self)
        self._card_watcher = _CardWatcher(self)
        self._tasks = set()

    def post(self, fn, *args):
        """Called from pyscard threads."""
        self._loop.call_soon_threadsafe(fn, *args)

    def start(self):
        self._loop = asyncio.get_running_loop()
        self._reader_monitor = ReaderMonitor()
        self._reader_monitor.addObserver(self._reader_watcher)
        self._card_monitor = CardMonitor()
        self._card_monitor.addObserver(self._card_watcher)
        log.info("Waiting for PC/SC readers...")

    async def stop(self):
        if self._card_monitor is not None:
            self._card_monitor.deleteObserver(self._card_watcher)
        if self._reader_monitor is not None:
            self._reader_monitor.deleteObserver(self._reader_watcher)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for reader in list(self.readers.values()):
            self._detach(reader)

    # -- loop-side handlers --------------------------------------------------

    def readers_changed(self, added, removed):
        for r in added:
            self._attach(r)
        for r in removed:
            reader = self.readers.get(str(r))
            if reader is not None:
                self._detach(reader)

    def cards_changed(self, added, removed):
        for card in removed:
            reader = self.readers.get(str(card.reader))
            if reader is not None:
                self._spawn(self._card_removed(reader))
        for card in added:
            reader = self.readers.get(str(card.reader)) or self._attach_by_name(str(card.reader))
            if reader is not None:
                self._spawn(self._card_inserted(reader, card))

    def _attach(self, r):
        name = str(r)
        if name in self.readers:
            return self.readers[name]
        reader = PcscReader(r)
        self.readers[name] = reader
        log.info("Reader found: %s", name)
        self.sink.reader_attached(reader)
        return reader

    def _attach_by_name(self, name):
        try:
            available = readers()
        except Exception as e:  # pyscard raises a variety of PC/SC errors here
            log.error("Reader enumeration failed: %s", e)
            return None
        for r in available:
            if str(r) == name:
                return self._attach(r)
        return None

    def _detach(self, reader):
        self.readers.pop(reader.name, None)
        log.warning("Reader disconnected: %s", reader.name)
        self.sink.reader_detached(reader)
        reader.close()

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _card_inserted(self, reader, card):
        try:
            uid = await self._loop.run_in_executor(reader.executor, reader.open_card, card)
        except HardwareError as e:
            log.error("%s", e)
            self.sink.reader_error(reader, e)
            return
        except RuntimeError:
            return  # executor shut down: reader went away
        self.sink.reader_event(reader, CardDetected(uid))

    async def _card_removed(self, reader):
        try:
            uid = await self._loop.run_in_executor(reader.executor, reader.release_card)
        except RuntimeError:
            return
        self.sink.reader_event(reader, CardRemoved(uid))
