"""
USB HID transport (hidapi).

The reader is polled with a CCID "XfrBlock" frame carrying the get-UID APDU,
sent as a feature report; the answer comes back as a feature report holding
a CCID "DataBlock" frame. Frame offsets are firmware-specific: all parsing
lives in `parse_feature_response`.
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor

import hid

from . import config
from .apdu import APDU_GET_UID, SW_OK, ApduReader, hex_string
from .errors import HardwareError
from .presence import CardDetected, CardRemoved

log = logging.getLogger("yamen_bridge.hid")

CCID_XFR_BLOCK = 0x6F
CCID_HEADER_LEN = 10
REPORT_ID = 0

# UIDs are 4, 7 or 10 bytes; anything else is a garbled read
UID_MIN_HEX = 8
UID_MAX_HEX = 20


def build_feature_request(apdu, seq=0) -> bytes:
    apdu = bytes(apdu)
    header = bytes([CCID_XFR_BLOCK]) + len(apdu).to_bytes(4, "little") + bytes([0, seq & 0xFF, 0, 0, 0])
    return header + apdu


def parse_feature_response(resp):
    """
    Split a DataBlock frame into (data, sw1, sw2).

    Returns None for a short or garbled response. Uses the frame length field
    when it fits the report, otherwise treats everything after the header as
    payload with the status word in the last two bytes.
    """
    resp = bytes(resp or b"")
    if len(resp) < CCID_HEADER_LEN + 2:
        return None
    length = int.from_bytes(resp[1:5], "little")
    if 2 <= length <= len(resp) - CCID_HEADER_LEN:
        body = resp[CCID_HEADER_LEN:CCID_HEADER_LEN + length]
    else:
        body = resp[CCID_HEADER_LEN:]
    if len(body) < 2:
        return None
    return list(body[:-2]), body[-2], body[-1]


def valid_uid(uid) -> bool:
    return bool(uid) and UID_MIN_HEX <= len(uid) <= UID_MAX_HEX


class HidReader(ApduReader):
    def __init__(self, info, device=None):
        path = info["path"]
        self.path = path
        self.name = path.decode(errors="replace") if isinstance(path, bytes) else str(path)
        self.label = f"HID: {info.get('product_string') or 'NFC Reader'}"
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="hid")
        self.response_delay = config.HID_RESPONSE_DELAY
        self._device = device
        self._seq = 0

    def open(self):
        if self._device is None:
            self._device = hid.device()
        try:
            self._device.open_path(self.path)
        except (OSError, ValueError) as e:
            raise HardwareError(f"HID connection failed: {e}") from e

    def exchange(self, apdu):
        """Send one APDU; returns (data, sw1, sw2) or None for an unusable answer."""
        self._seq = (self._seq + 1) & 0xFF
        frame = build_feature_request(apdu, self._seq)
        try:
            self._device.send_feature_report(bytes([REPORT_ID]) + frame)
            time.sleep(self.response_delay)
            resp = self._device.get_feature_report(REPORT_ID, config.HID_REPORT_SIZE + 1)
        except (OSError, ValueError) as e:
            raise HardwareError(f"{self.label}: HID I/O error: {e}") from e
        # hidapi keeps the report id in front of the payload
        return parse_feature_response(bytes(resp)[1:])

    def transmit(self, apdu):
        result = self.exchange(apdu)
        if result is None:
            raise HardwareError(f"{self.label}: short or garbled response")
        return result

    def poll_uid(self):
        """Return the UID of the card on the reader, or None."""
        result = self.exchange(APDU_GET_UID)
        if result is None:
            return None
        data, sw1, sw2 = result
        if (sw1, sw2) != SW_OK:
            return None
        uid = hex_string(data)
        return uid if valid_uid(uid) else None

    def close(self):
        def _close():
            if self._device is not None:
                try:
                    self._device.close()
                except (OSError, ValueError):
                    pass
        self.executor.submit(_close)
        self.executor.shutdown(wait=False)


class HidTransport:
    """Hotplug scan plus one poll loop per opened HID reader."""

    def __init__(
        self,
        sink,
        vendor_id=config.HID_VENDOR_ID,
        product_id=config.HID_PRODUCT_ID,
        poll_interval=config.HID_POLL_INTERVAL,
        rescan_interval=config.HID_RESCAN_INTERVAL,
        enumerate_devices=None,
        reader_factory=HidReader,
    ):
        self.sink = sink
        self.vendor_id = vendor_id
        self.product_id = product_id
        self.poll_interval = poll_interval
        self.rescan_interval = rescan_interval
        self.enumerate_devices = enumerate_devices or hid.enumerate
        self.reader_factory = reader_factory
        self.readers = {}
        self._pollers = {}
        self._task = None

    def start(self):
        self._task = asyncio.create_task(self._run(), name="hid-hotplug")
        log.info("Waiting for HID reader %04X:%04X...", self.vendor_id, self.product_id)

    async def stop(self):
        tasks = [t for t in [self._task, *self._pollers.values()] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for reader in list(self.readers.values()):
            self._detach(reader)

    async def _run(self):
        while True:
            await self.rescan()
            await asyncio.sleep(self.rescan_interval)

    async def rescan(self):
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.run_in_executor(
                None, self.enumerate_devices, self.vendor_id, self.product_id
            )
        except OSError as e:
            log.error("HID enumeration failed: %s", e)
            return

        seen = set()
        for info in infos:
            seen.add(info["path"])
            if info["path"] in self.readers:
                continue
            reader = self.reader_factory(info)
            try:
                await loop.run_in_executor(reader.executor, reader.open)
            except HardwareError as e:
                log.error("%s", e)
                reader.close()
                continue
            self.readers[info["path"]] = reader
            log.info("Reader found: %s", reader.label)
            self.sink.reader_attached(reader)
            self._pollers[info["path"]] = asyncio.create_task(self.poll(reader))

        for path, reader in list(self.readers.items()):
            if path not in seen:
                self._detach(reader)

    def _detach(self, reader):
        if self.readers.pop(reader.path, None) is None:
            return
        poller = self._pollers.pop(reader.path, None)
        if poller is not None and poller is not asyncio.current_task():
            poller.cancel()
        log.warning("Reader disconnected: %s", reader.label)
        self.sink.reader_detached(reader)
        reader.close()

    async def poll(self, reader):
        """Poll one reader and report detections / removals."""
        loop = asyncio.get_running_loop()
        last_uid = None
        while True:
            try:
                uid = await loop.run_in_executor(reader.executor, reader.poll_uid)
            except HardwareError as e:
                log.error("%s", e)
                self.sink.reader_error(reader, e)
                self._detach(reader)
                return

            if uid is not None and uid != last_uid:
                last_uid = uid
                self.sink.reader_event(reader, CardDetected(uid))
            elif uid is None and last_uid is not None:
                self.sink.reader_event(reader, CardRemoved(last_uid))
                last_uid = None

            await asyncio.sleep(self.poll_interval)
