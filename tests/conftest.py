import asyncio
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from yamen_bridge.errors import AuthenticationFailure, ReadError, SyncError, WriteError
from yamen_bridge.signature import SignatureCodec

SECRET = "test-secret-32-characters-long!!"


@pytest.fixture
def codec():
    return SignatureCodec(SECRET)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeReader:
    """In-memory card reader with the ApduReader surface."""

    def __init__(self, name="ACS ACR122U 00 00", block_data=None, classic=True, read_delay=0.0):
        self.name = name
        self.label = name
        self.executor = ThreadPoolExecutor(max_workers=1)
        self.block_data = block_data
        self.classic = classic
        self.read_delay = read_delay
        self.read_fails = False
        self.write_error = None
        self.calls = []
        self.writes = []

    def authenticate(self, block, key_type, key):
        self.calls.append(("authenticate", block, key_type, key))
        if not self.classic:
            raise AuthenticationFailure(f"Auth block {block} failed: SW=6300")

    def read(self, block, length=16):
        self.calls.append(("read", block, length))
        if self.read_delay:
            time.sleep(self.read_delay)
        if self.read_fails or self.block_data is None:
            raise ReadError(f"Read block {block} failed: SW=6300", 0x63, 0x00)
        return bytes(self.block_data[:length])

    def write(self, block, data, block_size=16):
        self.calls.append(("write", block, block_size))
        if self.write_error is not None:
            raise self.write_error
        self.writes.append((block, bytes(data), block_size))
        self.block_data = bytes(data)


class FakeCloud:
    def __init__(self):
        self.scans = []
        self.closed = []
        self.updates = []
        self.cards = []
        self.completed = []
        self.failed = []
        self.heartbeats = []
        self.record_failures = 0
        self.scan_times = []
        self._next_id = 100

    async def record_scan(self, payload):
        self.scan_times.append(time.monotonic())
        if self.record_failures:
            self.record_failures -= 1
            raise SyncError("Max retries exceeded")
        self._next_id += 1
        self.scans.append(dict(payload, id=self._next_id))
        return self._next_id

    async def update_scan(self, event_id, fields):
        self.updates.append((event_id, fields))

    async def close_scan(self, event_id):
        self.closed.append(event_id)

    async def mark_card_secured(self, uid, signature_hex=None, only_if_unknown=False):
        self.cards.append((uid, signature_hex, only_if_unknown))

    async def complete_action(self, action_id):
        self.completed.append(action_id)

    async def fail_action(self, action_id, message):
        self.failed.append((action_id, message))

    async def send_heartbeat(self, terminal_id, metadata):
        self.heartbeats.append((terminal_id, metadata))

    async def ensure_terminal(self, terminal_id, terminal_name):
        return True


class FakeNotifier:
    def __init__(self):
        self.notifications = []
        self.scans = []
        self.statuses = []

    async def notify(self, title, message, level=None):
        self.notifications.append((title, message))

    async def scan(self, uid, status, secured=None, device_id=None):
        self.scans.append((uid, status, secured))

    async def reader_status(self, connected):
        self.statuses.append(connected)

    async def start(self):
        pass

    async def stop(self):
        pass


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def clock():
    return FakeClock()


def run(coro):
    return asyncio.run(coro)


class RecordingSink:
    """Transport sink that records what a transport reports."""

    def __init__(self):
        self.attached = []
        self.detached = []
        self.events = []
        self.errors = []

    def reader_attached(self, reader):
        self.attached.append(reader)

    def reader_detached(self, reader):
        self.detached.append(reader)

    def reader_event(self, reader, event):
        self.events.append(event)

    def reader_error(self, reader, error):
        self.errors.append(error)
