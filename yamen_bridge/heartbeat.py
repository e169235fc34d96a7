import asyncio
import logging

from . import __version__, config
from .cloud import utcnow_iso
from .errors import SyncError

log = logging.getLogger("yamen_bridge.heartbeat")


class HeartbeatEmitter:
    """
    Terminal liveness reporting.

    Sends on a fixed timer and whenever `trigger()` is called (start, reader
    attach/detach). `stop()` cancels the timer and sends one last heartbeat
    flagged `is_shutdown`, so the dashboard can tell a deliberate stop from a
    terminal that went dark.
    """

    def __init__(self, cloud, terminal_id, devices, interval=config.HEARTBEAT_INTERVAL):
        self.cloud = cloud
        self.terminal_id = terminal_id
        self.devices = devices  # callable returning the attached Device objects
        self.interval = interval
        self._timer = None
        self._pending = set()

    def metadata(self, is_shutdown=False) -> dict:
        devices = list(self.devices())
        connected = bool(devices)
        if is_shutdown:
            device_name = None
        else:
            device_name = devices[0].label if connected else "NFC Bridge"
        return {
            "device_connected": connected and not is_shutdown,
            "device_name": device_name,
            "is_shutdown": is_shutdown,
            "last_heartbeat": utcnow_iso(),
            "bridge_version": __version__,
        }

    async def send(self, is_shutdown=False):
        try:
            await self.cloud.send_heartbeat(self.terminal_id, self.metadata(is_shutdown))
        except SyncError as e:
            log.error("%s", e)

    def start(self):
        self._timer = asyncio.create_task(self._run(), name="heartbeat")

    async def _run(self):
        while True:
            await self.send(False)
            await asyncio.sleep(self.interval)

    def trigger(self):
        task = asyncio.create_task(self.send(False))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def stop(self, timeout=config.SHUTDOWN_HEARTBEAT_TIMEOUT):
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        try:
            await asyncio.wait_for(self.send(True), timeout)
        except asyncio.TimeoutError:
            log.error("Shutdown heartbeat timed out")
