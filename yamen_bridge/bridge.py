"""
Bridge orchestrator.

Owns the device registry (one Device actor per attached reader), receives
transport notifications on the event loop, and wires the heartbeat, the
remote action listener and the operator notifier together.
"""

import asyncio
import itertools
import logging

from . import __version__, config
from .device import Device
from .heartbeat import HeartbeatEmitter

log = logging.getLogger("yamen_bridge")


class Bridge:
    def __init__(self, terminal, codec, cloud, notifier, transport_factory, listener_factory=None):
        self.terminal = terminal
        self.codec = codec
        self.cloud = cloud
        self.notifier = notifier
        self.devices = {}
        self.transport = transport_factory(self)
        self.listener = listener_factory(self) if listener_factory else None
        self.heartbeat = HeartbeatEmitter(cloud, terminal.terminal_id, lambda: list(self.devices.values()))
        self._counter = itertools.count()
        self._tasks = set()
        self._listener_task = None
        self._shutting_down = False

    # -- transport sink ------------------------------------------------------

    def reader_attached(self, reader):
        if reader.name in self.devices:
            return
        device_id = f"device-{next(self._counter)}"
        device = Device(device_id, reader, self.codec, self.cloud, self.notifier,
                        self.terminal.terminal_id)
        self.devices[reader.name] = device
        device.start()
        log.info("[READER] Device found: %s (%s)", device.label, device_id)
        self._readers_changed()

    def reader_detached(self, reader):
        device = self.devices.pop(reader.name, None)
        if device is None:
            return
        log.info("[READER] Disconnected: %s (%s, %d scans, %d errors)",
                 device.label, device.device_id, device.info.scans_count, device.info.errors_count)
        self._spawn(device.stop())
        self._readers_changed()

    def reader_event(self, reader, event):
        device = self.devices.get(reader.name)
        if device is not None:
            device.post(event)

    def reader_error(self, reader, error):
        device = self.devices.get(reader.name)
        if device is not None:
            device.info.record_error(error)

    def _readers_changed(self):
        self._spawn(self.notifier.reader_status(bool(self.devices)))
        if not self._shutting_down:
            self.heartbeat.trigger()

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- queries -------------------------------------------------------------

    def find_device(self, uid):
        """Return the device whose reader currently tracks `uid`, or None."""
        for device in self.devices.values():
            if device.state.uid == uid:
                return device
        return None

    # -- lifecycle -----------------------------------------------------------

    def banner(self):
        log.info("================================================")
        log.info("   YAMEN NFC CLOUD BRIDGE v%s", __version__)
        log.info("================================================")
        log.info("Terminal: %s (ID: %s)", self.terminal.terminal_name, self.terminal.terminal_id)
        log.info("================================================")

    async def start(self, operator_socket=config.OPERATOR_WS_ENABLED):
        self.banner()
        if operator_socket:
            await self.notifier.start()
        self._spawn(self._ensure_terminal())
        self.heartbeat.start()
        self.transport.start()
        if self.listener is not None:
            log.info("Listening for remote actions on terminal %s", self.terminal.terminal_id)
            self._listener_task = asyncio.create_task(self.listener.run(), name="remote-actions")
            self._listener_task.add_done_callback(self._listener_finished)

    def _listener_finished(self, task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error("Remote action listener stopped: %r", error)

    async def _ensure_terminal(self):
        ok = await self.cloud.ensure_terminal(self.terminal.terminal_id, self.terminal.terminal_name)
        if not ok:
            log.warning("Terminal registration check failed, scans may fail if the terminal doesn't exist.")

    async def shutdown(self):
        log.info("Shutting down...")
        self._shutting_down = True
        if self._listener_task is not None:
            self._listener_task.cancel()
            await asyncio.gather(self._listener_task, return_exceptions=True)
        await self.transport.stop()
        stops = [device.stop() for device in self.devices.values()]
        self.devices.clear()
        if stops:
            await asyncio.gather(*stops, return_exceptions=True)
        if self.listener is not None:
            await self.listener.wait_idle()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.heartbeat.stop()
        await self.notifier.stop()

    async def run(self, stop_event: asyncio.Event, operator_socket=config.OPERATOR_WS_ENABLED):
        await self.start(operator_socket)
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()
