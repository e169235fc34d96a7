"""
Command line entry point.

    yamen-bridge                 run the bridge (PC/SC readers)
    yamen-bridge --hid           run the bridge with a USB HID reader
    yamen-bridge inject          sign cards presented on a local reader

Requires YAMEN_SECRET, SUPABASE_URL and SUPABASE_KEY (a .env file in the
working directory is read first). Exit code 1 on configuration errors.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv

from . import config
from .actions import RemoteActionListener, action_changes
from .bridge import Bridge
from .cloud import CloudSync
from .errors import ConfigurationError
from .inject import Injector
from .notify import Notifier
from .realtime import RealtimeChannel
from .settings import load_secret, load_store_settings, load_terminal_config
from .signature import SignatureCodec
from .store import RestStore

log = logging.getLogger("yamen_bridge")


def setup_logging(verbose=False):
    level = logging.DEBUG if verbose else os.environ.get(config.LOG_LEVEL_ENV, config.LOG_LEVEL)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s"
    )


def transport_factory(backend):
    if backend == "hid":
        from .hid_reader import HidTransport
        return HidTransport
    from .pcsc_reader import PcscTransport
    return PcscTransport


def build_parser():
    parser = argparse.ArgumentParser(prog="yamen-bridge", description="Yamen NFC terminal bridge")
    parser.add_argument("--hid", action="store_const", const="hid", dest="backend",
                        default=config.READER_BACKEND, help="use a USB HID reader instead of PC/SC")
    parser.add_argument("--config-dir", default=None,
                        help="directory holding TERMINAL_CONFIG.json (default: working directory)")
    parser.add_argument("--operator-socket", action="store_true", default=config.OPERATOR_WS_ENABLED,
                        help=f"broadcast notifications on ws://{config.OPERATOR_WS_HOST}:{config.OPERATOR_WS_PORT}")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="run the bridge (default)")
    sub.add_parser("inject", help="write signatures to cards on a local reader")
    return parser


def install_signal_handlers(stop_event):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass  # Windows: Ctrl+C arrives as KeyboardInterrupt


async def run_bridge(args):
    codec = SignatureCodec(load_secret())
    store_settings = load_store_settings()
    terminal = load_terminal_config(args.config_dir)

    cloud = CloudSync(RestStore(store_settings.url, store_settings.key))
    notifier = Notifier()

    def listener_factory(bridge):
        channel = RealtimeChannel(
            store_settings.url,
            store_settings.key,
            f"terminal-actions-{terminal.terminal_id}",
            action_changes(terminal.terminal_id),
        )
        return RemoteActionListener(channel, cloud, bridge, codec, notifier)

    bridge = Bridge(terminal, codec, cloud, notifier,
                    transport_factory(args.backend), listener_factory)
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    try:
        await bridge.run(stop_event, operator_socket=args.operator_socket)
    finally:
        cloud.close()


async def run_injector(args):
    codec = SignatureCodec(load_secret())
    injector = Injector(codec, transport_factory(args.backend))
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)
    await injector.run(stop_event)


def main(argv=None):
    args = build_parser().parse_args(argv)
    load_dotenv()
    setup_logging(args.verbose)

    command = run_injector if args.command == "inject" else run_bridge
    try:
        asyncio.run(command(args))
    except ConfigurationError as e:
        log.critical("CRITICAL: %s", e)
        return 1
    except KeyboardInterrupt:
        log.info("Shutting down")
    except Exception:
        log.exception("CRITICAL ERROR during startup")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
