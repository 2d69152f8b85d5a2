"""Primary entry point for the Zoomer Stream Deck plugin."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

if __package__:
    from .version import __version__ as ZOOMER_VERSION
    from .zoomer_plugin.logging_utils import (
        HostLogHandler,
        build_rotating_file_handler,
        resolve_log_level,
        resolve_logs_dir,
    )
    from .zoomer_plugin.preferences import Preferences
    from .zoomer_plugin.runtime import PluginRuntime
    from .zoomer_plugin.streamdeck_connection import StreamDeckConnection
else:  # pragma: no cover - Stream Deck launches the file as a script
    from version import __version__ as ZOOMER_VERSION
    from zoomer_plugin.logging_utils import (
        HostLogHandler,
        build_rotating_file_handler,
        resolve_log_level,
        resolve_logs_dir,
    )
    from zoomer_plugin.preferences import Preferences
    from zoomer_plugin.runtime import PluginRuntime
    from zoomer_plugin.streamdeck_connection import StreamDeckConnection

PLUGIN_NAME = "Zoomer"
PLUGIN_VERSION = ZOOMER_VERSION
LOGGER_NAME = "Zoomer"
LOG_TAG = "Zoomer"
LOG_FILENAME = "zoomer.log"

LOGGER = logging.getLogger(LOGGER_NAME)


@dataclass(frozen=True)
class LaunchArgs:
    """Arguments Stream Deck passes when it starts the plugin process."""

    port: int
    plugin_uuid: str
    register_event: str
    info: Dict[str, Any] = field(default_factory=dict)


def parse_args(argv: Optional[Sequence[str]] = None) -> LaunchArgs:
    parser = argparse.ArgumentParser(prog=PLUGIN_NAME, description="Zoomer Stream Deck plugin")
    parser.add_argument("-port", type=int, required=True)
    parser.add_argument("-pluginUUID", dest="plugin_uuid", required=True)
    parser.add_argument("-registerEvent", dest="register_event", required=True)
    parser.add_argument("-info", default="{}")
    args = parser.parse_args(list(argv) if argv is not None else None)
    try:
        info = json.loads(args.info or "{}")
    except json.JSONDecodeError:
        info = {}
    return LaunchArgs(
        port=args.port,
        plugin_uuid=args.plugin_uuid,
        register_event=args.register_event,
        info=info if isinstance(info, dict) else {},
    )


def _configure_logger(preferences: Optional[Preferences] = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    preferred = preferences.log_level if preferences is not None else None
    logger.setLevel(resolve_log_level(preferred))
    if not any(getattr(handler, "_zoomer_handler", None) == "file" for handler in logger.handlers):
        formatter = logging.Formatter(f"[%(asctime)s] [{LOG_TAG}] %(message)s", "%H:%M:%S")
        retention = preferences.log_retention if preferences is not None else 5
        try:
            handler = build_rotating_file_handler(
                resolve_logs_dir(PLUGIN_NAME),
                LOG_FILENAME,
                retention=retention,
                formatter=formatter,
            )
        except OSError as exc:
            sys.stderr.write(f"[{LOG_TAG}] file logging unavailable: {exc}\n")
        else:
            handler._zoomer_handler = "file"  # type: ignore[attr-defined]
            logger.addHandler(handler)
    logger.propagate = False
    return logger


def _attach_host_handler(connection: StreamDeckConnection) -> logging.Handler:
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_zoomer_handler", None) == "host":
            logger.removeHandler(handler)
    handler = HostLogHandler(connection.log_message)
    handler._zoomer_handler = "host"  # type: ignore[attr-defined]
    handler.setFormatter(logging.Formatter(f"[{LOG_TAG}] %(levelname)s %(message)s"))
    logger.addHandler(handler)
    return handler


class _PluginHost:
    """Owns the asyncio loop thread that runs the Stream Deck runtime."""

    def __init__(self, plugin_dir: str, preferences: Preferences, launch: LaunchArgs) -> None:
        self.plugin_dir = Path(plugin_dir)
        self.preferences = preferences
        self.launch = launch
        self.runtime: Optional[PluginRuntime] = None
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._main_task: Optional["asyncio.Task[None]"] = None
        self._host_handler: Optional[logging.Handler] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # Lifecycle ------------------------------------------------------------

    def start(self) -> str:
        with self._lock:
            if self.running:
                return PLUGIN_NAME
            self._thread = threading.Thread(target=self._thread_main, name="Zoomer-Runtime", daemon=True)
            self._thread.start()
        LOGGER.info("Plugin %s started (port %d)", PLUGIN_VERSION, self.launch.port)
        return PLUGIN_NAME

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            loop = self._loop
            task = self._main_task
        if thread is None:
            return
        if loop is not None and task is not None and loop.is_running():
            loop.call_soon_threadsafe(task.cancel)
        thread.join(timeout=timeout)
        self._detach_host_handler()
        if thread.is_alive():
            LOGGER.warning("Runtime thread did not stop within %.1fs", timeout)
        with self._lock:
            self._thread = None
        LOGGER.info("Plugin stopped")

    def wait(self) -> None:
        thread = self._thread
        if thread is not None:
            thread.join()

    # Background thread ----------------------------------------------------

    def _thread_main(self) -> None:
        loop = asyncio.new_event_loop()
        self._loop = loop
        asyncio.set_event_loop(loop)
        try:
            self._main_task = loop.create_task(self._run())
            loop.run_until_complete(self._main_task)
        except asyncio.CancelledError:
            LOGGER.debug("Runtime task cancelled")
        except Exception:
            LOGGER.exception("Runtime terminated with an error")
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            self._loop = None
            self._main_task = None

    async def _run(self) -> None:
        connection = StreamDeckConnection(
            self.launch.port,
            self.launch.plugin_uuid,
            self.launch.register_event,
        )
        self._host_handler = _attach_host_handler(connection)
        self.runtime = PluginRuntime(connection, self.preferences)
        await self.runtime.run()

    def _detach_host_handler(self) -> None:
        handler = self._host_handler
        self._host_handler = None
        if handler is not None:
            logging.getLogger(LOGGER_NAME).removeHandler(handler)


# Plugin hook functions ----------------------------------------------------

_plugin: Optional[_PluginHost] = None
_preferences: Optional[Preferences] = None


def plugin_start(plugin_dir: str, launch: LaunchArgs) -> str:
    global _plugin, _preferences
    if _plugin is not None:
        return _plugin.start()
    _preferences = Preferences(Path(plugin_dir))
    _configure_logger(_preferences)
    LOGGER.info("Initialising Zoomer plugin from %s", plugin_dir)
    _plugin = _PluginHost(plugin_dir, _preferences, launch)
    return _plugin.start()


def plugin_stop() -> None:
    global _plugin, _preferences
    if _plugin:
        try:
            _plugin.stop()
        finally:
            _plugin = None
    _preferences = None


def main(argv: Optional[List[str]] = None) -> int:
    launch = parse_args(argv)
    plugin_dir = str(Path(__file__).resolve().parent)
    plugin_start(plugin_dir, launch)
    host = _plugin
    try:
        if host is not None:
            host.wait()
    except KeyboardInterrupt:
        LOGGER.info("Interrupted; shutting down")
    finally:
        plugin_stop()
    return 0


# Metadata expected by some plugin loaders
name = PLUGIN_NAME
version = PLUGIN_VERSION
plugin_name = PLUGIN_NAME


if __name__ == "__main__":  # pragma: no cover - Stream Deck launch
    sys.exit(main())
