# src/plugin_depot/watcher.py
"""
Plugin root watcher.

Watches the plugin root recursively and turns bursts of filesystem events into
one settled change signal after a quiescence window. The server loop polls
consume_change() each cycle and rebuilds the catalog when it returns True.

Events that never warrant a rebuild are dropped:
- anything touching a packaged archive (*.zip), since the packager writes
  those during every rebuild
- directory "modified" events (a child create/delete is reported on its own)
- read-only events (opened, closed_no_write) produced by the rebuild itself

Watcher failures are logged and never fatal; without a watcher the depot just
keeps serving the generation it has.
"""

import logging
import platform
import threading
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler

# Use PollingObserver on macOS to avoid fsevents thread safety issues during
# rapid observer start/stop cycles
if platform.system() == "Darwin":
    from watchdog.observers.polling import PollingObserver as Observer
else:
    from watchdog.observers import Observer

from plugin_depot.services.archive import ARCHIVE_SUFFIX
from plugin_depot.services.paths import has_suffix

logger = logging.getLogger(__name__)

MUTATING_EVENTS = {"created", "deleted", "modified", "moved", "closed"}


class Debouncer:
    """
    Collapses a burst of triggers into one callback after `delay` seconds of quiet.
    """

    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self.callback = callback
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self.pending_events = 0

    def trigger(self):
        with self._lock:
            self.pending_events += 1
            if self._timer:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self):
        with self._lock:
            count = self.pending_events
            self.pending_events = 0
            self._timer = None
        try:
            logger.debug(f"Change settled after {count} events")
            self.callback()
        except Exception as e:
            logger.error(f"Debounced callback failed: {e}", exc_info=True)

    def cancel(self):
        with self._lock:
            if self._timer:
                self._timer.cancel()
            self._timer = None
            self.pending_events = 0


def is_relevant_event(event: FileSystemEvent) -> bool:
    """True if `event` could change what the catalog contains."""
    if event.event_type not in MUTATING_EVENTS:
        return False
    if event.is_directory and event.event_type == "modified":
        return False

    paths = [str(event.src_path)]
    dest_path = getattr(event, "dest_path", "")
    if dest_path:
        paths.append(str(dest_path))
    if any(has_suffix(path, ARCHIVE_SUFFIX) for path in paths):
        return False
    return True


class PluginChangeHandler(FileSystemEventHandler):
    """Watchdog handler that forwards relevant events to a Debouncer."""

    def __init__(self, debouncer: Debouncer):
        super().__init__()
        self.debouncer = debouncer

    def on_any_event(self, event: FileSystemEvent) -> None:
        try:
            if not is_relevant_event(event):
                return
            logger.debug(f"Plugin root change: {event.event_type} {event.src_path}")
            self.debouncer.trigger()
        except Exception as e:
            logger.error(f"File watch error: {e}", exc_info=True)


class PluginRootWatcher:
    """
    Owns the watchdog observer for one plugin root and exposes the settled
    change signal.
    """

    def __init__(self, plugin_root: Path, debounce_seconds: float = 10.0):
        self.plugin_root = Path(plugin_root)
        self._changed = threading.Event()
        self.debouncer = Debouncer(debounce_seconds, self._changed.set)
        self.handler = PluginChangeHandler(self.debouncer)
        self.observer = None

    def start(self) -> bool:
        """
        Start watching. Returns False (and logs) if the observer cannot start.
        """
        try:
            self.plugin_root.mkdir(parents=True, exist_ok=True)
            self.observer = Observer()
            self.observer.schedule(self.handler, str(self.plugin_root), recursive=True)
            self.observer.start()
        except Exception as e:
            logger.error(f"File watch error: {e}. Hot reload disabled.", exc_info=True)
            self.observer = None
            return False
        logger.info(f"Watching {self.plugin_root} for plugin changes")
        return True

    def stop(self):
        self.debouncer.cancel()
        if self.observer is None:
            return
        try:
            self.observer.stop()
            self.observer.join(timeout=3)
            if self.observer.is_alive():
                logger.warning("Observer thread did not stop cleanly")
        except Exception as e:
            logger.error(f"Error stopping observer: {e}", exc_info=True)
        finally:
            self.observer = None

    @property
    def is_running(self) -> bool:
        return self.observer is not None and self.observer.is_alive()

    def notify(self):
        """Feed one change by hand (same path as a filesystem event)."""
        self.debouncer.trigger()

    def consume_change(self) -> bool:
        """Non-blocking: True once per settled change."""
        if self._changed.is_set():
            self._changed.clear()
            return True
        return False
