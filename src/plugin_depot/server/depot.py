# src/plugin_depot/server/depot.py
import logging
import selectors
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from plugin_depot.catalog import CatalogStore
from plugin_depot.config import ServerConfig
from plugin_depot.server.handlers import handle_control, handle_download
from plugin_depot.watcher import PluginRootWatcher

logger = logging.getLogger(__name__)

CONTROL = "control"
DATA = "data"


class DepotServer:
    """
    The update server: one loop, two listeners, one pool of transfer workers.

    Each cycle of the loop, in order:
      1. consume the watcher's settled-change signal and rebuild the catalog
      2. drain every pending control-plane accept, answering each inline
      3. drain every pending data-plane accept, handing each to a worker

    Listeners are non-blocking, so the loop itself never blocks longer than
    one poll interval. Workers may block on their own socket (bounded by
    socket_timeout) without stalling accepts.
    """

    def __init__(self, config: ServerConfig, store: Optional[CatalogStore] = None):
        self.config = config
        self.store = store if store is not None else CatalogStore()
        self.watcher: Optional[PluginRootWatcher] = None
        if config.watch:
            self.watcher = PluginRootWatcher(config.plugins_dir, config.debounce_seconds)

        self._selector: Optional[selectors.BaseSelector] = None
        self._control_listener: Optional[socket.socket] = None
        self._data_listener: Optional[socket.socket] = None
        self._executor: Optional[ThreadPoolExecutor] = None

        self.control_port: Optional[int] = None
        self.data_port: Optional[int] = None
        self.running = False
        self._started = False

    # --- Lifecycle ---

    def start(self):
        """Build the first generation, bind both ports and start the watcher."""
        if self._started:
            return
        self.refresh_catalog()
        self._bind()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_transfer_workers,
            thread_name_prefix="depot-transfer",
        )
        if self.watcher:
            self.watcher.start()
        self._started = True
        self.running = True
        logger.info(
            f"Plugin depot online: control {self.config.host}:{self.control_port}, "
            f"data {self.config.host}:{self.data_port}"
        )

    def _bind(self):
        self._control_listener = socket.create_server((self.config.host, self.config.port))
        self.control_port = self._control_listener.getsockname()[1]

        self._data_listener = socket.create_server(
            (self.config.host, self.config.resolved_data_port())
        )
        self.data_port = self._data_listener.getsockname()[1]

        self._selector = selectors.DefaultSelector()
        for listener, tag in ((self._control_listener, CONTROL), (self._data_listener, DATA)):
            listener.setblocking(False)
            self._selector.register(listener, selectors.EVENT_READ, data=tag)

    def run(self):
        """Serve until stop() is called."""
        self.start()
        logger.info("Depot loop started.")
        try:
            while self.running:
                self.poll_once()
        except Exception as e:
            logger.critical(f"Depot loop crashed: {e}", exc_info=True)
            raise
        finally:
            logger.info("Depot shutting down...")
            self.close()
            logger.info("Depot resources released.")

    def serve_in_thread(self) -> threading.Thread:
        """Start the loop on a background thread (ports are bound on return)."""
        self.start()
        thread = threading.Thread(target=self.run, name="plugin-depot", daemon=True)
        thread.start()
        return thread

    def stop(self):
        self.running = False

    def close(self):
        self.running = False
        if self.watcher:
            self.watcher.stop()
        if self._selector:
            self._selector.close()
            self._selector = None
        for listener in (self._control_listener, self._data_listener):
            if listener is not None:
                try:
                    listener.close()
                except OSError as e:
                    logger.error(f"Error closing listener: {e}")
        self._control_listener = None
        self._data_listener = None
        if self._executor:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._started = False

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.stop()
        self.close()

    # --- Loop ---

    def poll_once(self, timeout: Optional[float] = None):
        """Run one cycle of the loop."""
        if timeout is None:
            timeout = self.config.poll_interval
        ready = {key.data for key, _ in self._selector.select(timeout=timeout)}

        if self.watcher and self.watcher.consume_change():
            logger.info("Change detected: refreshing plugins...")
            self.refresh_catalog()

        if CONTROL in ready:
            self._drain_control()
        if DATA in ready:
            self._drain_data()

    def refresh_catalog(self):
        """Rebuild from disk; on failure keep serving the previous generation."""
        try:
            self.store.rebuild(self.config.plugins_dir)
        except Exception as e:
            logger.error(f"Catalog rebuild failed, keeping previous generation: {e}", exc_info=True)

    def _accept(self, listener: socket.socket) -> Optional[socket.socket]:
        try:
            conn, addr = listener.accept()
        except (BlockingIOError, InterruptedError):
            return None
        except OSError as e:
            logger.warning(f"Accept failed: {e}")
            return None
        conn.settimeout(self.config.socket_timeout)
        logger.debug(f"Accepted connection from {addr[0]}:{addr[1]}")
        return conn

    def _drain_control(self):
        while True:
            conn = self._accept(self._control_listener)
            if conn is None:
                return
            handle_control(conn, self.store.current, self.config.max_request_bytes)

    def _drain_data(self):
        while True:
            conn = self._accept(self._data_listener)
            if conn is None:
                return
            # The worker keeps this generation alive until its transfer ends
            self._executor.submit(handle_download, conn, self.store.current)


def run_server(config: ServerConfig):
    server = DepotServer(config)
    try:
        server.run()
    except KeyboardInterrupt:
        logger.info("Depot shutting down.")
