"""Signal handling for interrupted backup runs.

This module provides the SignalHandler class that handles SIGINT and
SIGTERM during a run: rsync is terminated and the process exits with
status 1. The in-progress marker and the partially written snapshot stay
in place; the next run finds the stale marker and resumes into that
snapshot.
"""

import logging
import signal
import subprocess
import sys
import threading
from typing import Any, Dict, Optional


EXIT_INTERRUPTED = 1


class SignalHandler:
    """
    Handles OS signals while a backup run is active.

    Usage:
        handler = SignalHandler()
        handler.register()
        handler.set_rsync_process(process)
        # ... run rsync ...
        handler.unregister()
    """

    SIGNALS = (signal.SIGTERM, signal.SIGINT)

    def __init__(self):
        self._rsync_process: Optional[subprocess.Popen] = None
        self._original_handlers: Dict[int, Any] = {}
        self._registered = False
        self._logger = logging.getLogger(__name__)

    def register(self) -> None:
        """
        Install handlers for SIGTERM and SIGINT.

        Signal handlers can only be installed from the main thread. From any
        other thread this only records the registration.
        """
        if threading.current_thread() is not threading.main_thread():
            self._logger.debug("Signal handlers not registered: not running in main thread")
            self._registered = True
            return

        try:
            for sig in self.SIGNALS:
                self._original_handlers[sig] = signal.signal(sig, self._handle_signal)
            self._logger.debug("Signal handlers registered")
        except ValueError as e:
            self._logger.debug(f"Signal handlers not registered: {e}")
        self._registered = True

    def set_rsync_process(self, process: Optional[subprocess.Popen]) -> None:
        """Set (or clear) the rsync subprocess to terminate on a signal."""
        self._rsync_process = process

    def unregister(self) -> None:
        """Restore the original signal handlers."""
        if not self._registered:
            return

        if self._original_handlers and threading.current_thread() is threading.main_thread():
            try:
                for sig, handler in self._original_handlers.items():
                    signal.signal(sig, handler)
            except ValueError:
                pass

        self._original_handlers.clear()
        self._rsync_process = None
        self._registered = False
        self._logger.debug("Signal handlers unregistered")

    @property
    def is_registered(self) -> bool:
        return self._registered

    def terminate_rsync(self) -> bool:
        """
        Stop the running rsync, escalating to SIGKILL after 5 seconds.

        Returns:
            True if a process was stopped
        """
        process = self._rsync_process
        if process is None or process.poll() is not None:
            return False

        try:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        except OSError as e:
            self._logger.warning(f"Error terminating rsync process: {e}")
            return False

        self._logger.debug("Rsync subprocess terminated")
        return True

    def _handle_signal(self, signum: int, frame: Any) -> None:
        """Terminate rsync and exit with status 1; the marker stays."""
        sig_name = signal.Signals(signum).name
        self._logger.info(f"{sig_name} caught.")
        self.terminate_rsync()
        sys.exit(EXIT_INTERRUPTED)
