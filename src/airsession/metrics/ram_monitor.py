"""Peak resident-set-size sampler."""
from __future__ import annotations

import threading

import psutil


class RamMonitor:
    def __init__(self, interval_ms: int) -> None:
        self._interval = interval_ms / 1000.0
        self._peak = 0
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None
        self._process = psutil.Process()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        self._peak = self._process.memory_info().rss
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name="ram-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> float:
        """Stop sampling and return the peak RSS in MiB."""
        self._stopped.set()
        if self._thread:
            self._thread.join(timeout=1.0)
            self._thread = None
        return self._peak / (1024 * 1024)

    def _run(self) -> None:
        while not self._stopped.wait(self._interval):
            rss = self._process.memory_info().rss
            if rss > self._peak:
                self._peak = rss
