"""Peak GPU memory sampler using NVML, disabled when NVML is unavailable."""
from __future__ import annotations

import logging
import threading

try:
    import pynvml  # provided by nvidia-ml-py
except Exception:  # pragma: no cover
    pynvml = None

logger = logging.getLogger(__name__)


class VramMonitor:
    def __init__(self, interval_ms: int, gpu_index: int | None) -> None:
        self._interval = interval_ms / 1000.0
        self._gpu_index = gpu_index if gpu_index is not None else 0
        self._peak = 0
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None
        self._enabled = pynvml is not None and gpu_index is not None
        self._handle = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self) -> None:
        if not self._enabled:
            return
        try:
            pynvml.nvmlInit()
            self._handle = pynvml.nvmlDeviceGetHandleByIndex(self._gpu_index)
        except pynvml.NVMLError as exc:
            logger.debug("NVML unavailable, VRAM sampling disabled: %s", exc)
            self._enabled = False
            return
        self._peak = 0
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name="vram-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> float | None:
        """Stop sampling and return the peak used VRAM in MiB, or None when disabled."""
        if not self._enabled:
            return None
        self._stopped.set()
        if self._thread:
            self._thread.join(timeout=1.0)
            self._thread = None
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError as exc:
            logger.debug("nvmlShutdown failed: %s", exc)
        return self._peak / (1024 * 1024)

    def _run(self) -> None:
        while True:
            try:
                used = pynvml.nvmlDeviceGetMemoryInfo(self._handle).used
                if used > self._peak:
                    self._peak = used
            except pynvml.NVMLError as exc:
                logger.debug("VRAM sample failed: %s", exc)
            if self._stopped.wait(self._interval):
                return
