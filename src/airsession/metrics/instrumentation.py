"""Resource instrumentation driven by lifecycle state changes."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

from .ram_monitor import RamMonitor
from .vram_monitor import VramMonitor
from ..state import Completed, Error, Generating, LifecycleState, Observable

logger = logging.getLogger(__name__)


@dataclass
class GenerationReport:
    prompt: str
    token_count: int
    duration_ms: int
    tokens_per_s: float
    ram_peak_mb: float
    vram_peak_mb: float | None
    error: str | None = None


def tokens_per_second(token_count: int, duration_ms: int) -> float:
    if duration_ms <= 0:
        return 0.0
    return token_count / (duration_ms / 1000.0)


class GenerationMonitor:
    """Samples RAM/VRAM peaks for each generation seen on a state observable.

    Monitoring starts when the state becomes ``Generating`` and ends on the
    next ``Completed`` or ``Error``; each finished generation produces one
    ``GenerationReport``.
    """

    def __init__(
        self,
        sampling_interval_ms: int,
        gpu_index: int | None,
        on_report: Callable[[GenerationReport], None] | None = None,
    ) -> None:
        self._interval = sampling_interval_ms
        self._gpu_index = gpu_index
        self._on_report = on_report
        self._lock = threading.Lock()
        self._ram: RamMonitor | None = None
        self._vram: VramMonitor | None = None
        self._prompt: str | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self.reports: list[GenerationReport] = []

    def attach(self, state: Observable[LifecycleState]) -> None:
        self.detach()
        self._unsubscribe = state.subscribe(self.observe)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._lock:
            self._stop_monitors()

    @property
    def last_report(self) -> GenerationReport | None:
        return self.reports[-1] if self.reports else None

    def observe(self, state: LifecycleState) -> None:
        with self._lock:
            match state:
                case Generating(prompt=prompt):
                    if self._prompt is None:
                        self._prompt = prompt
                        self._ram = RamMonitor(self._interval)
                        self._vram = VramMonitor(self._interval, self._gpu_index)
                        self._ram.start()
                        self._vram.start()
                    return
                case Completed(prompt=prompt, token_count=count, duration_ms=duration):
                    error = None
                case Error(message=message):
                    if self._prompt is None:
                        return
                    prompt, count, duration, error = self._prompt, 0, 0, message
                case _:
                    return
            if self._prompt is None:
                return
            ram_peak, vram_peak = self._stop_monitors()
            report = GenerationReport(
                prompt=prompt,
                token_count=count,
                duration_ms=duration,
                tokens_per_s=tokens_per_second(count, duration),
                ram_peak_mb=ram_peak,
                vram_peak_mb=vram_peak,
                error=error,
            )
            self.reports.append(report)
        logger.debug("Generation report: %s", report)
        if self._on_report is not None:
            self._on_report(report)

    def _stop_monitors(self) -> tuple[float, float | None]:
        ram_peak = self._ram.stop() if self._ram is not None else 0.0
        vram_peak = self._vram.stop() if self._vram is not None else None
        self._ram = None
        self._vram = None
        self._prompt = None
        return ram_peak, vram_peak
