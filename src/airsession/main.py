"""AirSession command-line entrypoint."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Iterable, Iterator, TextIO

import torch

from .config import AppConfig, GenerationDefaults, RootConfig, load_config
from .controller import SessionController
from .engines.base import DeviceSpec, GenerationSpec
from .logging_utils import configure_logging
from .metrics.instrumentation import GenerationMonitor, GenerationReport
from .resolver import ModelResolver
from .state import Completed, Error, LifecycleState, is_active

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 0.1


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stream generations from a local model")
    parser.add_argument("--config", default="configs/airsession.yaml")
    parser.add_argument("--model", required=True, help="model path, file:// URI or configured model key")
    parser.add_argument("--prompt", action="append", help="prompt to run; repeatable, stdin when omitted")
    parser.add_argument("--gpu-index", type=int)
    parser.add_argument("--context-length", type=int)
    parser.add_argument("--max-new-tokens", type=int)
    parser.add_argument("--log-level")
    parser.add_argument("--offline", action="store_true")
    return parser.parse_args(argv)


def apply_overrides(cfg: RootConfig, args: argparse.Namespace) -> RootConfig:
    if args.gpu_index is not None:
        cfg.app.gpu_index = args.gpu_index
    if args.context_length is not None:
        cfg.session.context_length = args.context_length
    if args.max_new_tokens is not None:
        cfg.generation.max_new_tokens = args.max_new_tokens
    if args.log_level:
        cfg.app.log_level = args.log_level.upper()
    if args.offline:
        cfg.app.offline_mode = True
    return cfg


def ensure_offline(cfg: AppConfig) -> None:
    if cfg.offline_mode:
        os.environ.setdefault("HF_HUB_OFFLINE", "1")
        os.environ.setdefault("TRANSFORMERS_OFFLINE", "1")


def build_device(cfg: AppConfig) -> DeviceSpec:
    if torch.cuda.is_available() and cfg.gpu_index is not None and cfg.gpu_index >= 0:
        return DeviceSpec(kind="cuda", gpu_index=cfg.gpu_index)
    return DeviceSpec(kind="cpu", gpu_index=None)


def build_generation_spec(gen: GenerationDefaults) -> GenerationSpec:
    return GenerationSpec(
        max_new_tokens=gen.max_new_tokens,
        temperature=gen.temperature,
        top_p=gen.top_p,
        do_sample=gen.do_sample,
        system_prompt=gen.system_prompt,
    )


def metrics_line(report: GenerationReport) -> str:
    if report.error:
        return f"[error] {report.error}"
    vram = f"{report.vram_peak_mb:.2f}" if report.vram_peak_mb is not None else "n/a"
    return (
        f"[{report.token_count} tokens in {report.duration_ms}ms, "
        f"{report.tokens_per_s:.2f} tok/s, ram_peak_mb={report.ram_peak_mb:.2f}, vram_peak_mb={vram}]"
    )


def read_prompts(stream: TextIO) -> Iterator[str]:
    interactive = stream.isatty()
    while True:
        if interactive:
            print("> ", end="", flush=True)
        line = stream.readline()
        if not line:
            return
        line = line.strip()
        if line:
            yield line


def wait_until_settled(controller: SessionController) -> LifecycleState:
    """Block until the session leaves its active state; Ctrl-C aborts it."""
    try:
        while not controller.state.wait_for(lambda s: not is_active(s), timeout=POLL_INTERVAL_S):
            pass
    except KeyboardInterrupt:
        controller.abort()
    return controller.state.value


class TextPrinter:
    """Writes only the new suffix of the accumulated text."""

    def __init__(self, out: TextIO) -> None:
        self._out = out
        self._printed = 0

    def __call__(self, text: str) -> None:
        if len(text) < self._printed:
            self._printed = 0
        if len(text) > self._printed:
            self._out.write(text[self._printed:])
            self._out.flush()
            self._printed = len(text)


def run_session(
    controller: SessionController,
    reference: str,
    prompts: Iterable[str],
    out: TextIO = sys.stdout,
) -> int:
    if not controller.load(reference):
        return 1
    state = wait_until_settled(controller)
    if isinstance(state, Error):
        print(f"[error] {state.message}", file=sys.stderr)
        return 1
    if not controller.can_generate():
        return 1

    unsubscribe = controller.text.subscribe(TextPrinter(out))
    try:
        for prompt in prompts:
            if not controller.generate(prompt):
                state = controller.state.value
                if isinstance(state, Error):
                    print(f"[error] {state.message}", file=sys.stderr)
                    return 1
                continue
            state = wait_until_settled(controller)
            out.write("\n")
            out.flush()
            if isinstance(state, Error):
                print(f"[error] {state.message}", file=sys.stderr)
                return 1
            if isinstance(state, Completed):
                logger.debug("Completed %r", state)
    finally:
        unsubscribe()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = apply_overrides(load_config(args.config), args)
    configure_logging(cfg.app.log_level)
    ensure_offline(cfg.app)

    from .engines.airllm_engine import AirLLMEngine

    engine = AirLLMEngine(build_generation_spec(cfg.generation))
    resolver = ModelResolver(cfg.models)
    device = build_device(cfg.app)
    monitor = GenerationMonitor(
        cfg.app.sampling_interval_ms,
        device.gpu_index,
        on_report=lambda report: print(metrics_line(report), file=sys.stderr),
    )

    with SessionController(engine, resolver, cfg.session, device) as controller:
        monitor.attach(controller.state)
        try:
            prompts = args.prompt if args.prompt else read_prompts(sys.stdin)
            return run_session(controller, args.model, prompts)
        except KeyboardInterrupt:
            return 130
        finally:
            monitor.detach()


if __name__ == "__main__":
    sys.exit(main())
