"""AirLLM engine implementation.

Each loaded model gets an integer handle. ``generate`` runs the model on a
worker thread; a streamer turns every produced token into an ``Ongoing``
event and a stopping criterion ends the run once the request is aborted.
"""
from __future__ import annotations

import itertools
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Hashable

import torch
from transformers import StoppingCriteria, StoppingCriteriaList
from transformers.generation.streamers import BaseStreamer

from .base import (
    DeviceSpec,
    Done,
    EventSink,
    Failed,
    GenerationSpec,
    LoadConfig,
    Ongoing,
    Started,
)
from ..errors import EngineError
from ..prompts import render_prompt

logger = logging.getLogger(__name__)

ModelLoader = Callable[[LoadConfig], Any]


def load_airllm_model(config: LoadConfig) -> Any:
    from airllm import AutoModel

    return AutoModel.from_pretrained(
        config.model_path,
        layer_shards_saving_path=config.layer_cache_dir or None,
        compression=config.compression,
    )



def _ensure_safetensors_index(model_path: str) -> None:
    index_path = Path(model_path) / "model.safetensors.index.json"
    if index_path.exists():
        return
    st_path = Path(model_path) / "model.safetensors"
    if not st_path.exists():
        return
    from safetensors import safe_open

    with safe_open(str(st_path), framework="pt") as f:
        weight_map = {key: st_path.name for key in f.keys()}
    data = {
        "metadata": {"total_size": os.path.getsize(st_path)},
        "weight_map": weight_map,
    }
    with open(index_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle)
    logger.info("Wrote single-shard index %s", index_path)


def _torch_device(device: DeviceSpec | None) -> torch.device:
    if device is not None and device.kind == "cuda" and torch.cuda.is_available():
        index = device.gpu_index if device.gpu_index is not None else 0
        return torch.device(f"cuda:{index}")
    return torch.device("cpu")


class _AbortCriteria(StoppingCriteria):
    def __init__(self, abort: threading.Event) -> None:
        self._abort = abort

    def __call__(self, input_ids: torch.LongTensor, scores: torch.FloatTensor, **kwargs) -> torch.BoolTensor:
        return torch.full(
            (input_ids.shape[0],), self._abort.is_set(), dtype=torch.bool, device=input_ids.device
        )


class _TokenStreamer(BaseStreamer):
    """Emits one ``Ongoing`` per generated token.

    The first ``put`` carries the prompt ids and is skipped. Text is decoded
    over all generated ids so multi-token characters come out whole; while a
    character is incomplete the fragment is empty.
    """

    def __init__(self, tokenizer: Any, emit: EventSink | None, abort: threading.Event) -> None:
        self._tokenizer = tokenizer
        self._emit = emit
        self._abort = abort
        self._ids: list[int] = []
        self._prompt_seen = False
        self.text = ""
        self.token_count = 0

    def put(self, value: torch.Tensor) -> None:
        if not self._prompt_seen:
            self._prompt_seen = True
            return
        if value.ndim > 1:
            value = value[0]
        for token_id in value.tolist():
            self._ids.append(int(token_id))
            decoded = self._tokenizer.decode(self._ids, skip_special_tokens=True)
            fragment = ""
            if not decoded.endswith("\ufffd"):
                fragment = decoded[len(self.text):]
                self.text = decoded
            self.token_count += 1
            if self._emit is not None and not self._abort.is_set():
                self._emit(Ongoing(fragment, self.token_count))

    def end(self) -> None:
        pass


@dataclass
class _Request:
    abort: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None


@dataclass
class _Session:
    model: Any
    tokenizer: Any
    device: torch.device
    context_length: int
    request: _Request | None = None


class AirLLMEngine:
    def __init__(self, generation: GenerationSpec, model_loader: ModelLoader = load_airllm_model) -> None:
        self._generation = generation
        self._model_loader = model_loader
        self._sessions: dict[int, _Session] = {}
        self._handles = itertools.count(1)
        self._lock = threading.Lock()

    def load(self, config: LoadConfig) -> Hashable:
        if config.model_path is None:
            raise EngineError("AirLLM loads from a model directory; byte streams are not supported")
        if not config.use_mmap or config.use_mlock:
            logger.debug("AirLLM ignores mmap/mlock hints for %s", config.reference)

        model_path = config.model_path
        device = _torch_device(config.device)
        if os.path.isdir(model_path):
            _ensure_safetensors_index(model_path)
        if config.layer_cache_dir:
            os.makedirs(config.layer_cache_dir, exist_ok=True)

        model = self._model_loader(config)
        tokenizer = getattr(model, "tokenizer", None)
        if tokenizer is None:
            raise EngineError("Model tokenizer not available")

        with self._lock:
            handle = next(self._handles)
            self._sessions[handle] = _Session(
                model=model,
                tokenizer=tokenizer,
                device=device,
                context_length=config.context_length,
            )
        logger.info("Loaded %s on %s as handle %d", config.reference, device, handle)
        return handle

    def generate(self, handle: Hashable, prompt: str, partial: bool, emit: EventSink) -> None:
        with self._lock:
            session = self._get(handle)
            previous = session.request
            request = _Request()
            request.thread = threading.Thread(
                target=self._run,
                args=(session, request, previous, prompt, partial, emit),
                name=f"airllm-generate-{handle}",
                daemon=True,
            )
            session.request = request
        request.thread.start()

    def abort(self, handle: Hashable) -> None:
        with self._lock:
            session = self._sessions.get(handle)
            if session is not None and session.request is not None:
                session.request.abort.set()

    def stop(self, handle: Hashable) -> None:
        with self._lock:
            session = self._sessions.get(handle)
            if session is None or session.request is None:
                return
            if session.request.thread is None or not session.request.thread.is_alive():
                session.request = None

    def release(self, handle: Hashable) -> None:
        with self._lock:
            session = self._sessions.pop(handle, None)
        if session is None:
            return
        # a running worker keeps its own reference and exits at the next token
        if session.request is not None:
            session.request.abort.set()
        session.model = None
        session.tokenizer = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
        logger.info("Released handle %s", handle)

    def _get(self, handle: Hashable) -> _Session:
        session = self._sessions.get(handle)
        if session is None:
            raise EngineError(f"Unknown session handle: {handle}")
        return session

    def _run(
        self,
        session: _Session,
        request: _Request,
        previous: _Request | None,
        prompt: str,
        partial: bool,
        emit: EventSink,
    ) -> None:
        if previous is not None and previous.thread is not None:
            previous.abort.set()
            previous.thread.join()
        if request.abort.is_set():
            return

        model, tokenizer, device = session.model, session.tokenizer, session.device
        gen = self._generation
        emit(Started(prompt))
        try:
            rendered = render_prompt(tokenizer, prompt, gen.system_prompt)
            inputs = tokenizer(
                rendered,
                return_tensors="pt",
                truncation=True,
                max_length=session.context_length,
            )
            input_ids = inputs["input_ids"].to(device)
            attention_mask = inputs.get("attention_mask")
            if attention_mask is not None:
                attention_mask = attention_mask.to(device)

            streamer = _TokenStreamer(tokenizer, emit if partial else None, request.abort)
            start = time.perf_counter()
            with torch.inference_mode():
                model.generate(
                    input_ids=input_ids,
                    attention_mask=attention_mask,
                    max_new_tokens=gen.max_new_tokens,
                    temperature=gen.temperature,
                    top_p=gen.top_p,
                    do_sample=gen.do_sample,
                    use_cache=False,
                    streamer=streamer,
                    stopping_criteria=StoppingCriteriaList([_AbortCriteria(request.abort)]),
                )
            if device.type == "cuda":
                torch.cuda.synchronize(device)
            end = time.perf_counter()
        except Exception as exc:  # noqa: BLE001
            if request.abort.is_set():
                logger.debug("Generation raised after abort: %s", exc)
                return
            logger.exception("Generation failed")
            emit(Failed(str(exc) or type(exc).__name__, exc))
            return

        if request.abort.is_set():
            logger.info("Generation aborted after %d tokens", streamer.token_count)
            return
        emit(Done(streamer.text, streamer.token_count, int((end - start) * 1000)))
