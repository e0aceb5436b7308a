"""Engine protocol, load/generation dataclasses and generation events."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Hashable, Literal, Protocol, Union


@dataclass
class DeviceSpec:
    kind: Literal["cuda", "cpu"]
    gpu_index: int | None


@dataclass
class GenerationSpec:
    max_new_tokens: int
    temperature: float
    top_p: float
    do_sample: bool
    system_prompt: str | None = None


@dataclass
class LoadConfig:
    """Everything an engine needs to create a session.

    Exactly one of ``model_path`` or ``model_stream`` is expected to be set;
    ``use_mmap`` and ``use_mlock`` are hints the engine may ignore.
    """

    reference: str
    model_path: str | None
    model_stream: BinaryIO | None
    context_length: int
    use_mmap: bool = True
    use_mlock: bool = False
    compression: str | None = None
    layer_cache_dir: str = ""
    device: DeviceSpec | None = None


@dataclass(frozen=True)
class Loaded:
    reference: str
    handle: Hashable


@dataclass(frozen=True)
class Started:
    prompt: str


@dataclass(frozen=True)
class Ongoing:
    fragment: str
    token_count: int


@dataclass(frozen=True)
class Done:
    text: str
    token_count: int
    duration_ms: int


@dataclass(frozen=True)
class Failed:
    message: str
    cause: BaseException | None = None


GenerationEvent = Union[Loaded, Started, Ongoing, Done, Failed]

# Events that mark a boundary of a load or generation; channels never drop them.
BOUNDARY_EVENTS = (Loaded, Started, Done, Failed)

EventSink = Callable[[GenerationEvent], None]


class InferenceEngine(Protocol):
    def load(self, config: LoadConfig) -> Hashable:
        ...

    def generate(self, handle: Hashable, prompt: str, partial: bool, emit: EventSink) -> None:
        ...

    def abort(self, handle: Hashable) -> None:
        ...

    def stop(self, handle: Hashable) -> None:
        ...

    def release(self, handle: Hashable) -> None:
        ...


def describe(event: GenerationEvent) -> str:
    name = type(event).__name__
    fields: dict[str, Any] = {}
    if isinstance(event, Ongoing):
        fields = {"tokens": event.token_count}
    elif isinstance(event, Done):
        fields = {"tokens": event.token_count, "ms": event.duration_ms}
    elif isinstance(event, Failed):
        fields = {"message": event.message}
    elif isinstance(event, Loaded):
        fields = {"reference": event.reference}
    if not fields:
        return name
    return name + "(" + ", ".join(f"{k}={v}" for k, v in fields.items()) + ")"
