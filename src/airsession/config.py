"""Configuration loading and dataclasses."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

import yaml

from .channel import DEFAULT_CAPACITY


@dataclass
class AppConfig:
    log_level: str = "INFO"
    offline_mode: bool = True
    gpu_index: int | None = 0
    sampling_interval_ms: int = 50


@dataclass
class SessionConfig:
    context_length: int = 2048
    use_mmap: bool = True
    use_mlock: bool = False
    channel_capacity: int = DEFAULT_CAPACITY
    compression: str | None = None
    layer_cache_dir: str = "./cache/airllm_layers"


@dataclass
class GenerationDefaults:
    max_new_tokens: int = 256
    temperature: float = 0.0
    top_p: float = 1.0
    do_sample: bool = False
    system_prompt: str | None = "You are a helpful assistant."


@dataclass
class ModelSpec:
    key: str
    display_name: str
    local_path: str


@dataclass
class RootConfig:
    app: AppConfig = field(default_factory=AppConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    generation: GenerationDefaults = field(default_factory=GenerationDefaults)
    models: list[ModelSpec] = field(default_factory=list)


def _get(data: dict[str, Any], key: str, default: Any) -> Any:
    return data.get(key, default) if isinstance(data, dict) else default


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def parse_config(raw: dict[str, Any]) -> RootConfig:
    app_raw = _get(raw, "app", {})
    session_raw = _get(raw, "session", {})
    gen_raw = _get(raw, "generation", {})
    models_raw = _get(raw, "models", [])

    app = AppConfig(
        log_level=str(_get(app_raw, "log_level", AppConfig.log_level)).upper(),
        offline_mode=bool(_get(app_raw, "offline_mode", AppConfig.offline_mode)),
        gpu_index=_optional_int(_get(app_raw, "gpu_index", AppConfig.gpu_index)),
        sampling_interval_ms=int(_get(app_raw, "sampling_interval_ms", AppConfig.sampling_interval_ms)),
    )

    session = SessionConfig(
        context_length=int(_get(session_raw, "context_length", SessionConfig.context_length)),
        use_mmap=bool(_get(session_raw, "use_mmap", SessionConfig.use_mmap)),
        use_mlock=bool(_get(session_raw, "use_mlock", SessionConfig.use_mlock)),
        channel_capacity=int(_get(session_raw, "channel_capacity", SessionConfig.channel_capacity)),
        compression=_get(session_raw, "compression", SessionConfig.compression),
        layer_cache_dir=_get(session_raw, "layer_cache_dir", SessionConfig.layer_cache_dir),
    )
    if session.context_length <= 0:
        raise ValueError(f"session.context_length must be positive, got {session.context_length}")
    if session.channel_capacity <= 0:
        raise ValueError(f"session.channel_capacity must be positive, got {session.channel_capacity}")

    gen = GenerationDefaults(
        max_new_tokens=int(_get(gen_raw, "max_new_tokens", GenerationDefaults.max_new_tokens)),
        temperature=float(_get(gen_raw, "temperature", GenerationDefaults.temperature)),
        top_p=float(_get(gen_raw, "top_p", GenerationDefaults.top_p)),
        do_sample=bool(_get(gen_raw, "do_sample", GenerationDefaults.do_sample)),
        system_prompt=_get(gen_raw, "system_prompt", GenerationDefaults.system_prompt),
    )

    models: list[ModelSpec] = []
    if isinstance(models_raw, list):
        for item in models_raw:
            key = _get(item, "key", "")
            if not key:
                continue
            models.append(
                ModelSpec(
                    key=key,
                    display_name=_get(item, "display_name", key),
                    local_path=_get(item, "local_path", ""),
                )
            )

    return RootConfig(app=app, session=session, generation=gen, models=models)


def load_config(path: str | None) -> RootConfig:
    if not path or not os.path.exists(path):
        return RootConfig()
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    return parse_config(raw)
