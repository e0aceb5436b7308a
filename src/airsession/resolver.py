"""Model reference resolution.

A reference is what the caller picked: a plain path, a ``file://`` URI, a
configured model key, or a URI with a scheme that has a registered opener.
Resolution yields a ``ResolvedModel`` inside a context manager; the resolver
closes any stream it opened when the context exits.
"""
from __future__ import annotations

import contextlib
import logging
import os
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterator
from urllib.parse import unquote, urlparse

from .config import ModelSpec
from .errors import ResolutionError

logger = logging.getLogger(__name__)

StreamOpener = Callable[[str], BinaryIO]


@dataclass
class ResolvedModel:
    reference: str
    path: str | None
    stream: BinaryIO | None
    use_mmap: bool


class ModelResolver:
    def __init__(self, models: list[ModelSpec] | None = None) -> None:
        self._models = {m.key: m for m in (models or [])}
        self._openers: dict[str, StreamOpener] = {}

    def list(self) -> list[ModelSpec]:
        return list(self._models.values())

    def get(self, key: str) -> ModelSpec:
        try:
            return self._models[key]
        except KeyError:
            raise KeyError(f"Model not found: {key}") from None

    def register_opener(self, scheme: str, opener: StreamOpener) -> None:
        """Route ``scheme://`` references to ``opener``, which returns a readable stream."""
        self._openers[scheme.lower()] = opener

    def normalize(self, reference: str) -> str:
        if reference in self._models:
            return self._models[reference].local_path
        parsed = urlparse(reference)
        if parsed.scheme == "file":
            return unquote(parsed.path)
        return reference

    @contextlib.contextmanager
    def open(self, reference: str) -> Iterator[ResolvedModel]:
        if not reference:
            raise ResolutionError("Empty model reference")
        target = self.normalize(reference)
        scheme = urlparse(target).scheme.lower()

        # single letters are Windows drive prefixes, not URI schemes
        if scheme and len(scheme) > 1:
            opener = self._openers.get(scheme)
            if opener is None:
                raise ResolutionError(f"No opener registered for scheme '{scheme}': {reference}")
            try:
                stream = opener(target)
            except OSError as exc:
                raise ResolutionError(f"Cannot open {reference}: {exc}") from exc
            if stream is None:
                raise ResolutionError(f"Cannot open {reference}")
            logger.debug("Resolved %s to a %s stream", reference, scheme)
            try:
                yield ResolvedModel(reference=target, path=None, stream=stream, use_mmap=False)
            finally:
                stream.close()
            return

        if not os.path.exists(target):
            raise ResolutionError(f"Model path not found: {target}")
        logger.debug("Resolved %s to path %s", reference, target)
        yield ResolvedModel(reference=target, path=target, stream=None, use_mmap=True)
