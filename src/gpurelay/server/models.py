"""Model registry: lazy load / unload of the engine's Hugging Face models.

Three roles are supported:
  - embedding  : AutoModel (CLS-pooled sentence encoder)
  - generation : AutoModelForCausalLM
  - reranking  : AutoModelForSequenceClassification (cross-encoder)

Tokenizers can be loaded on their own, without the model weights.
"""

from __future__ import annotations

import gc
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

import torch

from gpurelay.server.device import get_device

log = logging.getLogger(__name__)


@dataclass
class LoadedModel:
    name: str
    kind: str  # "embedding" | "generation" | "reranking"
    model: Any
    tokenizer: Any
    device: torch.device
    loaded_at: float = field(default_factory=time.time)


class ModelRegistry:
    """Loaded models keyed by (kind, name). Loading is serialised by a lock."""

    def __init__(self, dtype: str = "float16") -> None:
        self._models: dict[tuple[str, str], LoadedModel] = {}
        self._tokenizers: dict[str, Any] = {}
        self._lock = threading.Lock()
        self._dtype = dtype

    # ------------------------------------------------------------------
    def load(self, kind: str, name: str) -> LoadedModel:
        key = (kind, name)
        entry = self._models.get(key)
        if entry is not None:
            return entry

        with self._lock:
            entry = self._models.get(key)
            if entry is not None:
                return entry

            device = get_device()
            # half precision is only worth it off-CPU
            torch_dtype = getattr(torch, self._dtype) if device.type != "cpu" else torch.float32

            if kind == "embedding":
                model = self._load_embedding(name, torch_dtype)
            elif kind == "generation":
                model = self._load_generation(name, torch_dtype)
            elif kind == "reranking":
                model = self._load_reranking(name, torch_dtype)
            else:
                raise ValueError(f"unknown model kind {kind!r}")

            model = model.to(device)
            model.eval()

            entry = LoadedModel(
                name=name,
                kind=kind,
                model=model,
                tokenizer=self._get_tokenizer(name),
                device=device,
            )
            self._models[key] = entry
            log.info("loaded %s model %s → %s", kind, name, device)
            return entry

    # ------------------------------------------------------------------
    # Loading strategies
    # ------------------------------------------------------------------

    @staticmethod
    def _load_embedding(name: str, torch_dtype: torch.dtype) -> Any:
        from transformers import AutoModel

        log.info("loading embedding model %s (dtype=%s) …", name, torch_dtype)
        return AutoModel.from_pretrained(name, torch_dtype=torch_dtype)

    @staticmethod
    def _load_generation(name: str, torch_dtype: torch.dtype) -> Any:
        from transformers import AutoModelForCausalLM

        log.info("loading generation model %s (dtype=%s) …", name, torch_dtype)
        return AutoModelForCausalLM.from_pretrained(name, torch_dtype=torch_dtype)

    @staticmethod
    def _load_reranking(name: str, torch_dtype: torch.dtype) -> Any:
        from transformers import AutoModelForSequenceClassification

        log.info("loading reranking model %s (dtype=%s) …", name, torch_dtype)
        return AutoModelForSequenceClassification.from_pretrained(
            name, torch_dtype=torch_dtype,
        )

    def _get_tokenizer(self, name: str) -> Any:
        tok = self._tokenizers.get(name)
        if tok is None:
            from transformers import AutoTokenizer

            tok = AutoTokenizer.from_pretrained(name)
            self._tokenizers[name] = tok
        return tok

    def tokenizer(self, name: str) -> Any:
        with self._lock:
            return self._get_tokenizer(name)

    # ------------------------------------------------------------------
    def unload_all(self) -> int:
        """Drop every model and tokenizer. Returns how many models were freed."""
        with self._lock:
            count = len(self._models)
            self._models.clear()
            self._tokenizers.clear()
        if count:
            gc.collect()
            if torch.cuda.is_available():
                torch.cuda.empty_cache()
            elif torch.backends.mps.is_available():
                torch.mps.empty_cache()
            log.info("unloaded %d model(s)", count)
        return count

    # ------------------------------------------------------------------
    def on_accelerator(self) -> bool:
        return any(e.device.type != "cpu" for e in self._models.values())

