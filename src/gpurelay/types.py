"""Pydantic models shared by the local engine, the server and the remote client.

Every engine operation returns one of these (or a list of them), so a
result produced on the GPU host and a result parsed back out of the wire
JSON compare equal.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


# --- Embedding ---------------------------------------------------------------

class EmbedOptions(BaseModel):
    model: str | None = None
    is_query: bool = False
    title: str | None = None


class EmbeddingResult(BaseModel):
    embedding: list[float]
    model: str


# --- Generation ----------------------------------------------------------------

class GenerateOptions(BaseModel):
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


class GenerateResult(BaseModel):
    text: str
    model: str
    done: bool = True


class ExpandQueryOptions(BaseModel):
    context: str | None = None
    include_lexical: bool = True


class Queryable(BaseModel):
    """One expanded search query: lexical, vector or hypothetical-document."""
    type: Literal["lex", "vec", "hyde"]
    text: str


# --- Reranking -----------------------------------------------------------------

class RerankDocument(BaseModel):
    file: str
    text: str
    title: str | None = None


class RerankOptions(BaseModel):
    model: str | None = None


class RerankDocumentResult(BaseModel):
    file: str
    score: float
    index: int


class RerankResult(BaseModel):
    results: list[RerankDocumentResult] = Field(default_factory=list)
    model: str


# --- Models / device -----------------------------------------------------------

class ModelInfo(BaseModel):
    name: str
    exists: bool
    path: str | None = None


class VramInfo(BaseModel):
    total: int
    used: int
    free: int


class DeviceInfo(BaseModel):
    gpu: str | Literal[False] = False  # device name, or False when CPU-only
    gpu_offloading: bool = False
    gpu_devices: list[str] = Field(default_factory=list)
    vram: VramInfo | None = None
    cpu_cores: int
