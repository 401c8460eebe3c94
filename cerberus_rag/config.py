"""
Pipeline Settings
------------------
Typed configuration for every stage of the ticket RAG pipeline.

Resolution order (later wins):
  1. Model defaults below
  2. config/config.yaml (optional)
  3. Environment variables (a local .env file is loaded first)

Invalid combinations (e.g. overlap >= chunk_size) are rejected with a
ConfigurationError at load time rather than being clamped.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from cerberus_rag.exceptions import ConfigurationError

DEFAULT_CONFIG_PATH = "config/config.yaml"


# --- Sections -----------------------------------------------------------------

class OpenAIConfig(BaseModel):
    api_key: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    chat_model: str = "gpt-4o-mini"
    rerank_model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 2000


class ChunkingConfig(BaseModel):
    chunk_size: int = Field(500, gt=0)          # words per window
    overlap: int = Field(128, ge=0)             # words shared by consecutive windows
    min_chunk_size: int = Field(50, ge=0)       # character floor; shorter chunks are dropped

    @model_validator(mode="after")
    def _overlap_below_chunk_size(self) -> "ChunkingConfig":
        if self.overlap >= self.chunk_size:
            raise ValueError(
                f"chunking.overlap ({self.overlap}) must be smaller than "
                f"chunking.chunk_size ({self.chunk_size})"
            )
        return self


class RetrievalConfig(BaseModel):
    semantic_top_k: int = Field(20, gt=0)
    keyword_top_k: int = Field(10, gt=0)
    min_similarity_score: float = 0.5
    boost_factor: float = Field(1.2, gt=0)      # weight of exact keyword matches
    parallel_search: bool = True


class RerankConfig(BaseModel):
    mode: Literal["diversity", "combined", "relevance", "score"] = "diversity"
    top_k: int = Field(5, gt=0)
    original_weight: float = 0.3
    rerank_weight: float = 0.7
    same_source_fraction: float = Field(0.5, gt=0, le=1)
    neutral_score: float = Field(0.5, ge=0, le=1)
    batch_size: Optional[int] = Field(None, gt=0)   # None = every candidate in one call

    @model_validator(mode="after")
    def _positive_weights(self) -> "RerankConfig":
        if self.original_weight + self.rerank_weight <= 0:
            raise ValueError("rerank weights must sum to a positive value")
        return self


class StorageConfig(BaseModel):
    vector_store_type: Literal["faiss", "memory"] = "faiss"
    vector_db_path: str = "data/index"
    collection_name: str = "tickets"

    @property
    def index_dir(self) -> Path:
        return Path(self.vector_db_path) / self.collection_name


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "logs/cerberus.log"


class Settings(BaseModel):
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    rerank: RerankConfig = Field(default_factory=RerankConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# --- Environment overrides ----------------------------------------------------

# ENV_VAR -> (section, field)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "OPENAI_API_KEY": ("openai", "api_key"),
    "OPENAI_EMBEDDING_MODEL": ("openai", "embedding_model"),
    "OPENAI_CHAT_MODEL": ("openai", "chat_model"),
    "OPENAI_RERANK_MODEL": ("openai", "rerank_model"),
    "OPENAI_TEMPERATURE": ("openai", "temperature"),
    "OPENAI_MAX_TOKENS": ("openai", "max_tokens"),
    "CHUNK_SIZE": ("chunking", "chunk_size"),
    "CHUNK_OVERLAP": ("chunking", "overlap"),
    "MIN_CHUNK_SIZE": ("chunking", "min_chunk_size"),
    "SEMANTIC_TOP_K": ("retrieval", "semantic_top_k"),
    "KEYWORD_TOP_K": ("retrieval", "keyword_top_k"),
    "MIN_SIMILARITY_SCORE": ("retrieval", "min_similarity_score"),
    "KEYWORD_BOOST": ("retrieval", "boost_factor"),
    "RERANK_TOP_K": ("rerank", "top_k"),
    "RERANK_MODE": ("rerank", "mode"),
    "VECTOR_STORE_TYPE": ("storage", "vector_store_type"),
    "VECTOR_DB_PATH": ("storage", "vector_db_path"),
    "COLLECTION_NAME": ("storage", "collection_name"),
    "LOG_LEVEL": ("logging", "level"),
}


def _apply_env(raw: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        raw.setdefault(section, {})[key] = value
    return raw


def load_settings(
    path: str | Path | None = DEFAULT_CONFIG_PATH,
    environ: dict[str, str] | None = None,
) -> Settings:
    """
    Build Settings from YAML + environment.

    Args:
        path:    YAML file; missing files fall back to defaults.
        environ: Mapping used for overrides (defaults to os.environ after
                 loading .env). Tests pass an explicit dict.

    Raises:
        ConfigurationError: the merged configuration is invalid.
    """
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    raw: dict[str, Any] = {}
    if path is not None and Path(path).exists():
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{path}: top-level YAML value must be a mapping")

    raw = _apply_env(raw, environ)

    try:
        return Settings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
