"""Select the SimilarityIndex adapter named in configuration."""
from __future__ import annotations

from loguru import logger

from cerberus_rag.config import StorageConfig
from cerberus_rag.embedding.base import SimilarityIndex
from cerberus_rag.exceptions import ConfigurationError


def create_index(storage: StorageConfig) -> SimilarityIndex:
    """Load (or start) the configured collection under vector_db_path/collection_name."""
    store_type = storage.vector_store_type
    logger.debug(f"[IndexFactory] {store_type} | {storage.index_dir}")

    if store_type == "faiss":
        from cerberus_rag.embedding.faiss_index import FAISSIndex
        return FAISSIndex.load(storage.index_dir)

    if store_type == "memory":
        from cerberus_rag.embedding.memory_index import InMemoryIndex
        return InMemoryIndex.load(storage.index_dir)

    raise ConfigurationError(f"Unknown vector store type: {store_type}")
