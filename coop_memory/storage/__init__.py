"""coop_memory storage backends.

Local-first storage using SQLite, FTS5 and (optionally) sqlite-vec.
"""

from .embeddings import HashEmbedder, OpenAIEmbedder
from .sqlite import SQLiteMemory, build_embedder, open_memory

__all__ = [
    "SQLiteMemory",
    "open_memory",
    "build_embedder",
    # Embeddings
    "HashEmbedder",
    "OpenAIEmbedder",
]
