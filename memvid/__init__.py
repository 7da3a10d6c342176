"""Vector search, chunk indexing with frame mappings, and embedding-model file caching."""

__version__ = "1.2.0"
__all__ = ["search", "models", "index_types", "index", "enhanced"]