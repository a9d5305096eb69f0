"""Local hybrid search over files: scanning, extraction, embeddings and retrieval."""

__version__ = "0.1.0"
