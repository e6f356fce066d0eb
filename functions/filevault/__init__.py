"""
Chunked file storage service.

This package provides a FastAPI application that stores uploads as ordered
chunks behind swappable chunk-store and blob-index backends, and streams
them back for inline viewing or download.
"""
