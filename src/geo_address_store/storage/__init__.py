"""
SQLite storage package.

- sqlite_pragmas: connection tuning for bulk load and read-only search
- address_store: the writer connection, schema and insert-or-ignore batches
- batch_loader: size/time windowed transactions over a record stream
- index_builder: secondary indices, compaction and the FTS5 mirror
"""

from geo_address_store.storage.address_store import AddressStore, remove_store_files, retry_busy
from geo_address_store.storage.batch_loader import BatchLoader
from geo_address_store.storage.index_builder import IndexBuilder, IndexBuildReport


__all__ = [
    "AddressStore",
    "BatchLoader",
    "IndexBuildReport",
    "IndexBuilder",
    "remove_store_files",
    "retry_busy",
]
