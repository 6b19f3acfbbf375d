"""Record Providers -- pluggable adapters over the persistent stores.

Provides the RecordProvider ABC with concrete implementations:
- SqlRecordProvider: relational store via SQLAlchemy async
- DocumentRecordProvider: REST document store via httpx
- LegacyCsvProvider: read-only CSV exports
- MemoryRecordProvider: in-process lists for development and tests

ProviderRegistry routes each entity type to its ordered providers.
"""

from src.salesops.providers.base import ProviderRegistry, ReadOnlyProvider, RecordProvider
from src.salesops.providers.document import DocumentRecordProvider
from src.salesops.providers.legacy_csv import LegacyCsvProvider
from src.salesops.providers.memory import MemoryRecordProvider
from src.salesops.providers.sql import SqlRecordProvider

__all__ = [
    "RecordProvider",
    "ReadOnlyProvider",
    "ProviderRegistry",
    "SqlRecordProvider",
    "DocumentRecordProvider",
    "LegacyCsvProvider",
    "MemoryRecordProvider",
]
