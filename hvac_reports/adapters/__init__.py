"""
Backend adapters. One per store kind, all behind BackendAdapter.

- OperationalStoreAdapter: document store (Mongo-style query documents)
- AnalyticalStoreAdapter: PostgreSQL via psycopg
- SemanticStoreAdapter: Weaviate GraphQL
"""
from hvac_reports.adapters.base import BackendAdapter, BackendRows
from hvac_reports.adapters.operational import (
    HttpDocumentStoreClient,
    InMemoryDocumentStore,
    OperationalStoreAdapter,
)
from hvac_reports.adapters.analytical import AnalyticalStoreAdapter
from hvac_reports.adapters.semantic import SemanticStoreAdapter

__all__ = [
    "BackendAdapter",
    "BackendRows",
    "HttpDocumentStoreClient",
    "InMemoryDocumentStore",
    "OperationalStoreAdapter",
    "AnalyticalStoreAdapter",
    "SemanticStoreAdapter",
]
