"""
SQLite persistence for scan results (stable API exports).
"""

from launchsurface.api.store.ingest import AssociationPolicy, Ingestor, ServiceFacts
from launchsurface.api.store.query import QueryStore, ServiceDetail, ServiceMatch
from launchsurface.api.store.schema import (
    STORE_PREFIX,
    TABLES,
    available_stores,
    default_store_name,
    is_valid_store_name,
    open_store,
    store_has_services,
)

__all__ = [
    "AssociationPolicy",
    "Ingestor",
    "QueryStore",
    "STORE_PREFIX",
    "ServiceDetail",
    "ServiceFacts",
    "ServiceMatch",
    "TABLES",
    "available_stores",
    "default_store_name",
    "is_valid_store_name",
    "open_store",
    "store_has_services",
]
