from medbom.bom_engine.catalog.reader import (
    CatalogProvider,
    CatalogReader,
    InMemoryCatalogProvider,
    SQLCatalogProvider,
)
from medbom.bom_engine.catalog.snapshot import (
    AssemblyRecord,
    CatalogSnapshot,
    EdgeRecord,
    PartRecord,
)

__all__ = [
    "AssemblyRecord",
    "CatalogProvider",
    "CatalogReader",
    "CatalogSnapshot",
    "EdgeRecord",
    "InMemoryCatalogProvider",
    "PartRecord",
    "SQLCatalogProvider",
]
