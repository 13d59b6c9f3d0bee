"""finsheet: rapports financiers PDF → parsing → interprétation → tableau.

This package provides:
- Configuration loading utilities and typed structures (tasks, documents, records)
- A parsing client for the asynchronous document-parsing service
- An interpretation client with CREATE / UPDATE strategies
- A table merger computing cell-level updates
- A sequential orchestrator with per-file stage tracking and progress events
- Download sources, table stores and a CLI to process batches
"""

__all__ = [
    "config",
    "types",
    "errors",
    "storage",
    "writer",
    "merger",
    "strategies",
    "parse_service",
    "json_service",
    "progress",
    "orchestrator",
    "drive_service",
    "table_store",
]
