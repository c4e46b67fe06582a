"""Calendar import sync engine."""

from calsync.sync.engine import (
    delete_source,
    disconnect_provider,
    import_ics_upload,
    sync_source,
    sync_user_sources,
)

__all__ = [
    "delete_source",
    "disconnect_provider",
    "import_ics_upload",
    "sync_source",
    "sync_user_sources",
]
