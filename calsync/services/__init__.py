from calsync.services import (
    conflict_service,
    mutation_engine,
    poller,
    progressive_loader,
    range_ledger,
    sync_status,
    task_cache,
)


__all__ = [
    "conflict_service",
    "mutation_engine",
    "poller",
    "progressive_loader",
    "range_ledger",
    "sync_status",
    "task_cache",
]
