# Sync Pipeline Services
from mylife_sync.services.scheduler import (
    get_scheduler,
    start_scheduler,
    stop_scheduler,
)
from mylife_sync.services.sync_orchestrator import (
    SyncOrchestrator,
    SyncResult,
    SyncState,
    build_orchestrator,
)

__all__ = [
    "SyncOrchestrator",
    "SyncResult",
    "SyncState",
    "build_orchestrator",
    "get_scheduler",
    "start_scheduler",
    "stop_scheduler",
]
