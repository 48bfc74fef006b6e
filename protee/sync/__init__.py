from protee.sync.engine import (
    SyncCoordinator,
    get_sync_coordinator,
    init_sync_coordinator,
    shutdown_sync_coordinator,
)
from protee.sync.records import ENTITY_ORDER, EntityType

__all__ = [
    "SyncCoordinator",
    "get_sync_coordinator",
    "init_sync_coordinator",
    "shutdown_sync_coordinator",
    "ENTITY_ORDER",
    "EntityType",
]
