"""Provider integrations and contact synchronization.

This package holds the connection lifecycle against the Composio broker and
the engine that merges provider contacts into per-cell phone mappings.
"""

from cellsync.integrations.broker import ComposioBrokerClient, get_broker_client
from cellsync.integrations.contact_sync import ContactSyncEngine, get_sync_engine
from cellsync.integrations.domain import (
    PROVIDER_CONFIGS,
    ConnectionState,
    Principal,
    Provider,
)
from cellsync.integrations.lifecycle import ConnectionLifecycleManager, get_lifecycle_manager
from cellsync.integrations.phone import PhoneNormalizer, get_phone_normalizer

__all__ = [
    "ComposioBrokerClient",
    "get_broker_client",
    "ConnectionLifecycleManager",
    "get_lifecycle_manager",
    "ContactSyncEngine",
    "get_sync_engine",
    "PhoneNormalizer",
    "get_phone_normalizer",
    "PROVIDER_CONFIGS",
    "ConnectionState",
    "Principal",
    "Provider",
]
