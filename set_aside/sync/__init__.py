"""
Synchronization layer.

Provides:
- SyncCoordinator: owns the in-memory collection map and keeps it
  coherent with the metadata and blob stores
- SubscriberRegistry: routes requests and events to UI consumers
- KeyedWorkQueue: per-collection serialization of mutations
- Message protocol builders and parser
"""

from .coordinator import CoordinatorState, HydrationResult, SyncCoordinator
from .protocol import EventType, RequestType, encode_message, parse_request
from .subscribers import CallbackChannel, QueueChannel, SubscriberChannel, SubscriberRegistry
from .work_queue import KeyedWorkQueue

__all__ = [
    # Coordinator
    "SyncCoordinator",
    "CoordinatorState",
    "HydrationResult",
    # Subscribers
    "SubscriberRegistry",
    "SubscriberChannel",
    "QueueChannel",
    "CallbackChannel",
    # Protocol
    "RequestType",
    "EventType",
    "parse_request",
    "encode_message",
    # Per-collection ordering
    "KeyedWorkQueue",
]
