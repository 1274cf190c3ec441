"""Peer-to-peer replication of people and moments between two instances."""

from cherish_engine.sync.apply import InboundApplier
from cherish_engine.sync.matching import suggest_matches
from cherish_engine.sync.merge import MergeEngine
from cherish_engine.sync.outbox import OutboxWriter
from cherish_engine.sync.snapshots import SyncEvent

__all__ = ["InboundApplier", "MergeEngine", "OutboxWriter", "SyncEvent", "suggest_matches"]
