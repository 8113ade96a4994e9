"""Durable state store implementations."""

from pipeline_core.persistence.state_store import InMemoryStateStore, JsonFileStateStore

__all__ = ["InMemoryStateStore", "JsonFileStateStore"]
