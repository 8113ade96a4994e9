"""Interface for the durable state store.

Records are JSON-compatible dicts grouped by namespace.  Every write
replaces a whole record so readers never observe a partial one.
"""

from typing import Any, Dict, List, Optional, Protocol


class IStateStore(Protocol):
    """Keyed record store shared by the worker pool and session repository."""

    def save(self, namespace: str, key: str, record: Dict[str, Any]) -> None:
        """Replace the record stored under *namespace*/*key*.

        Args:
            namespace: Record group ("" for the store root)
            key: Record key
            record: JSON-serializable mapping

        Raises:
            StatePersistenceError: if the record cannot be written
        """
        ...

    def load(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        """Read a record.

        Returns:
            The record, or None if it was never written

        Raises:
            StateCorruptedError: if the record exists but cannot be decoded
        """
        ...

    def exists(self, namespace: str, key: str) -> bool:
        """Whether a record exists (readable or not)."""
        ...

    def delete(self, namespace: str, key: str) -> bool:
        """Remove a record; returns whether it existed."""
        ...

    def list_keys(self, namespace: str) -> List[str]:
        """List record keys in *namespace*, sorted."""
        ...
