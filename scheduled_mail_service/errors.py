"""Exceptions raised by the scheduled mail service."""


class StoreError(RuntimeError):
    """Raised when the underlying storage cannot be read or written."""


class DiscoveryError(StoreError):
    """Raised when due items cannot be retrieved from storage."""


class PersistenceError(StoreError):
    """Raised when an item update cannot be written back to storage."""

    def __init__(self, item_id: str, message: str):
        super().__init__(f"Failed to save item {item_id}: {message}")
        self.item_id = item_id


class SendError(RuntimeError):
    """Raised by a sender when a delivery attempt fails."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
