class SnapshotStoreError(Exception):
    """Base class for snapshot store failures."""


class DuplicateCode(SnapshotStoreError):
    def __init__(self, code: str):
        super().__init__(f"Room {code} already exists")
        self.code = code


class RoomNotFound(SnapshotStoreError):
    def __init__(self, code: str):
        super().__init__(f"Room {code} not found")
        self.code = code


class StoreUnavailable(SnapshotStoreError):
    """Durable backend could not be reached."""


class MalformedMessage(ValueError):
    """Relay frame that is not well-formed JSON."""


class MissingRoomCode(ValueError):
    """WebSocket handshake without a room code."""
