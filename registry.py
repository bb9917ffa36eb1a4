from typing import Dict, Iterable, Set

from logging_config import get_logger

logger = get_logger(__name__)


class RoomRegistry:
    """Live connections per room code.

    Only rooms with at least one connected client have an entry. The registry
    is created once per application and handed to the relay broker; it is
    mutated only from the event loop, so no locking is needed.

    Members must expose ``is_open`` and ``deliver(payload)``.
    """

    def __init__(self):
        self._rooms: Dict[str, Set] = {}

    def register(self, code: str, connection) -> None:
        members = self._rooms.setdefault(code, set())
        members.add(connection)
        logger.debug(f"Registered connection in room {code} (live connections: {len(members)})")

    def unregister(self, code: str, connection) -> None:
        members = self._rooms.get(code)
        if not members:
            return
        members.discard(connection)
        if not members:
            del self._rooms[code]
            logger.debug(f"No more connections in room {code}, removed registry entry")
        else:
            logger.debug(f"Unregistered connection from room {code} (live connections: {len(members)})")

    def broadcast(self, code: str, sender, payload: str) -> int:
        """Hand ``payload`` to every open member of ``code`` except ``sender``.

        Closed members are skipped; their own close handler unregisters them.
        Returns the number of members the payload was queued for.
        """
        delivered = 0
        for connection in list(self._rooms.get(code, ())):
            if connection is sender or not connection.is_open:
                continue
            if connection.deliver(payload):
                delivered += 1
        return delivered

    def connections(self, code: str) -> Iterable:
        return frozenset(self._rooms.get(code, ()))

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    @property
    def connection_count(self) -> int:
        return sum(len(members) for members in self._rooms.values())

    def __contains__(self, code: str) -> bool:
        return code in self._rooms
