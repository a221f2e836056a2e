from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from server.core.ConnectionLink import ConnectionLink, ConnectionState


class ConnectionTable:
    """
    The relay's set of active connections, keyed by connection id.

    Every mutation and every broadcast snapshot goes through one asyncio
    lock. Writes to peers happen on a snapshot, outside the lock.
    """

    def __init__(self) -> None:
        self._links: Dict[str, ConnectionLink] = {}
        self._lock = asyncio.Lock()

    async def register(self, link: ConnectionLink) -> None:
        async with self._lock:
            self._links[link.connection_id] = link
            link.state = ConnectionState.OPEN

    async def remove(self, link: ConnectionLink) -> bool:
        """Drop ``link``; returns False when it was already gone."""
        async with self._lock:
            removed = self._links.pop(link.connection_id, None)
            if removed is None:
                return False
            if removed.state is ConnectionState.OPEN:
                removed.state = ConnectionState.CLOSING
            return True

    async def snapshot(self, excluding: Optional[ConnectionLink] = None) -> List[ConnectionLink]:
        """Open links at this instant, minus ``excluding``."""
        async with self._lock:
            return [
                link for link in self._links.values()
                if link.is_open and link is not excluding
            ]

    async def drain(self) -> List[ConnectionLink]:
        """Remove and return every link (shutdown)."""
        async with self._lock:
            links = list(self._links.values())
            self._links.clear()
            return links

    def __contains__(self, link: object) -> bool:
        return isinstance(link, ConnectionLink) and self._links.get(link.connection_id) is link

    def __len__(self) -> int:
        return len(self._links)

    def values(self) -> List[ConnectionLink]:
        return list(self._links.values())
