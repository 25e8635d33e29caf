"""
Scanner-local TCP connection pool.

Keeps the connection opened by a successful TCP probe so that a repeat
probe of the same port can skip the handshake. Idle entries are evicted
lazily before every lookup; there is no background timer.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


DEFAULT_IDLE_TIMEOUT = 30.0  # seconds


@dataclass
class PooledConnection:
    """A live stream pair plus the time it was last handed out."""
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    last_used: float

    @property
    def is_alive(self) -> bool:
        return not self.writer.is_closing()


class ConnectionPool:
    """
    Port-keyed pool of open TCP connections to a single target.

    Usage:
        pool = ConnectionPool()
        pool.put(80, reader, writer)
        conn = pool.get(80)
        await pool.close_all()
    """

    def __init__(self,
                 idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
                 clock: Callable[[], float] = time.monotonic):
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._connections: Dict[int, PooledConnection] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def _evict_idle(self, now: float) -> List[PooledConnection]:
        """Remove stale or dead entries; caller holds the lock."""
        stale = [
            port for port, conn in self._connections.items()
            if now - conn.last_used > self.idle_timeout or not conn.is_alive
        ]
        return [self._connections.pop(port) for port in stale]

    def get(self, port: int) -> Optional[PooledConnection]:
        """
        Look up a live connection for a port, refreshing its timestamp.

        Args:
            port: Target port

        Returns:
            The pooled connection or None
        """
        with self._lock:
            now = self._clock()
            evicted = self._evict_idle(now)
            conn = self._connections.get(port)
            if conn is not None:
                conn.last_used = now

        for stale in evicted:
            stale.writer.close()
        if evicted:
            logger.debug(f"Evicted {len(evicted)} idle pooled connections")
        return conn

    def put(self, port: int, reader: asyncio.StreamReader,
            writer: asyncio.StreamWriter) -> None:
        """Store a connection, closing any previous one for the same port."""
        with self._lock:
            previous = self._connections.get(port)
            self._connections[port] = PooledConnection(reader, writer, self._clock())

        if previous is not None and previous.writer is not writer:
            previous.writer.close()

    async def close_all(self) -> None:
        """Close and forget every pooled connection."""
        with self._lock:
            conns = list(self._connections.values())
            self._connections.clear()

        for conn in conns:
            conn.writer.close()
            try:
                await conn.writer.wait_closed()
            except (ConnectionError, OSError):
                pass


__all__ = [
    'ConnectionPool',
    'PooledConnection',
    'DEFAULT_IDLE_TIMEOUT',
]
