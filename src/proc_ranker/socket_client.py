"""Unix socket client for receiving live reports from the daemon."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from proc_ranker.aggregator import AggregatedReport


class SocketClient:
    """Unix domain socket client for the live report stream.

    Simple and stateless: connects or throws. Callers handle reconnection.
    """

    def __init__(self, socket_path: Path):
        self.socket_path = socket_path
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def connected(self) -> bool:
        """Whether client is connected."""
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        """Connect to the daemon socket.

        Raises:
            FileNotFoundError: If socket doesn't exist (daemon not running)
        """
        if not self.socket_path.exists():
            raise FileNotFoundError(f"Socket not found: {self.socket_path}")

        self._reader, self._writer = await asyncio.open_unix_connection(str(self.socket_path))

    async def disconnect(self) -> None:
        """Disconnect from the daemon socket."""
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._writer = None
            self._reader = None

    async def read_message(self, timeout: float = 1.0) -> dict[str, Any]:
        """Read next message from socket with timeout.

        Raises:
            ConnectionError: If connection is lost
            TimeoutError: If no data received within timeout
            json.JSONDecodeError: If message is invalid JSON
        """
        if not self._reader:
            raise ConnectionError("Not connected")

        line = await asyncio.wait_for(self._reader.readline(), timeout=timeout)
        if not line:
            raise ConnectionError("Connection closed by server")

        return json.loads(line.decode())

    async def read_report(self, timeout: float = 1.0) -> AggregatedReport | None:
        """Read the next message and return the report it carries, if any.

        initial_state messages with no report yet return None.
        """
        message = await self.read_message(timeout=timeout)
        payload = message.get("report")
        if message.get("type") not in ("report", "initial_state") or payload is None:
            return None
        return AggregatedReport.from_dict(payload)
