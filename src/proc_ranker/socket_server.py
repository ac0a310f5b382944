"""Unix socket server streaming window reports to live clients.

Push-based: the daemon calls broadcast() once per published report.
Protocol: newline-delimited JSON messages.
"""

from __future__ import annotations

import asyncio
import json
import os
import stat
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from proc_ranker import logging as console

if TYPE_CHECKING:
    from proc_ranker.aggregator import AggregatedReport

log = structlog.get_logger()


class SocketServer:
    """Unix domain socket server for live report streaming.

    Message Types:
    - initial_state: Sent on client connect with the latest report (or null)
    - report: Sent via broadcast() for every flushed window
    """

    def __init__(self, socket_path: Path) -> None:
        self.socket_path = socket_path
        self.latest_report: AggregatedReport | None = None
        self._server: asyncio.Server | None = None
        self._clients: set[asyncio.StreamWriter] = set()
        self._running = False

    @property
    def has_clients(self) -> bool:
        return len(self._clients) > 0

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def start(self) -> None:
        """Start the socket server."""
        # Remove stale socket file
        if self.socket_path.exists():
            self.socket_path.unlink()

        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(self.socket_path),
        )
        os.chmod(self.socket_path, stat.S_IRUSR | stat.S_IWUSR)

        self._running = True
        log.info("socket_server_started", path=str(self.socket_path))

    async def stop(self) -> None:
        """Stop the socket server and disconnect every client."""
        self._running = False

        for writer in list(self._clients):
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        self._clients.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        if self.socket_path.exists():
            self.socket_path.unlink()

        log.info("socket_server_stopped")

    async def broadcast(self, report: AggregatedReport) -> None:
        """Push a report to all connected clients.

        The report is remembered for clients that connect later.
        """
        self.latest_report = report
        if not self._clients:
            return

        data = _encode({"type": "report", "report": report.to_dict()})

        # Send to all clients, removing any that fail
        for writer in list(self._clients):
            try:
                writer.write(data)
                await writer.drain()
            except (ConnectionError, OSError) as e:
                log.debug("socket_client_dropped", error=str(e))
                self._clients.discard(writer)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._clients.add(writer)
        log.info("socket_client_connected", count=len(self._clients))
        console.client_connected(len(self._clients))

        try:
            try:
                await self._send_initial_state(writer)
            except (ConnectionError, OSError):
                log.debug("socket_initial_state_failed")
                return

            # Clients only listen; data comes via broadcast()
            while self._running:
                try:
                    data = await asyncio.wait_for(reader.readline(), timeout=1.0)
                except TimeoutError:
                    continue
                except ConnectionError:
                    break
                if not data:
                    break
                try:
                    json.loads(data)
                except ValueError:
                    log.warning("socket_invalid_message", size=len(data))
                    console.invalid_client_message()
        finally:
            self._clients.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            log.info("socket_client_disconnected", count=len(self._clients))
            console.client_disconnected(len(self._clients))

    async def _send_initial_state(self, writer: asyncio.StreamWriter) -> None:
        """Send the latest report to a newly connected client."""
        report = self.latest_report
        message = {
            "type": "initial_state",
            "report": report.to_dict() if report is not None else None,
        }
        writer.write(_encode(message))
        await writer.drain()


def _encode(message: dict) -> bytes:
    return json.dumps(message).encode() + b"\n"
