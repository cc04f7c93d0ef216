"""
TCP server for event ingestion.

Clients send one JSON event per line and get one JSON reply line per event.
"""

import asyncio
import json
import logging
from typing import Any, Dict

from .ingest import EventIngestor

logger = logging.getLogger(__name__)

# Longest accepted line, in bytes
MAX_LINE = 64 * 1024


class TCPServer:
    """Handles TCP socket connections and event submissions."""

    def __init__(
        self,
        ingestor: EventIngestor,
        config: Any,
    ) -> None:
        self.ingestor = ingestor
        self.config = config

        event_name = self.config.get("event_name")
        welcome_text = (
            f"Welcome to {event_name}! Send one JSON event per line "
            '(submission: {"id","teamId","levelId","status",...}, '
            'hint: {"id","teamId","levelId","hintType",...})\n'
        )
        self.welcome_msg = welcome_text.encode("utf-8")

    async def handle_line(self, line: bytes) -> Dict[str, Any]:
        """
        Ingest one line and build the reply.

        @param line: Raw bytes of one request line
        @return: Reply object, ``{"id", "outcome"}`` or ``{"error"}``
        """
        try:
            payload = json.loads(line.decode("utf-8"))
        except UnicodeDecodeError:
            return {"error": "Invalid character encoding"}
        except json.JSONDecodeError as e:
            return {"error": f"Invalid JSON: {e.msg}"}

        result = await self.ingestor.ingest(payload)
        return result.as_dict()

    async def handle_socket_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """
        Handle individual TCP client connection (async).

        Reads events until the client closes the connection. Blank lines are
        skipped; oversized lines end the connection.

        @param reader: AsyncIO stream reader for client connection
        @param writer: AsyncIO stream writer for client connection
        """
        client_addr = writer.get_extra_info("peername")
        logger.info("Socket client connected: %s", client_addr)
        events = 0

        try:
            writer.write(self.welcome_msg)
            await writer.drain()

            while True:
                try:
                    line = await reader.readuntil(b"\n")
                except asyncio.IncompleteReadError as e:
                    # EOF; a final line without newline is still an event
                    line = e.partial
                    if not line.strip():
                        break
                except asyncio.LimitOverrunError:
                    writer.write(b'{"error": "Line too long"}\n')
                    await writer.drain()
                    break

                line = line.strip(b"\x00").strip()
                if not line:
                    continue

                reply = await self.handle_line(line)
                events += 1
                writer.write(json.dumps(reply).encode("utf-8") + b"\n")
                await writer.drain()

                if reader.at_eof():
                    break

        except (ConnectionError, OSError) as e:
            logger.warning("Error handling socket client %s: %s", client_addr, e)

        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            logger.info(
                "Socket client disconnected: %s (%d events)", client_addr, events
            )

    async def start_tcp_server(
        self,
        host: str = "0.0.0.0",
        port: int = 8080,
    ) -> asyncio.AbstractServer:
        """
        Start the TCP socket server.

        @param host: Host address to bind the server to (default "0.0.0.0")
        @param port: Port number to listen on (default 8080)
        @return: TCP server instance
        """
        server = await asyncio.start_server(
            self.handle_socket_client, host, port, limit=MAX_LINE
        )
        logger.info("Socket server running on %s:%s", host, port)

        return server
