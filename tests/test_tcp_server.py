import asyncio
import json

from flagrank.tcp_server import TCPServer
from tests.helpers import StoreTestCase, make_level, make_team, submission


class TestTCPServer(StoreTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.seed(make_team("a"), make_level("L1"))

        self.tcp = TCPServer(self.ingestor, self.config)
        self.server = await self.tcp.start_tcp_server("127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def asyncTearDown(self):
        self.server.close()
        await self.server.wait_closed()
        await super().asyncTearDown()

    async def exchange(self, *lines: bytes):
        reader, writer = await asyncio.open_connection("127.0.0.1", self.port)
        try:
            welcome = await reader.readline()
            replies = []
            for line in lines:
                writer.write(line)
                await writer.drain()
                if line.strip():
                    replies.append(json.loads(await asyncio.wait_for(reader.readline(), 5)))
            return welcome, replies
        finally:
            writer.close()
            await writer.wait_closed()

    async def test_welcome_and_ingest(self):
        event = json.dumps(submission("e1", "a", "L1")).encode() + b"\n"

        welcome, replies = await self.exchange(event, b"\n", event)

        self.assertIn(b"Flag Hunt", welcome)
        self.assertEqual(
            replies,
            [{"id": "e1", "outcome": "applied"}, {"id": "e1", "outcome": "duplicate"}],
        )
        self.assertEqual((await self.db.get_team("a")).score, 100)

    async def test_invalid_json_gets_error_reply(self):
        _, replies = await self.exchange(b"{nope\n")

        self.assertIn("Invalid JSON", replies[0]["error"])

    async def test_handle_line_reports_skipped_events(self):
        reply = await self.tcp.handle_line(json.dumps(submission("e2", "ghost", "L1")).encode())

        self.assertEqual(reply["outcome"], "skipped")
        self.assertEqual(reply["error"], "unknown team or level")
