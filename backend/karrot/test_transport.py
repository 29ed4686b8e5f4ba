from __future__ import annotations

from unittest import IsolatedAsyncioTestCase

from .transport import ChannelClosed, ConnectionFailed, InMemoryTransport


class InMemoryTransportTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.transport = InMemoryTransport()
        self.listener = await self.transport.listen("AB12CD")

    async def test_dial_unknown_address_fails(self):
        with self.assertRaises(ConnectionFailed):
            await self.transport.dial("ZZZZZZ")

    async def test_address_can_only_be_bound_once(self):
        with self.assertRaises(ConnectionFailed):
            await self.transport.listen("AB12CD")

    async def test_messages_flow_both_ways(self):
        client = await self.transport.dial("AB12CD")
        server = await self.listener.accept()

        await client.send({"type": "JOIN", "payload": {"name": "Ann"}})
        self.assertEqual(await server.receive(), {"type": "JOIN", "payload": {"name": "Ann"}})
        await server.send({"type": "QUIZ_ENDED", "payload": {}})
        self.assertEqual(await client.receive(), {"type": "QUIZ_ENDED", "payload": {}})
        self.assertEqual(client.peer_id, "AB12CD")
        self.assertNotEqual(server.peer_id, client.peer_id)

    async def test_close_ends_iteration_on_other_side(self):
        client = await self.transport.dial("AB12CD")
        server = await self.listener.accept()
        await client.send({"n": 1})
        await client.close()

        received = [message async for message in server]
        self.assertEqual(received, [{"n": 1}])
        with self.assertRaises(ChannelClosed):
            await server.send({"n": 2})
        with self.assertRaises(ChannelClosed):
            await client.send({"n": 3})

    async def test_closed_listener_releases_address(self):
        await self.listener.close()
        with self.assertRaises(ConnectionFailed):
            await self.transport.dial("AB12CD")
        self.assertEqual([channel async for channel in self.listener], [])
        await self.transport.listen("AB12CD")
