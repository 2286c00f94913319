import asyncio
import gc
import json
import unittest

from rally_sync.errors import HandshakeError
from rally_sync.transport import (
    ConnectionState,
    TransportEvent,
    TransportManager,
    decode_frame,
)

from sync_test_util import FakeOpener, FakeScheduler, settle

WS_URL = "ws://sync.test/ws"


def test_decode_frame_uses_data_or_whole_frame():
    assert decode_frame('{"type": "message", "data": {"id": "m1"}}') == TransportEvent("message", {"id": "m1"})
    assert decode_frame('{"type": "pong"}') == TransportEvent("pong", {"type": "pong"})


def test_decode_frame_rejects_untyped_input():
    for raw in ("not json", "[1, 2]", '{"data": {}}', '{"type": 7}', '{"type": ""}', None):
        assert decode_frame(raw) is None


class TransportTestCase(unittest.IsolatedAsyncioTestCase):
    heartbeat_interval_s = 30.0

    async def asyncSetUp(self):
        self.opener = FakeOpener()
        self.scheduler = FakeScheduler()
        self.credential = "at-1"
        self.transport = TransportManager(
            WS_URL,
            credential_provider=lambda: self.credential,
            heartbeat_interval_s=self.heartbeat_interval_s,
            open_socket=self.opener,
            call_later=self.scheduler.call_later,
        )

    async def asyncTearDown(self):
        await self.transport.close()


class ConnectTests(TransportTestCase):
    async def test_connect_opens_with_credential(self):
        await self.transport.connect("at-1")

        self.assertIs(self.transport.state, ConnectionState.OPEN)
        self.assertTrue(self.transport.is_connected)
        self.assertEqual(self.opener.calls, [(WS_URL, "at-1")])

    async def test_concurrent_connects_share_one_handshake(self):
        self.opener.gate = asyncio.Event()

        first = asyncio.create_task(self.transport.connect("at-1"))
        second = asyncio.create_task(self.transport.connect("at-1"))
        await settle()
        self.assertIs(self.transport.state, ConnectionState.CONNECTING)

        self.opener.gate.set()
        await asyncio.gather(first, second)

        self.assertEqual(len(self.opener.calls), 1)
        self.assertIs(self.transport.state, ConnectionState.OPEN)

    async def test_connect_when_open_is_a_no_op(self):
        await self.transport.connect("at-1")
        await self.transport.connect("at-1")

        self.assertEqual(len(self.opener.calls), 1)

    async def test_failed_handshake_rejects_and_returns_to_idle(self):
        self.opener.failures.append(ConnectionRefusedError("refused"))

        with self.assertRaises(HandshakeError):
            await self.transport.connect("at-1")

        self.assertIs(self.transport.state, ConnectionState.IDLE)
        self.assertEqual(self.scheduler.pending(), [])

    async def test_rejected_upgrade_carries_status(self):
        self.opener.failures.append(HandshakeError("unauthorized", status=401))

        with self.assertRaises(HandshakeError) as ctx:
            await self.transport.connect("stale")

        self.assertEqual(ctx.exception.status, 401)

    async def test_abandoned_handshake_failure_is_retrieved(self):
        reported = []
        asyncio.get_running_loop().set_exception_handler(lambda loop, context: reported.append(context))
        self.opener.gate = asyncio.Event()
        self.opener.failures.append(ConnectionRefusedError("refused"))
        caller = asyncio.create_task(self.transport.connect("at-1"))
        await settle()

        caller.cancel()
        await asyncio.gather(caller, return_exceptions=True)
        self.opener.gate.set()
        await settle()
        gc.collect()

        self.assertIs(self.transport.state, ConnectionState.IDLE)
        self.assertEqual(reported, [])


class CloseListenerTests(TransportTestCase):
    async def test_listeners_hear_drops_and_disconnects(self):
        closes = []
        self.transport.on_close(lambda: closes.append(self.transport.state))
        await self.transport.connect("at-1")

        self.opener.last.drop()
        await settle()
        self.assertEqual(closes, [ConnectionState.IDLE])

        self.scheduler.fire_next()
        await settle(20)
        self.assertTrue(self.transport.is_connected)

        await self.transport.disconnect()
        self.assertEqual(closes, [ConnectionState.IDLE, ConnectionState.IDLE])

    async def test_no_notification_when_never_open(self):
        closes = []
        self.transport.on_close(lambda: closes.append(True))
        self.opener.failures.append(ConnectionRefusedError("refused"))

        with self.assertRaises(HandshakeError):
            await self.transport.connect("at-1")
        await self.transport.disconnect()

        self.assertEqual(closes, [])

    async def test_unregistered_listener_is_not_called(self):
        closes = []
        unregister = self.transport.on_close(lambda: closes.append(True))
        unregister()
        unregister()
        await self.transport.connect("at-1")

        await self.transport.disconnect()

        self.assertEqual(closes, [])


class DispatchTests(TransportTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.transport.connect("at-1")
        self.socket = self.opener.last
        self.seen = []

    def record(self, label):
        return lambda event: self.seen.append((label, event.type, event.payload))

    async def test_typed_handlers_then_wildcard_in_registration_order(self):
        self.transport.on("message", self.record("first"))
        self.transport.on("*", self.record("any"))
        self.transport.on("message", self.record("second"))

        self.socket.push_json({"type": "message", "data": {"id": "m1"}})
        self.socket.push_json({"type": "typing", "data": {"chat_id": "chat-1"}})
        await settle()

        self.assertEqual(
            self.seen,
            [
                ("first", "message", {"id": "m1"}),
                ("second", "message", {"id": "m1"}),
                ("any", "message", {"id": "m1"}),
                ("any", "typing", {"chat_id": "chat-1"}),
            ],
        )

    async def test_malformed_frames_are_dropped_and_stream_continues(self):
        self.transport.on("*", self.record("any"))

        self.socket.push("not json")
        self.socket.push("[1, 2, 3]")
        self.socket.push(json.dumps({"data": {"id": "m0"}}))
        self.socket.push_json({"type": "message", "data": {"id": "m1"}})
        await settle()

        self.assertEqual(self.seen, [("any", "message", {"id": "m1"})])
        self.assertTrue(self.transport.is_connected)

    async def test_failing_handler_does_not_starve_others(self):
        def explode(event):
            raise RuntimeError("boom")

        self.transport.on("message", explode)
        self.transport.on("message", self.record("after"))

        self.socket.push_json({"type": "message", "data": {"id": "m1"}})
        await settle()

        self.assertEqual(self.seen, [("after", "message", {"id": "m1"})])

    async def test_unregister_removes_only_that_handler(self):
        unregister = self.transport.on("message", self.record("gone"))
        self.transport.on("message", self.record("kept"))
        unregister()
        unregister()

        self.socket.push_json({"type": "message", "data": {}})
        await settle()

        self.assertEqual([label for label, _, _ in self.seen], ["kept"])

    async def test_unknown_types_reach_wildcard_only(self):
        self.transport.on("message", self.record("typed"))
        self.transport.on("*", self.record("any"))

        self.socket.push_json({"type": "presence", "data": {"online": True}})
        await settle()

        self.assertEqual(self.seen, [("any", "presence", {"online": True})])


class SendTests(TransportTestCase):
    async def test_send_is_a_silent_no_op_when_not_open(self):
        self.assertFalse(self.transport.send("typing", chat_id="chat-1"))
        self.assertIsNone(self.transport.send_message("chat-1", "hi"))
        self.assertEqual(self.opener.calls, [])

    async def test_commands_are_written_as_typed_frames(self):
        await self.transport.connect("at-1")

        client_id = self.transport.send_message("chat-1", "hi", reply_to="m-1")
        self.assertTrue(self.transport.send_typing("chat-1"))
        self.assertTrue(self.transport.send_read("chat-1"))
        await settle()

        self.assertTrue(client_id.startswith("c_"))
        self.assertEqual(
            self.opener.last.sent,
            [
                {"type": "message", "chat_id": "chat-1", "content": "hi", "reply_to": "m-1", "client_id": client_id},
                {"type": "typing", "chat_id": "chat-1"},
                {"type": "read", "chat_id": "chat-1"},
            ],
        )

    async def test_send_after_disconnect_is_dropped(self):
        await self.transport.connect("at-1")
        socket = self.opener.last
        await self.transport.disconnect()

        self.assertFalse(self.transport.send("typing", chat_id="chat-1"))
        self.assertEqual(socket.sent, [])


class HeartbeatTests(TransportTestCase):
    heartbeat_interval_s = 0.01

    async def test_ping_is_sent_while_open(self):
        await self.transport.connect("at-1")

        await asyncio.sleep(0.05)

        self.assertGreaterEqual(len(self.opener.last.sent_of_type("ping")), 1)

    async def test_heartbeat_stops_when_connection_closes(self):
        self.credential = None
        await self.transport.connect("at-1")
        socket = self.opener.last
        socket.drop()
        await settle()
        sent = len(socket.sent)

        await asyncio.sleep(0.05)

        self.assertEqual(len(socket.sent), sent)
        self.assertIs(self.transport.state, ConnectionState.IDLE)


class DisconnectTests(TransportTestCase):
    async def test_disconnect_is_terminal(self):
        seen = []
        self.transport.on("*", seen.append)
        await self.transport.connect("at-1")
        socket = self.opener.last

        await self.transport.disconnect()

        self.assertIs(self.transport.state, ConnectionState.IDLE)
        self.assertTrue(socket.closed)
        self.assertEqual(self.scheduler.pending(), [])
        self.transport.dispatch(TransportEvent("message", {}))
        self.assertEqual(seen, [])

    async def test_disconnect_cancels_pending_reconnect(self):
        await self.transport.connect("at-1")
        self.opener.last.drop()
        await settle()
        self.assertTrue(self.transport.reconnect_pending)

        await self.transport.disconnect()

        self.assertFalse(self.transport.reconnect_pending)
        self.assertEqual(self.scheduler.pending(), [])

    async def test_disconnect_during_handshake_discards_the_socket(self):
        self.opener.gate = asyncio.Event()
        connecting = asyncio.create_task(self.transport.connect("at-1"))
        await settle()

        await self.transport.disconnect()
        self.opener.gate.set()

        with self.assertRaises(HandshakeError):
            await connecting
        self.assertIs(self.transport.state, ConnectionState.IDLE)
        self.assertTrue(self.opener.last.closed)


if __name__ == "__main__":
    unittest.main()
