from datetime import datetime, timezone

from rally_sync.api_client import ApiClient
from rally_sync.errors import ApiError, AuthorizationError, TransportError
from rally_sync.models import AuthTokens, AuthUser, ChatType
from rally_sync.session_store import SessionHolder, SessionStore

from sync_test_util import BackendTestCase


class ApiClientTests(BackendTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.holder = SessionHolder(SessionStore(self.config.session_path))
        self.api = ApiClient(self.config, self.holder)
        self.api.coordinator.sign_in(AuthTokens("at-1", "rt-1"), AuthUser(id="u1", first_name="Ana"))

    async def asyncTearDown(self):
        await self.api.close()
        await super().asyncTearDown()

    async def test_otp_bootstrap_without_credentials(self):
        self.holder.destroy()

        sent = await self.api.send_otp("+15550100")
        verified = await self.api.verify_otp(sent["session_id"], "0000")

        self.assertEqual(sent["session_id"], "otp-1")
        self.assertEqual(verified["user"]["id"], "u1")
        self.assertIn("access_token", verified)

    async def test_error_envelope_is_passed_through(self):
        with self.assertRaises(ApiError) as ctx:
            await self.api.verify_otp("otp-1", "9999")

        self.assertNotIsInstance(ctx.exception, AuthorizationError)
        self.assertEqual(ctx.exception.status, 400)
        self.assertEqual(ctx.exception.code, "INVALID_CODE")
        self.assertEqual(ctx.exception.message, "code does not match")

    async def test_list_chats_parses_titles_and_types(self):
        self.backend.seed("chat-1", 2)

        chats = {chat.id: chat for chat in await self.api.list_chats()}

        self.assertEqual(chats["chat-1"].chat_type, ChatType.PERSONAL)
        self.assertEqual(chats["chat-1"].title, "Ben")
        self.assertEqual(chats["chat-1"].last_message.content, "msg 2")
        self.assertEqual(chats["chat-2"].chat_type, ChatType.COMMUNITY)
        self.assertEqual(chats["chat-2"].title, "Runners")
        self.assertIsNone(chats["chat-2"].last_message)

    async def test_history_pages_are_oldest_first(self):
        self.backend.seed("chat-1", 5)

        newest = await self.api.get_messages("chat-1", limit=3)
        older = await self.api.get_messages("chat-1", before=newest.messages[0].id, limit=3)

        self.assertEqual([m.content for m in newest.messages], ["msg 3", "msg 4", "msg 5"])
        self.assertTrue(newest.has_more)
        self.assertEqual([m.content for m in older.messages], ["msg 1", "msg 2"])
        self.assertFalse(older.has_more)
        self.assertEqual(newest.messages[0].created_at.tzinfo, timezone.utc)

    async def test_malformed_items_are_dropped_not_fatal(self):
        self.backend.seed("chat-1", 3)
        self.backend.messages["chat-1"][1]["created_at"] = "yesterday"
        self.backend.chats["chat-3"] = {"chat_type": "event", "event": {"title": "5k"}}

        page = await self.api.get_messages("chat-1")
        chats = await self.api.list_chats()

        self.assertEqual([m.content for m in page.messages], ["msg 1", "msg 3"])
        self.assertEqual(sorted(chat.id for chat in chats), ["chat-1", "chat-2"])

    async def test_send_message_over_rest(self):
        message = await self.api.send_message("chat-1", "hello", reply_to="m-0")

        self.assertEqual(message.chat_id, "chat-1")
        self.assertEqual(message.sender.id, "u1")
        self.assertEqual(message.reply_to, "m-0")
        self.assertEqual(self.backend.messages["chat-1"][-1]["content"], "hello")

    async def test_unknown_chat_is_an_application_fault(self):
        with self.assertRaises(ApiError) as ctx:
            await self.api.get_messages("nope")

        self.assertEqual((ctx.exception.status, ctx.exception.code), (404, "NOT_FOUND"))

    async def test_read_mute_and_unread_count(self):
        self.backend.unread["chat-1"] = 4
        self.assertEqual(await self.api.unread_count(), 4)

        await self.api.mark_read("chat-1", datetime(2024, 5, 1, tzinfo=timezone.utc))
        await self.api.mute_chat("chat-2", True)

        self.assertEqual(self.backend.read_marks, [("chat-1", "2024-05-01T00:00:00+00:00")])
        self.assertTrue(self.backend.muted["chat-2"])
        self.assertEqual(await self.api.unread_count(), 0)

    async def test_create_personal_chat(self):
        chat_id, is_new = await self.api.create_personal_chat("u2")
        self.assertEqual((chat_id, is_new), ("chat-1", False))

        chat_id, is_new = await self.api.create_personal_chat("u9")
        self.assertTrue(is_new)
        self.assertIn(chat_id, self.backend.chats)

    async def test_expired_token_is_renewed_and_replayed(self):
        self.backend.expire_access()

        chats = await self.api.list_chats()

        self.assertEqual(len(chats), 2)
        self.assertEqual(self.backend.refresh_calls, 1)
        self.assertEqual(self.holder.access_token, "at-2")
        tokens = [token for method, path, token in self.backend.requests if path == "/v1/chats"]
        self.assertEqual(tokens, ["at-1", "at-2"])

    async def test_rejected_renewal_signs_out(self):
        self.backend.expire_access()
        self.backend.refresh_fails = True

        with self.assertRaises(AuthorizationError):
            await self.api.list_chats()

        self.assertIsNone(self.holder.current)
        self.assertFalse(self.config.session_path.exists())

    async def test_timeout_becomes_transport_error(self):
        self.backend.request_delay = 0.5
        api = ApiClient(self.config.with_overrides(request_timeout_s=0.1), self.holder)
        try:
            with self.assertRaises(TransportError) as ctx:
                await api.list_chats()
        finally:
            await api.close()

        self.assertEqual(ctx.exception.code, "NETWORK_ERROR")
        self.assertTrue(self.holder.is_authenticated)

    async def test_unreachable_backend_becomes_transport_error(self):
        api = ApiClient(self.config.with_overrides(base_url="http://127.0.0.1:9"), self.holder)
        try:
            with self.assertRaises(TransportError):
                await api.list_chats()
        finally:
            await api.close()
