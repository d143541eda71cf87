"""Client library against the in-process app (and a few canned transports)."""

import asyncio
import unittest

import httpx

from convochat.client import (
    ApiRequestError,
    ChatApiClient,
    ConversationView,
    DeleteWithUndo,
    FailureKind,
    SendController,
)
from convochat.client.controller import GENERIC_REASON
from convochat.errors import ProviderServerError
from convochat.providers import MockProvider
from tests.support import ScriptedProvider, make_app


def client_for(app) -> ChatApiClient:
    return ChatApiClient(base_url="http://testserver/api", transport=httpx.ASGITransport(app=app))


class ErrorMappingTests(unittest.IsolatedAsyncioTestCase):
    async def _fail_with(self, handler):
        api = ChatApiClient(base_url="http://testserver/api", transport=httpx.MockTransport(handler))
        try:
            with self.assertRaises(ApiRequestError) as ctx:
                await api.send_message("c1", "Hello")
        finally:
            await api.aclose()
        return ctx.exception

    async def test_status_codes(self):
        cases = [
            (499, {"error": "Request cancelled"}, FailureKind.CANCELLED),
            (404, {"error": "Conversation not found"}, FailureKind.NOT_FOUND),
            (400, {"error": "Invalid request"}, FailureKind.VALIDATION),
            (500, {"error": "Internal server error"}, FailureKind.GENERIC),
        ]
        for status, body, kind in cases:
            with self.subTest(status=status):
                exc = await self._fail_with(lambda request, s=status, b=body: httpx.Response(s, json=b))
                self.assertIs(exc.kind, kind)
                self.assertEqual(exc.status_code, status)

    async def test_upstream_error_keeps_message_id(self):
        exc = await self._fail_with(
            lambda request: httpx.Response(502, json={"error": "LLM service unavailable", "messageId": "m-1"})
        )
        self.assertIs(exc.kind, FailureKind.UPSTREAM)
        self.assertTrue(exc.is_llm_error)
        self.assertEqual(exc.message_id, "m-1")

    async def test_non_json_error_body(self):
        exc = await self._fail_with(lambda request: httpx.Response(503, text="<html>oops</html>"))
        self.assertIs(exc.kind, FailureKind.GENERIC)
        self.assertIn("503", str(exc))

    async def test_transport_failures(self):
        def timeout(request):
            raise httpx.ReadTimeout("slow", request=request)

        def refused(request):
            raise httpx.ConnectError("refused", request=request)

        self.assertIs((await self._fail_with(timeout)).kind, FailureKind.TIMEOUT)
        self.assertIs((await self._fail_with(refused)).kind, FailureKind.NETWORK)

    async def test_send_body_includes_existing_id_only_when_given(self):
        bodies = []

        def handler(request):
            bodies.append(request.read())
            return httpx.Response(404, json={"error": "Conversation not found"})

        api = ChatApiClient(base_url="http://testserver/api", transport=httpx.MockTransport(handler))
        for existing in (None, "m-9"):
            with self.assertRaises(ApiRequestError):
                await api.send_message("c1", "Hi", existing_message_id=existing)
        await api.aclose()
        self.assertNotIn(b"existingMessageId", bodies[0])
        self.assertIn(b'"existingMessageId":"m-9"', bodies[1].replace(b" ", b""))


class ConversationViewTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app, self.store = make_app(MockProvider(delay=0))
        self.api = client_for(self.app)

    async def asyncTearDown(self):
        await self.api.aclose()

    async def _seed(self, count):
        conv = await self.store.create_conversation()
        for i in range(count):
            await self.store.create_message(conv.id, "user" if i % 2 == 0 else "assistant", f"m{i}")
        return conv

    async def test_refresh_then_load_older_builds_complete_ordered_list(self):
        conv = await self._seed(12)
        view = ConversationView(self.api, page_size=5)
        view.select(conv.id)
        await view.refresh()
        self.assertEqual([m.content for m in view.messages], [f"m{i}" for i in range(7, 12)])
        self.assertTrue(view.has_more)

        while view.has_more:
            self.assertTrue(await view.load_older())
        self.assertEqual([m.content for m in view.messages], [f"m{i}" for i in range(12)])
        self.assertFalse(await view.load_older())

    async def test_switching_conversation_discards_previous_pages(self):
        first = await self._seed(3)
        second = await self._seed(2)
        view = ConversationView(self.api)
        view.select(first.id)
        await view.refresh()
        view.add_provisional("draft")
        view.select(second.id)
        self.assertEqual(view.messages, [])
        await view.refresh()
        self.assertEqual({m.content for m in view.messages}, {"m0", "m1"})
        self.assertTrue(all(not m.provisional for m in view.messages))

    async def test_older_page_arriving_after_switch_is_dropped(self):
        conv = await self._seed(6)
        other = await self._seed(1)
        release = asyncio.Event()
        inner = httpx.ASGITransport(app=self.app)

        async def handler(request):
            if "cursor" in request.url.params:
                await release.wait()
            return await inner.handle_async_request(request)

        api = ChatApiClient(base_url="http://testserver/api", transport=httpx.MockTransport(handler))
        view = ConversationView(api, page_size=3)
        view.select(conv.id)
        await view.refresh()
        loading = asyncio.ensure_future(view.load_older())
        await asyncio.sleep(0.01)
        self.assertTrue(view.is_loading_older)
        view.select(other.id)
        release.set()
        self.assertFalse(await loading)
        self.assertEqual(view.messages, [])
        await api.aclose()


class SendControllerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncTearDown(self):
        await self.api.aclose()

    def _setup(self, provider, on_create=None):
        self.app, self.store = make_app(provider)
        if on_create is None:
            self.api = client_for(self.app)
        else:
            inner = httpx.ASGITransport(app=self.app)

            async def handler(request):
                if request.method == "POST" and request.url.path == "/api/conversations":
                    response = await on_create(request)
                    if response is not None:
                        return response
                return await inner.handle_async_request(request)

            self.api = ChatApiClient(base_url="http://testserver/api", transport=httpx.MockTransport(handler))
        self.view = ConversationView(self.api)
        self.controller = SendController(self.api, self.view)

    async def test_submit_creates_conversation_and_reconciles(self):
        self._setup(MockProvider(delay=0.01))
        result = await self.controller.submit("Hello")
        self.assertIsNotNone(result)
        self.assertIsNotNone(self.view.conversation_id)
        rendered = self.view.messages
        self.assertEqual([m.role for m in rendered], ["user", "assistant"])
        self.assertTrue(all(not m.provisional for m in rendered))
        self.assertTrue(rendered[-1].content.startswith("This is a mock response"))
        self.assertFalse(self.controller.is_disabled)

    async def test_input_disabled_while_in_flight(self):
        self._setup(MockProvider(delay=0.2))
        conv = await self.store.create_conversation()
        self.view.select(conv.id)
        sending = asyncio.ensure_future(self.controller.submit("Hello"))
        await asyncio.sleep(0.05)
        self.assertTrue(self.controller.is_disabled)
        self.assertEqual([m.provisional for m in self.view.messages], [True])
        self.assertIsNone(await self.controller.submit("second"))
        await sending
        self.assertFalse(self.controller.is_disabled)

    async def test_upstream_failure_then_retry_reuses_identity(self):
        self._setup(ScriptedProvider([ProviderServerError("down", 503)] * 3 + ["recovered"]))
        conv = await self.store.create_conversation()
        self.view.select(conv.id)

        self.assertIsNone(await self.controller.submit("Hello"))
        failed = self.view.messages[-1]
        self.assertTrue(failed.is_error)
        self.assertEqual(failed.error_message, "LLM service unavailable. Please try again.")
        self.assertIsNotNone(failed.failed_user_message_id)
        self.assertIs(self.controller.last_failure.kind, FailureKind.UPSTREAM)

        result = await self.controller.retry(failed.id)
        self.assertEqual(result.message.id, failed.failed_user_message_id)
        rendered = self.view.messages
        self.assertEqual([(m.role, m.content) for m in rendered], [("user", "Hello"), ("assistant", "recovered")])
        self.assertFalse(any(m.is_error for m in rendered))

    async def test_cancel_is_quiet_and_suppresses_reply(self):
        self._setup(MockProvider(delay=5))
        conv = await self.store.create_conversation()
        self.view.select(conv.id)
        sending = asyncio.ensure_future(self.controller.submit("Hello"))
        await asyncio.sleep(0.1)

        self.assertTrue(self.controller.cancel())
        self.assertFalse(self.controller.is_disabled)
        self.assertIsNone(await sending)
        self.assertIsNone(self.controller.last_failure)

        shown = self.view.messages[-1]
        self.assertTrue(shown.is_error)
        self.assertEqual(shown.error_message, "Message was cancelled")
        self.assertEqual(await self.store.messages.count_documents({"role": "user"}), 1)
        self.assertEqual(await self.store.messages.count_documents({"role": "assistant"}), 0)
        self.assertFalse(self.controller.cancel())

    async def test_second_submit_while_opening_conversation_is_ignored(self):
        gate = asyncio.Event()
        creates = []

        async def on_create(request):
            creates.append(request)
            await gate.wait()

        self._setup(MockProvider(delay=0), on_create=on_create)
        first = asyncio.ensure_future(self.controller.submit("Hello"))
        await asyncio.sleep(0.01)
        self.assertTrue(self.controller.is_disabled)
        self.assertFalse(self.controller.cancel())
        self.assertIsNone(await self.controller.submit("Hello again"))

        gate.set()
        self.assertIsNotNone(await first)
        self.assertEqual(len(creates), 1)
        self.assertEqual(len(await self.store.list_conversations()), 1)

    async def test_failed_conversation_start_is_annotated_and_retryable(self):
        failures = [httpx.Response(500, json={"error": "Internal server error"})]

        async def on_create(request):
            return failures.pop() if failures else None

        self._setup(MockProvider(delay=0), on_create=on_create)
        self.assertIsNone(await self.controller.submit("Hello"))
        self.assertIsNone(self.view.conversation_id)
        self.assertFalse(self.controller.is_disabled)
        self.assertIs(self.controller.last_failure.kind, FailureKind.GENERIC)
        [shown] = self.view.messages
        self.assertTrue(shown.is_error)
        self.assertEqual(shown.error_message, GENERIC_REASON)

        self.assertIsNotNone(await self.controller.retry(shown.id))
        self.assertIsNotNone(self.view.conversation_id)
        rendered = self.view.messages
        self.assertEqual([(m.role, m.provisional) for m in rendered], [("user", False), ("assistant", False)])
        self.assertEqual(rendered[0].content, "Hello")


class DeleteWithUndoTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app, self.store = make_app(MockProvider(delay=0))
        self.api = client_for(self.app)
        self.conv = await self.store.create_conversation()
        await self.store.create_message(self.conv.id, "user", "Hello")
        await self.store.create_message(self.conv.id, "assistant", "Hi")

    async def asyncTearDown(self):
        await self.api.aclose()

    async def test_undo_within_window_restores_exactly(self):
        view = ConversationView(self.api)
        view.select(self.conv.id)
        await view.refresh()
        before = [(m.id, m.content) for m in view.messages]

        deleter = DeleteWithUndo(self.api, grace=0.2, view=view)
        deleter.delete(self.conv.id)
        self.assertIsNone(view.conversation_id)
        listed = await self.api.list_conversations()
        self.assertEqual(deleter.visible(listed), [])
        self.assertFalse(deleter.is_selectable(self.conv.id))

        self.assertTrue(deleter.undo(self.conv.id))
        await asyncio.sleep(0.3)
        await deleter.flush()

        listed = deleter.visible(await self.api.list_conversations())
        self.assertEqual([c.id for c in listed], [self.conv.id])
        self.assertTrue(deleter.is_selectable(self.conv.id))
        view.select(self.conv.id)
        await view.refresh()
        self.assertEqual([(m.id, m.content) for m in view.messages], before)

    async def test_expired_window_deletes_for_good(self):
        deleter = DeleteWithUndo(self.api, grace=0.05)
        deleter.delete(self.conv.id)
        self.assertEqual(deleter.pending, frozenset({self.conv.id}))
        await deleter.flush()

        self.assertEqual(deleter.pending, frozenset())
        self.assertEqual(await self.api.list_conversations(), [])
        with self.assertRaises(ApiRequestError) as ctx:
            await self.api.get_conversation(self.conv.id)
        self.assertIs(ctx.exception.kind, FailureKind.NOT_FOUND)
        self.assertEqual(await self.store.messages.count_documents({"conversation_id": self.conv.id}), 0)
        self.assertFalse(deleter.undo(self.conv.id))

    async def test_other_conversations_stay_visible(self):
        other = await self.store.create_conversation()
        deleter = DeleteWithUndo(self.api, grace=10)
        deleter.delete(self.conv.id)
        listed = deleter.visible(await self.api.list_conversations())
        self.assertEqual([c.id for c in listed], [other.id])
        deleter.undo(self.conv.id)


if __name__ == "__main__":
    unittest.main()
