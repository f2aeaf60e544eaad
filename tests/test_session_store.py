"""
End-to-end tests for cubular_client.core.session_store against the FastAPI fake backend.

Covers:
  - New chat never leaks the previous conversation into the next one
  - First message omits the session id and carries a derived title
  - Confirmed assistant reply is not duplicated after the history reload
  - Send failure leaves one error notice and no placeholder, malformed replies included
  - Retry replaces a message in place (and restores it on failure)
  - Replies for abandoned conversations are ignored
  - Intent guard keeps PENDING through the new-chat teardown
  - Session list caching, mutations and multi-select
"""

import asyncio

import httpx
import pytest
from fastapi.responses import JSONResponse, Response

from cubular_client.client import ChatClient
from cubular_client.config import ClientSettings
from cubular_client.core.errors import InvalidRequestError, InvalidResponseError, SessionStateError
from cubular_client.core.intents import NEW_CHAT, IntentGuard
from cubular_client.core.models import Credential, now_ms
from cubular_client.core.session_store import (
    COMPOSING_MARKER,
    ERROR_NOTICE,
    REGENERATING_MARKER,
    SessionPhase,
)
from cubular_client.infra.signals import SessionCleared, StartNewChat
from cubular_client.utils.persistent_auth import MemoryStorage
from cubular_client.utils.request_deduplication import RequestCache

from .fake_backend import BASE_URL, FakeBackend
from .helpers import FakeClock


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
async def client(backend):
    client = ChatClient(
        settings=ClientSettings(api_base_url=BASE_URL),
        storage=MemoryStorage(),
        transport=httpx.ASGITransport(app=backend.app),
        cache=RequestCache(),
    )
    client.credentials.save(Credential.issue("access-0", "refresh-0", 3600, now_ms()))
    yield client
    await client.close()


@pytest.fixture
def sessions(client):
    return client.sessions


def contents(store):
    return [message.content for message in store.messages]


MALFORMED_REPLIES = pytest.mark.parametrize("malformed", [
    lambda: Response(content="<html>gateway</html>", media_type="text/html"),
    lambda: JSONResponse({"response": None, "sessionId": "x"}),
], ids=["html-body", "null-response"])


# ========================================================================
# New chat isolation
# ========================================================================


class TestNewChat:
    async def test_previous_messages_never_leak(self, sessions, backend):
        backend.seed_session("old", messages=5)
        await sessions.load_session("old")
        assert sessions.phase is SessionPhase.ACTIVE
        assert len(sessions.messages) == 5

        sessions.start_new_chat()
        assert sessions.phase is SessionPhase.PENDING
        assert sessions.messages == []

        backend.chat_gate = asyncio.Event()
        task = asyncio.create_task(sessions.send_message("What drives churn?", ["survey-1"]))
        await asyncio.sleep(0)

        assert contents(sessions) == ["What drives churn?", COMPOSING_MARKER]
        assert all(message.optimistic for message in sessions.messages)

        backend.chat_gate.set()
        reply = await task

        assert reply is not None
        assert contents(sessions) == ["What drives churn?", backend.reply]
        assert not any(content.startswith("old message") for content in contents(sessions))
        assert sessions.phase is SessionPhase.ACTIVE
        assert sessions.current_session_id not in (None, "old")

    async def test_first_message_requests_session_with_title(self, sessions, backend):
        sessions.start_new_chat()

        await sessions.send_message("I want to understand customer churn patterns", ["survey-1"])

        payload = backend.chat_payloads[0]
        assert "sessionId" not in payload
        assert payload["title"] == "Understand Customer Churn Patterns"
        assert payload["surveyIds"] == ["survey-1"]
        assert sessions.current_session.title == "Understand Customer Churn Patterns"

    async def test_active_session_sends_its_id(self, sessions, backend):
        backend.seed_session("s1", messages=2)
        await sessions.load_session("s1")

        reply = await sessions.send_message("And in Q4?", ["survey-1"], selected_file_ids=["f1"])

        payload = backend.chat_payloads[0]
        assert payload["sessionId"] == "s1"
        assert payload["selectedFileIds"] == ["f1"]
        assert "title" not in payload
        assert contents(sessions) == ["s1 message 0", "s1 message 1", "And in Q4?", backend.reply]
        assert reply.confidence.reliability == "high"
        assert reply.data_snapshot == {"rows": 12}
        assert backend.count("quick") == 1

    async def test_empty_message_rejected(self, sessions):
        with pytest.raises(ValueError):
            await sessions.send_message("   ", ["survey-1"])


# ========================================================================
# Reconciliation of the reply
# ========================================================================


class TestReplyReconciliation:
    async def test_no_duplicate_when_reload_already_has_the_reply(self, sessions, backend):
        backend.echo_message_id = False
        sessions.start_new_chat()

        await sessions.send_message("What drives churn?", ["survey-1"])

        assert contents(sessions).count(backend.reply) == 1
        assert len(sessions.messages) == 2
        assert COMPOSING_MARKER not in contents(sessions)

    async def test_reloaded_history_replaces_optimistic_user_message(self, sessions, backend):
        sessions.start_new_chat()

        await sessions.send_message("What drives churn?", ["survey-1"])

        user_message = sessions.messages[0]
        assert user_message.sender == "user"
        assert user_message.optimistic is False


class TestSendFailure:
    async def test_failure_leaves_one_notice(self, sessions, backend):
        backend.seed_session("s1", messages=2)
        await sessions.load_session("s1")
        backend.fail_chat = True

        assert await sessions.send_message("question", ["survey-1"]) is None

        assert contents(sessions) == ["s1 message 0", "s1 message 1", "question", ERROR_NOTICE]
        assert sessions.is_sending is False
        assert backend.count("chat") == 1

    async def test_store_accepts_next_message_after_failure(self, sessions, backend):
        sessions.start_new_chat()
        backend.fail_chat = True
        await sessions.send_message("first", ["survey-1"])

        backend.fail_chat = False
        assert await sessions.send_message("second", ["survey-1"]) is not None

    @MALFORMED_REPLIES
    async def test_malformed_reply_becomes_a_notice(self, sessions, backend, malformed):
        backend.seed_session("s1", messages=2)
        await sessions.load_session("s1")
        backend.malformed["chat"] = malformed()

        assert await sessions.send_message("hello there", ["survey-1"]) is None

        assert contents(sessions) == ["s1 message 0", "s1 message 1", "hello there", ERROR_NOTICE]
        assert sessions.is_sending is False

        del backend.malformed["chat"]
        assert await sessions.send_message("hello again", ["survey-1"]) is not None


# ========================================================================
# Retry
# ========================================================================


class TestRetry:
    async def test_retry_replaces_in_place(self, sessions, backend):
        backend.seed_session("s1", messages=2)
        await sessions.load_session("s1")
        seen = []
        sessions.subscribe(lambda store: seen.append(contents(store)))

        updated = await sessions.retry_message("s1-m1")

        assert [m.id for m in sessions.messages] == ["s1-m0", "s1-m1"]
        assert sessions.messages[1] == updated
        assert updated.content == "Regenerated answer"
        assert updated.confidence.reliability == "low"
        assert updated.data_snapshot == {"rows": 1}
        assert any(REGENERATING_MARKER in snapshot for snapshot in seen)
        assert backend.count("retry") == 1

    async def test_retry_failure_restores_original(self, sessions, backend):
        backend.seed_session("s1", messages=2)
        await sessions.load_session("s1")
        backend.fail_retry = True

        assert await sessions.retry_message("s1-m1") is None

        assert contents(sessions) == ["s1 message 0", "s1 message 1", ERROR_NOTICE]

    @MALFORMED_REPLIES
    async def test_malformed_retry_reply_restores_original(self, sessions, backend, malformed):
        backend.seed_session("s1", messages=2)
        await sessions.load_session("s1")
        backend.malformed["retry"] = malformed()

        assert await sessions.retry_message("s1-m1") is None

        assert contents(sessions) == ["s1 message 0", "s1 message 1", ERROR_NOTICE]
        assert REGENERATING_MARKER not in contents(sessions)

    async def test_retry_requires_active_session(self, sessions):
        with pytest.raises(SessionStateError):
            await sessions.retry_message("anything")

    async def test_retry_unknown_message(self, sessions, backend):
        backend.seed_session("s1", messages=1)
        await sessions.load_session("s1")

        with pytest.raises(SessionStateError):
            await sessions.retry_message("missing")


# ========================================================================
# Stale responses
# ========================================================================


class TestStaleResponses:
    async def test_reply_ignored_after_new_chat(self, sessions, backend):
        backend.seed_session("s1", messages=2)
        await sessions.load_session("s1")
        backend.chat_gate = asyncio.Event()

        task = asyncio.create_task(sessions.send_message("slow question", ["survey-1"]))
        await asyncio.sleep(0)
        sessions.start_new_chat()
        backend.chat_gate.set()

        assert await task is None
        assert sessions.messages == []
        assert sessions.phase is SessionPhase.PENDING

    async def test_reply_ignored_after_switching_sessions(self, sessions, backend):
        backend.seed_session("s1", messages=1)
        backend.seed_session("s2", messages=3)
        await sessions.load_session("s1")
        backend.chat_gate = asyncio.Event()

        task = asyncio.create_task(sessions.send_message("slow question", ["survey-1"]))
        await asyncio.sleep(0)
        await sessions.load_session("s2")
        backend.chat_gate.set()

        assert await task is None
        assert sessions.current_session_id == "s2"
        assert contents(sessions) == ["s2 message 0", "s2 message 1", "s2 message 2"]

    async def test_failure_ignored_after_clear(self, sessions, backend):
        backend.seed_session("s1", messages=1)
        await sessions.load_session("s1")
        backend.fail_chat = True
        backend.chat_gate = asyncio.Event()

        task = asyncio.create_task(sessions.send_message("doomed", ["survey-1"]))
        await asyncio.sleep(0)
        sessions.clear_current_session()
        backend.chat_gate.set()

        assert await task is None
        assert sessions.messages == []
        assert sessions.phase is SessionPhase.CLEARED


# ========================================================================
# Intent guard and signals
# ========================================================================


class TestIntentGuard:
    def test_consumed_at_most_once(self):
        guard = IntentGuard(ttl_ms=1000, clock=FakeClock())
        guard.issue(NEW_CHAT)

        assert guard.peek(NEW_CHAT) is True
        assert guard.consume(NEW_CHAT) is True
        assert guard.consume(NEW_CHAT) is False

    def test_expires(self):
        clock = FakeClock()
        guard = IntentGuard(ttl_ms=1000, clock=clock)
        guard.issue(NEW_CHAT)
        clock.advance(1.0)

        assert guard.consume(NEW_CHAT) is False

    def test_discard(self):
        guard = IntentGuard(clock=FakeClock())
        guard.issue(NEW_CHAT)
        guard.discard(NEW_CHAT)

        assert guard.peek(NEW_CHAT) is False


class TestSessionSignals:
    async def test_teardown_signal_does_not_undo_pending(self, client, sessions, backend):
        backend.seed_session("s1", messages=2)
        await sessions.load_session("s1")
        observed = []
        client.bus.subscribe(SessionCleared, lambda signal: observed.append((signal, sessions.phase)))

        sessions.start_new_chat()

        assert observed == [(SessionCleared("s1"), SessionPhase.PENDING)]
        assert sessions.phase is SessionPhase.PENDING

        # The intent was used up by the teardown; a later clear applies normally
        client.bus.publish(SessionCleared())
        assert sessions.phase is SessionPhase.NONE

    async def test_expired_intent_no_longer_protects(self, sessions, backend):
        backend.seed_session("s1", messages=2)
        await sessions.load_session("s1")
        sessions.intents = IntentGuard(ttl_ms=0)

        sessions.start_new_chat()

        assert sessions.phase is SessionPhase.NONE
        assert sessions.messages == []

    async def test_start_new_chat_is_broadcast(self, client, sessions):
        received = []
        client.bus.subscribe(StartNewChat, received.append)

        sessions.start_new_chat(survey_id="survey-3")

        assert received == [StartNewChat(survey_id="survey-3")]

    async def test_external_start_new_chat_enters_pending(self, client, sessions, backend):
        backend.seed_session("s1", messages=2)
        await sessions.load_session("s1")

        client.bus.publish(StartNewChat())

        assert sessions.phase is SessionPhase.PENDING
        assert sessions.messages == []

    async def test_clear_current_session(self, client, sessions, backend):
        backend.seed_session("s1", messages=2)
        await sessions.load_session("s1")
        sessions.select_message("s1-m1")
        published = []
        client.bus.subscribe(SessionCleared, published.append)

        sessions.clear_current_session()

        assert sessions.phase is SessionPhase.CLEARED
        assert sessions.messages == []
        assert sessions.selected_message_id is None
        assert published == [SessionCleared("s1")]

    async def test_clear_for_another_session_only_resets_selection(self, client, sessions, backend):
        backend.seed_session("s1", messages=2)
        await sessions.load_session("s1")
        sessions.select_message("s1-m0")

        client.bus.publish(SessionCleared("other"))

        assert sessions.phase is SessionPhase.ACTIVE
        assert len(sessions.messages) == 2
        assert sessions.selected_message_id is None

    async def test_sign_out_resets_store_and_cache(self, client, sessions, backend):
        backend.seed_session("s1", messages=2)
        await sessions.load_chat_sessions()
        await sessions.load_session("s1")

        await client.auth.logout()

        assert sessions.phase is SessionPhase.NONE
        assert sessions.messages == []
        assert sessions.chat_sessions == []
        assert client.cache.stats().total_entries == 0
        assert backend.revoked == ["refresh-0"]


# ========================================================================
# Session loading and list management
# ========================================================================


class TestSessionLoading:
    async def test_concurrent_loads_share_one_request(self, sessions, backend):
        backend.seed_session("s1", messages=2)

        first, second = await asyncio.gather(sessions.load_session("s1"), sessions.load_session("s1"))

        assert backend.count("quick") == 1
        assert first is None
        assert second.id == "s1"
        assert sessions.current_session_id == "s1"
        assert sessions.is_loading_session is False

    async def test_missing_session(self, sessions):
        with pytest.raises(InvalidRequestError) as error:
            await sessions.load_session("ghost")

        assert error.value.message == "Session not found"
        assert sessions.is_loading_session is False

    async def test_non_json_history_is_reported(self, sessions, backend):
        backend.seed_session("s1", messages=2)
        backend.malformed["quick"] = Response(content="<html>gateway</html>", media_type="text/html")

        with pytest.raises(InvalidResponseError):
            await sessions.load_session("s1")

        assert sessions.is_loading_session is False


class TestSessionList:
    async def test_list_cached_until_mutation(self, sessions, backend):
        backend.seed_session("a")
        backend.seed_session("b")

        await sessions.load_chat_sessions()
        await sessions.load_chat_sessions()
        assert backend.count("list_sessions") == 1

        await sessions.delete_session("a")
        assert [s.id for s in sessions.chat_sessions] == ["b"]

        await sessions.load_chat_sessions()
        assert backend.count("list_sessions") == 2

    async def test_force_reload(self, sessions, backend):
        await sessions.load_chat_sessions()
        await sessions.load_chat_sessions(force=True)

        assert backend.count("list_sessions") == 2

    async def test_create_new_session(self, sessions):
        session = await sessions.create_new_session(["survey-1"], "survey", personality_id="p1")

        assert sessions.phase is SessionPhase.ACTIVE
        assert sessions.current_session_id == session.id
        assert sessions.chat_sessions[0].id == session.id
        assert session.title == "New Chat"
        assert session.personality_id == "p1"

    async def test_deleting_current_session_clears_it(self, sessions, backend):
        backend.seed_session("s1", messages=1)
        await sessions.load_session("s1")

        await sessions.delete_session("s1")

        assert sessions.phase is SessionPhase.CLEARED
        assert "s1" not in backend.sessions

    async def test_update_title(self, sessions, backend):
        backend.seed_session("a")
        await sessions.load_chat_sessions()

        await sessions.update_session_title("a", "  Q3 churn  ")

        assert sessions.chat_sessions[0].title == "Q3 churn"
        assert backend.sessions["a"]["title"] == "Q3 churn"
        with pytest.raises(ValueError):
            await sessions.update_session_title("a", "   ")

    async def test_update_surveys_wipes_history(self, sessions, backend):
        backend.seed_session("a", messages=3)
        await sessions.load_session("a")

        await sessions.update_session_surveys("a", ["survey-9"], "survey")

        assert sessions.messages == []
        assert backend.messages["a"] == []
        assert sessions.current_session.survey_ids == ["survey-9"]
        assert backend.sessions["a"]["surveyIds"] == ["survey-9"]

    async def test_save_message(self, sessions, backend):
        backend.seed_session("s1")
        await sessions.load_session("s1")

        saved = await sessions.save_message("Pinned note", "user")

        assert sessions.messages == [saved]
        assert backend.messages["s1"][0]["content"] == "Pinned note"

    async def test_save_message_requires_active_session(self, sessions):
        with pytest.raises(SessionStateError):
            await sessions.save_message("note", "user")


class TestSelection:
    async def test_toggle_select_all_and_delete(self, sessions, backend):
        for session_id in ("a", "b", "c"):
            backend.seed_session(session_id)
        await sessions.load_chat_sessions()

        sessions.toggle_session_selection("a")
        sessions.toggle_session_selection("b")
        sessions.toggle_session_selection("a")
        assert sessions.selected_sessions == {"b"}

        sessions.select_all_sessions()
        assert sessions.selected_sessions == {"a", "b", "c"}

        sessions.deselect_all_sessions()
        assert sessions.selected_sessions == frozenset()

        sessions.select_all_sessions()
        assert await sessions.delete_selected_sessions() == ["a", "b", "c"]
        assert sessions.chat_sessions == []
        assert sessions.selected_sessions == frozenset()
        assert backend.sessions == {}

    async def test_failed_delete_is_raised_after_the_rest(self, sessions, backend):
        backend.seed_session("a")
        await sessions.load_chat_sessions()
        sessions.toggle_session_selection("a")
        sessions.toggle_session_selection("ghost")

        with pytest.raises(InvalidRequestError):
            await sessions.delete_selected_sessions()

        assert "a" not in backend.sessions
        assert sessions.selected_sessions == {"ghost"}

    async def test_listeners_skip_no_op_changes(self, sessions):
        calls = []
        unsubscribe = sessions.subscribe(calls.append)

        sessions.deselect_all_sessions()
        assert calls == []

        sessions.toggle_session_selection("x")
        assert calls == [sessions]

        unsubscribe()
        sessions.toggle_session_selection("x")
        assert len(calls) == 1
