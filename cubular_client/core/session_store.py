"""Current-conversation state: session identity, message list, session list.

The store is the only writer of conversational state. Every network round
trip captures the store's generation when it starts; starting a new chat,
clearing, or switching sessions bumps the generation, so a response that
arrives for an abandoned conversation is dropped instead of resurrecting it.
"""

import time
import uuid
from enum import Enum
from typing import Any, Callable, FrozenSet, List, Optional

from cubular_client.core.errors import CubularError, SessionStateError
from cubular_client.core.http import ApiClient
from cubular_client.core.intents import DEFAULT_INTENT_TTL_MS, NEW_CHAT, IntentGuard
from cubular_client.core.models import ChatMessage, ChatRequest, ChatSession
from cubular_client.core.reconciliation import merge, remove_message, replace_message
from cubular_client.infra.logger import logger
from cubular_client.infra.signals import SessionCleared, SignalBus, StartNewChat
from cubular_client.utils.titles import DEFAULT_TITLE, derive_session_title

store_logger = logger.getChild("SessionStore")

COMPOSING_MARKER = "Thinking..."
REGENERATING_MARKER = "Regenerating response..."
ERROR_NOTICE = "Sorry, I encountered an error while processing your request. Please try again."


class SessionPhase(str, Enum):
    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"
    CLEARED = "cleared"


def _local_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


class SessionStore:
    def __init__(
        self,
        api: ApiClient,
        bus: SignalBus,
        clock: Callable[[], float] = time.time,
        intent_ttl_ms: int = DEFAULT_INTENT_TTL_MS,
    ):
        self.api = api
        self.bus = bus
        self.intents = IntentGuard(intent_ttl_ms, clock)

        self.phase = SessionPhase.NONE
        self.current_session: Optional[ChatSession] = None
        self.messages: List[ChatMessage] = []
        self.chat_sessions: List[ChatSession] = []
        self.selected_sessions: FrozenSet[str] = frozenset()
        self.selected_message_id: Optional[str] = None
        self.is_loading = False
        self.is_loading_session = False
        self.is_sending = False

        self._generation = 0
        self._announcing_new_chat = False
        self._listeners: List[Callable[["SessionStore"], None]] = []
        self._bus_subscriptions = [
            bus.subscribe(SessionCleared, self._on_session_cleared),
            bus.subscribe(StartNewChat, self._on_start_new_chat),
        ]

    # ───────────────────────────── State plumbing ─────────────────────────────
    @property
    def current_session_id(self) -> Optional[str]:
        return self.current_session.id if self.current_session else None

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, listener: Callable[["SessionStore"], None]) -> Callable[[], None]:
        """Call ``listener(store)`` after every state change that actually changed something."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set(self, **changes: Any) -> bool:
        changed = {name: value for name, value in changes.items() if getattr(self, name) != value}
        if not changed:
            return False
        for name, value in changed.items():
            setattr(self, name, value)
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                store_logger.exception("State listener %r failed", listener)
        return True

    def _bump_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def close(self) -> None:
        for unsubscribe in self._bus_subscriptions:
            unsubscribe()
        self._bus_subscriptions = []
        self._listeners.clear()

    # ──────────────────────────── Signal handlers ─────────────────────────────
    def _on_session_cleared(self, signal: SessionCleared) -> None:
        self._set(selected_message_id=None)

        if self.phase is SessionPhase.PENDING and self.intents.consume(NEW_CHAT):
            store_logger.debug("Session %s cleared by new-chat teardown, staying pending", signal.session_id)
            return
        if signal.session_id and self.current_session_id and signal.session_id != self.current_session_id:
            return

        if self.phase is SessionPhase.ACTIVE:
            self._bump_generation()
            self._set(phase=SessionPhase.CLEARED, current_session=None, messages=[], is_sending=False)
        elif self.phase is SessionPhase.PENDING:
            self._bump_generation()
            self._set(phase=SessionPhase.NONE, messages=[], is_sending=False)

    def _on_start_new_chat(self, signal: StartNewChat) -> None:
        # Own announcements are handled by start_new_chat
        if self._announcing_new_chat or self.phase is SessionPhase.PENDING:
            return
        self._enter_pending()

    # ─────────────────────────── Session lifecycle ────────────────────────────
    def _enter_pending(self) -> None:
        previous = self.current_session_id
        self._bump_generation()
        self.intents.issue(NEW_CHAT)
        # The old list is dropped, not hidden
        self._set(
            phase=SessionPhase.PENDING,
            current_session=None,
            messages=[],
            selected_message_id=None,
            is_sending=False,
        )
        store_logger.info("New chat pending (previous session: %s)", previous)
        if previous:
            self.bus.publish(SessionCleared(session_id=previous))

    def start_new_chat(self, survey_id: Optional[str] = None) -> None:
        """Enter PENDING with an empty conversation and tell the rest of the UI about it."""
        self._enter_pending()
        self._announcing_new_chat = True
        try:
            self.bus.publish(StartNewChat(survey_id=survey_id))
        finally:
            self._announcing_new_chat = False

    def clear_current_session(self) -> None:
        previous = self.current_session_id
        self._bump_generation()
        self.intents.discard(NEW_CHAT)
        self._set(
            phase=SessionPhase.CLEARED,
            current_session=None,
            messages=[],
            selected_message_id=None,
            is_sending=False,
        )
        self.bus.publish(SessionCleared(session_id=previous))

    def reset(self) -> None:
        """Forget everything, for example after sign-out."""
        self._bump_generation()
        self.intents.discard(NEW_CHAT)
        self._set(
            phase=SessionPhase.NONE,
            current_session=None,
            messages=[],
            chat_sessions=[],
            selected_sessions=frozenset(),
            selected_message_id=None,
            is_loading=False,
            is_loading_session=False,
            is_sending=False,
        )

    def select_message(self, message_id: Optional[str]) -> None:
        self._set(selected_message_id=message_id)

    async def load_session(self, session_id: str) -> Optional[ChatSession]:
        """Switch to ``session_id`` and load its history.

        Returns None when a later session switch superseded this load.
        """
        generation = self._bump_generation()
        self.intents.discard(NEW_CHAT)
        if session_id != self.current_session_id:
            self._set(messages=[], selected_message_id=None)
        self._set(is_loading_session=True)
        try:
            session, messages = await self.api.get_session_quick(session_id)
        except CubularError:
            if not self._is_stale(generation):
                self._set(is_loading_session=False)
            raise
        if self._is_stale(generation):
            store_logger.debug("Dropping superseded load of session %s", session_id)
            return None

        self._set(
            phase=SessionPhase.ACTIVE,
            current_session=session,
            messages=messages,
            is_loading_session=False,
        )
        store_logger.info("Loaded session %s with %d messages", session_id, len(messages))
        return session

    async def _reload_history(self, session_id: str, generation: int) -> None:
        try:
            session, history = await self.api.get_session_quick(session_id)
        except CubularError as exc:
            store_logger.warning("Could not load history for new session %s: %s", session_id, exc)
            return
        if self._is_stale(generation):
            return
        # Optimistic entries the server has not echoed yet stay at the tail
        pending = [message for message in self.messages if message.optimistic]
        self._set(current_session=session, messages=merge(history, pending))

    # ────────────────────────────── Messaging ─────────────────────────────────
    async def send_message(
        self,
        content: str,
        survey_ids: List[str],
        selected_file_ids: Optional[List[str]] = None,
        personality_id: Optional[str] = None,
    ) -> Optional[ChatMessage]:
        """Send a user message and reconcile the reply into the conversation.

        Returns the confirmed assistant message, or None when the send failed
        (an error notice is appended instead) or was superseded by a new chat,
        a clear or a session switch while in flight.
        """
        content = content.strip()
        if not content:
            raise ValueError("Cannot send an empty message")
        if self.is_sending:
            raise SessionStateError("A message is already being sent")

        generation = self._generation
        fresh = self.phase is not SessionPhase.ACTIVE or self.intents.peek(NEW_CHAT)
        base = [] if fresh else list(self.messages)
        session_id = None if fresh else self.current_session_id

        user_message = ChatMessage(
            id=_local_id("user"), content=content, sender="user", session_id=session_id, optimistic=True
        )
        placeholder = ChatMessage(
            id=_local_id("typing"), content=COMPOSING_MARKER, sender="assistant", optimistic=True
        )
        title = derive_session_title(content) if session_id is None else None

        self._set(
            phase=SessionPhase.ACTIVE if session_id else SessionPhase.PENDING,
            messages=base + [user_message, placeholder],
            is_sending=True,
        )

        request = ChatRequest(
            message=content,
            survey_ids=list(survey_ids),
            selected_file_ids=list(selected_file_ids or []),
            session_id=session_id,
            personality_id=personality_id,
            title=title,
        )
        try:
            response = await self.api.send_chat(request)
        except CubularError as exc:
            if self._is_stale(generation):
                store_logger.debug("Ignoring failure of superseded send: %s", exc)
                return None
            store_logger.error("Sending message failed: %s", exc)
            notice = ChatMessage(id=_local_id("error"), content=ERROR_NOTICE, sender="assistant", optimistic=True)
            self._set(messages=remove_message(self.messages, placeholder.id) + [notice], is_sending=False)
            return None

        if self._is_stale(generation):
            store_logger.debug("Ignoring reply for superseded conversation %s", response.session_id)
            return None

        if response.session_id and response.session_id != self.current_session_id:
            self.intents.discard(NEW_CHAT)
            self._set(
                phase=SessionPhase.ACTIVE,
                current_session=ChatSession(
                    id=response.session_id,
                    survey_ids=list(survey_ids),
                    personality_id=personality_id,
                    title=title,
                    selected_file_ids=list(selected_file_ids or []),
                ),
            )
            store_logger.info("Server assigned session %s", response.session_id)
            await self._reload_history(response.session_id, generation)
            if self._is_stale(generation):
                return None

        assistant = ChatMessage(
            id=response.message_id or _local_id("assistant"),
            content=response.response,
            sender="assistant",
            session_id=self.current_session_id,
            data_snapshot=response.data_snapshot,
            confidence=response.confidence,
        )
        messages = remove_message(self.messages, placeholder.id)
        self._set(messages=merge(messages, [assistant]), is_sending=False)
        self.api.invalidate_sessions()
        return assistant

    async def retry_message(self, message_id: str) -> Optional[ChatMessage]:
        """Regenerate one assistant message in place.

        On failure the original content is restored and one error notice is
        appended. Returns the regenerated message, or None on failure or when
        superseded.
        """
        session_id = self.current_session_id
        if self.phase is not SessionPhase.ACTIVE or not session_id:
            raise SessionStateError("Retrying a message requires an active session")
        original = next((message for message in self.messages if message.id == message_id), None)
        if original is None:
            raise SessionStateError(f"Message {message_id} is not part of the current session")

        generation = self._generation
        regenerating = original.model_copy(update={"content": REGENERATING_MARKER, "optimistic": True})
        self._set(messages=replace_message(self.messages, message_id, regenerating))

        try:
            response = await self.api.retry_message(message_id, session_id)
        except CubularError as exc:
            if self._is_stale(generation):
                return None
            store_logger.error("Retrying message %s failed: %s", message_id, exc)
            notice = ChatMessage(id=_local_id("error"), content=ERROR_NOTICE, sender="assistant", optimistic=True)
            self._set(messages=replace_message(self.messages, message_id, original) + [notice])
            return None

        if self._is_stale(generation):
            return None

        updated = original.model_copy(update={
            "content": response.response,
            "data_snapshot": response.data_snapshot,
            "confidence": response.confidence,
            "optimistic": False,
        })
        self._set(messages=replace_message(self.messages, message_id, updated))
        return updated

    async def save_message(
        self,
        content: str,
        sender: str,
        data_snapshot: Any = None,
        confidence: Any = None,
        personality_used: Optional[str] = None,
    ) -> ChatMessage:
        session_id = self.current_session_id
        if self.phase is not SessionPhase.ACTIVE or not session_id:
            raise SessionStateError("Saving a message requires an active session")
        generation = self._generation
        saved = await self.api.save_message(session_id, content, sender, data_snapshot, confidence, personality_used)
        if not self._is_stale(generation):
            self._set(messages=merge(self.messages, [saved]))
        return saved

    # ──────────────────────────── Session list ────────────────────────────────
    async def load_chat_sessions(self, survey_id: Optional[str] = None, force: bool = False) -> List[ChatSession]:
        if force:
            self.api.invalidate_sessions()
        self._set(is_loading=True)
        try:
            sessions = await self.api.list_sessions(survey_id)
        finally:
            self._set(is_loading=False)
        self._set(chat_sessions=sessions)
        return sessions

    async def create_new_session(
        self,
        survey_ids: List[str],
        category: str,
        personality_id: Optional[str] = None,
        selected_file_ids: Optional[List[str]] = None,
        title: str = DEFAULT_TITLE,
    ) -> ChatSession:
        session = await self.api.create_session(survey_ids, category, title, personality_id, selected_file_ids)
        self._bump_generation()
        self.intents.discard(NEW_CHAT)
        self._set(
            phase=SessionPhase.ACTIVE,
            current_session=session,
            messages=[],
            selected_message_id=None,
            chat_sessions=[session] + [s for s in self.chat_sessions if s.id != session.id],
        )
        store_logger.info("Created session %s", session.id)
        return session

    async def delete_session(self, session_id: str) -> None:
        await self.api.delete_session(session_id)
        self._set(
            chat_sessions=[s for s in self.chat_sessions if s.id != session_id],
            selected_sessions=self.selected_sessions - {session_id},
        )
        if session_id == self.current_session_id:
            self.clear_current_session()

    def _patch_session(self, session_id: str, **fields: Any) -> None:
        sessions = [
            s.model_copy(update=fields) if s.id == session_id else s for s in self.chat_sessions
        ]
        current = self.current_session
        if current is not None and current.id == session_id:
            current = current.model_copy(update=fields)
        self._set(chat_sessions=sessions, current_session=current)

    async def update_session_title(self, session_id: str, title: str) -> None:
        title = title.strip()
        if not title:
            raise ValueError("Session title cannot be empty")
        await self.api.update_session(session_id, title=title)
        self._patch_session(session_id, title=title)

    async def update_session_surveys(
        self,
        session_id: str,
        survey_ids: List[str],
        category: str,
        title: Optional[str] = None,
    ) -> None:
        """Point a session at other surveys; its history no longer applies and is wiped."""
        await self.api.clear_session_messages(session_id)
        fields = {"survey_ids": list(survey_ids), "category": category}
        if title:
            fields["title"] = title
        await self.api.update_session(session_id, **fields)
        self._patch_session(session_id, **fields)
        if session_id == self.current_session_id:
            self._set(messages=[], selected_message_id=None)

    def toggle_session_selection(self, session_id: str) -> None:
        if session_id in self.selected_sessions:
            self._set(selected_sessions=self.selected_sessions - {session_id})
        else:
            self._set(selected_sessions=self.selected_sessions | {session_id})

    def select_all_sessions(self) -> None:
        self._set(selected_sessions=frozenset(s.id for s in self.chat_sessions))

    def deselect_all_sessions(self) -> None:
        self._set(selected_sessions=frozenset())

    async def delete_selected_sessions(self) -> List[str]:
        """Delete every selected session; raises the first failure after attempting all."""
        deleted: List[str] = []
        failure: Optional[CubularError] = None
        for session_id in sorted(self.selected_sessions):
            try:
                await self.delete_session(session_id)
            except CubularError as exc:
                store_logger.error("Deleting session %s failed: %s", session_id, exc)
                failure = failure or exc
            else:
                deleted.append(session_id)
        if failure is not None:
            raise failure
        return deleted
