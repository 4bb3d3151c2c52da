"""
Conversation sessions and turn-taking on top of a KeyValueStore.

Every write of a session is a compare-and-swap against the JSON read just before, so
two instances racing on the same conversation cannot both move it to ``processing``.
"""

import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from kommo_bridge.logging_config import get_logger
from kommo_bridge.schemas.session import ChatMessage, ConversationSession
from kommo_bridge.services.normalizer import normalize_text
from kommo_bridge.services.result import Result
from kommo_bridge.services.state_machine import TurnState, begin_processing, finish_turn
from kommo_bridge.services.store.base import KeyValueStore

logger = get_logger("session_store")

MAX_CAS_RETRIES = 5


@dataclass
class TurnClaim:
    """Granted right to answer one inbound message."""

    key: str
    token: str
    session: ConversationSession


class SessionStore:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        duplicate_cooldown_seconds: float = 8.0,
        lock_window_seconds: float = 1.5,
        reply_throttle_seconds: float = 3.0,
        processing_timeout_seconds: float = 45.0,
        processed_id_ttl_seconds: float = 6 * 60 * 60,
        history_max_turns: int = 8,
        session_ttl_seconds: Optional[float] = 30 * 24 * 60 * 60,
        system_prompt: Optional[str] = None,
        prefix: str = "kb",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.duplicate_cooldown_seconds = duplicate_cooldown_seconds
        self.lock_window_seconds = lock_window_seconds
        self.reply_throttle_seconds = reply_throttle_seconds
        self.processing_timeout_seconds = processing_timeout_seconds
        self.processed_id_ttl_seconds = processed_id_ttl_seconds
        self.history_max_turns = history_max_turns
        self.session_ttl_seconds = session_ttl_seconds
        self.system_prompt = system_prompt
        self.prefix = prefix
        self.clock = clock

    @classmethod
    def from_settings(cls, store: KeyValueStore, settings) -> "SessionStore":
        return cls(
            store,
            duplicate_cooldown_seconds=settings.duplicate_cooldown_seconds,
            lock_window_seconds=settings.lock_window_seconds,
            reply_throttle_seconds=settings.reply_throttle_seconds,
            processing_timeout_seconds=settings.processing_timeout_seconds,
            processed_id_ttl_seconds=settings.processed_id_ttl_seconds,
            history_max_turns=settings.history_max_turns,
            session_ttl_seconds=settings.session_ttl_seconds,
            system_prompt=settings.assistant_system_prompt,
        )

    def _session_key(self, key: str) -> str:
        return f"{self.prefix}:session:{key}"

    def _thread_key(self, key: str) -> str:
        return f"{self.prefix}:thread:{key}"

    def _lock_key(self, key: str) -> str:
        return f"{self.prefix}:lock:{key}"

    def _processed_key(self, message_id: str) -> str:
        return f"{self.prefix}:processed:{message_id}"

    # Sessions

    def new_session(self, key: str) -> ConversationSession:
        now = self.clock()
        history = [ChatMessage(role="system", content=self.system_prompt)] if self.system_prompt else []
        return ConversationSession(key=key, history=history, created_at=now, updated_at=now)

    async def load(self, key: str) -> tuple[ConversationSession, Optional[str]]:
        """Return the session and the raw JSON it was read from (None when new)."""
        raw = await self.store.get(self._session_key(key))
        if raw is None:
            return self.new_session(key), None
        try:
            return ConversationSession.model_validate_json(raw), raw
        except ValueError as exc:
            logger.warning(
                "Corrupt session replaced",
                extra={"context": {"key": key, "error": str(exc)}},
            )
            return self.new_session(key), raw

    async def get(self, key: str) -> Optional[ConversationSession]:
        raw = await self.store.get(self._session_key(key))
        return ConversationSession.model_validate_json(raw) if raw else None

    async def save(self, session: ConversationSession, expected_raw: Optional[str]) -> bool:
        session.updated_at = self.clock()
        return await self.store.compare_and_swap(
            self._session_key(session.key),
            expected_raw,
            session.model_dump_json(),
            ttl=self.session_ttl_seconds,
        )

    # Thread handles

    async def get_thread_handle(self, key: str) -> Optional[str]:
        return await self.store.get(self._thread_key(key))

    async def set_thread_handle(self, key: str, thread_handle: str) -> None:
        await self.store.set(self._thread_key(key), thread_handle, ttl=self.session_ttl_seconds)

    # Processed message ids

    async def mark_processed(self, message_id: Optional[str]) -> bool:
        """True if the id was new. Messages without an id always pass."""
        if not message_id:
            return True
        return await self.store.set_if_absent(
            self._processed_key(message_id), str(self.clock()), ttl=self.processed_id_ttl_seconds
        )

    # Advisory lock

    async def acquire_lock(self, key: str) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = await self.store.set_if_absent(self._lock_key(key), token, ttl=self.lock_window_seconds)
        return token if acquired else None

    async def release_lock(self, key: str, token: str) -> None:
        await self.store.delete_if_equals(self._lock_key(key), token)

    # Turn-taking

    def _rejection(self, session: ConversationSession, text: str, now: float) -> Optional[str]:
        if session.state == TurnState.PROCESSING and (session.processing_deadline or 0) > now:
            return "processing"

        normalized = normalize_text(text)
        if (
            session.last_user_text is not None
            and session.last_user_at is not None
            and now - session.last_user_at < self.duplicate_cooldown_seconds
            and normalize_text(session.last_user_text) == normalized
        ):
            return "duplicate_text"

        if session.last_reply_at is not None and now - session.last_reply_at < self.reply_throttle_seconds:
            echoes = {normalize_text(session.last_user_text), normalize_text(session.last_reply_text)}
            if normalized in echoes:
                return "reply_throttle"
        return None

    async def begin_turn(self, key: str, text: str) -> Result[TurnClaim]:
        """Move the conversation to ``processing`` for this text, or say why not."""
        lock_token = await self.acquire_lock(key)
        if lock_token is None:
            return Result.failure("conversation locked", code="busy")

        try:
            session, raw = await self.load(key)
            now = self.clock()
            reason = self._rejection(session, text, now)
            if reason:
                return Result.failure(f"turn rejected: {reason}", code=reason)

            if session.state == TurnState.PROCESSING:
                logger.warning(
                    "Stale processing state released",
                    extra={"context": {"key": key, "deadline": session.processing_deadline}},
                )
                session.state = finish_turn(session.state)

            token = uuid.uuid4().hex
            session.state = begin_processing(session.state)
            session.awaiting_user = session.state.accepts_messages
            session.last_user_text = text
            session.last_user_at = now
            session.processing_deadline = now + self.processing_timeout_seconds
            session.processing_token = token

            if not await self.save(session, raw):
                return Result.failure("session changed concurrently", code="busy")
            return Result.success(TurnClaim(key=key, token=token, session=session))
        finally:
            await self.release_lock(key, lock_token)

    def _trim_history(self, history: list[ChatMessage]) -> list[ChatMessage]:
        system = [m for m in history[:1] if m.role == "system"]
        rest = history[len(system):]
        limit = self.history_max_turns * 2
        if len(rest) > limit:
            rest = rest[-limit:]
        return system + rest

    async def finish_turn(
        self,
        claim: TurnClaim,
        *,
        user_text: str,
        reply_text: Optional[str],
        record_history: bool = True,
    ) -> bool:
        """Return the conversation to ``awaiting_user``; always attempted, also after failures.

        Returns False when another claim took over after this one's deadline passed.
        """
        for _ in range(MAX_CAS_RETRIES):
            session, raw = await self.load(claim.key)
            if session.processing_token not in (None, claim.token):
                logger.warning(
                    "Turn finished after takeover",
                    extra={"context": {"key": claim.key}},
                )
                return False

            now = self.clock()
            if session.state == TurnState.PROCESSING:
                session.state = finish_turn(session.state)
            session.awaiting_user = session.state.accepts_messages
            session.processing_deadline = None
            session.processing_token = None
            session.last_reply_at = now
            if reply_text is not None:
                session.last_reply_text = reply_text
            if record_history and reply_text:
                session.history = self._trim_history(
                    session.history
                    + [
                        ChatMessage(role="user", content=user_text),
                        ChatMessage(role="assistant", content=reply_text),
                    ]
                )
            if await self.save(session, raw):
                return True
        logger.error("Could not finish turn", extra={"context": {"key": claim.key}})
        return False
