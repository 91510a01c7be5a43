"""Multi-turn conversation state: sessions, tracked entities and reference resolution.

Sessions live in process memory and expire after an idle window (24h by
default). A session that is serving a request is pinned and never evicted
mid-request.
"""

import re
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator

from pdfrag.context.models import (
    ConversationMessage,
    ConversationSession,
    EntityType,
    MessageRole,
    ReferenceResolution,
    SessionStats,
    TrackedEntity,
)
from pdfrag.core.errors import InputValidationError
from pdfrag.core.llm import TextGenerator
from pdfrag.core.logging import get_logger
from pdfrag.core.result import Ok, call_external

logger = get_logger(__name__)

REFERENCE_PATTERNS = [
    re.compile(r"\b(it|its|that|this|these|those|them|they)\b", re.I),
    re.compile(r"\b(the (one|document|procedure|process|requirement|specification))\b", re.I),
    re.compile(r"\b(what about|tell me more|explain further|continue|elaborate)\b", re.I),
    re.compile(r"\b(above|mentioned|previous|earlier|before)\b", re.I),
]

ENTITY_PATTERNS: dict[EntityType, re.Pattern[str]] = {
    EntityType.PROCEDURES: re.compile(r"\b(procedure|process|protocol|guideline)\s+([A-Z0-9-]+)", re.I),
    EntityType.REQUIREMENTS: re.compile(r"\b(requirement|spec|specification)\s+([A-Z0-9.-]+)", re.I),
    EntityType.MEASUREMENTS: re.compile(r"\b(\d+\.?\d*)\s*(mm|cm|m|kg|g|°C|°F|psi|bar)", re.I),
    EntityType.DOCUMENTS: re.compile(r"\b(BR|MIL-STD|ISO|ANSI|NATO)\s*[0-9-]+", re.I),
    # Acronyms (case-sensitive)
    EntityType.DEFINITIONS: re.compile(r"\b([A-Z]{2,}|[A-Z][A-Z0-9]{2,})\b"),
}

# "(NATOPS Manual, Page 4)" style source citations in answers
CITATION_PATTERN = re.compile(r"\([^()]*\bpage\s+\d+[^()]*\)", re.I)

RESOLUTION_SYSTEM_PROMPT = (
    "You are a reference resolution assistant. Convert queries with pronouns into "
    "explicit, self-contained queries."
)

RESOLUTION_PROMPT = """Given the conversation context and detected entities, resolve references in the user's query to make it self-contained.

Conversation Context:
{context}

Tracked Entities:
{entities}

User Query: "{query}"

Provide a resolved version of the query where pronouns and references are replaced with explicit entities.
Only output the resolved query, nothing else.

Resolved Query:"""

SUMMARY_MESSAGES = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _suffix() -> str:
    return uuid.uuid4().hex[:9]


def build_context_summary(messages: list[ConversationMessage]) -> str:
    return "\n".join(f"{m.role.value.upper()}: {m.content}" for m in messages)


class ConversationContextManager:
    """In-memory session store with entity tracking and reference resolution."""

    def __init__(
        self,
        generator: TextGenerator | None = None,
        idle_window: timedelta = timedelta(hours=24),
        llm_timeout: float | None = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.generator = generator
        self.idle_window = idle_window
        self.llm_timeout = llm_timeout
        self._clock = clock
        self._sessions: dict[str, ConversationSession] = {}
        self._pins: dict[str, int] = {}
        self._seq = 0
        self._lock = threading.Lock()

    # -- sessions -------------------------------------------------------

    def get_session(self, user_id: str, session_id: str | None = None) -> ConversationSession:
        """
        Return the user's session, creating it on first contact.

        Raises:
            InputValidationError: If the session id belongs to another user
        """
        if not user_id:
            raise InputValidationError("User ID is required")

        with self._lock:
            if session_id and session_id in self._sessions:
                session = self._sessions[session_id]
                if session.user_id != user_id:
                    raise InputValidationError(f"Session {session_id} does not belong to user")
                return session

            now = self._clock()
            new_id = session_id or f"session_{user_id}_{int(time.time() * 1000)}_{_suffix()}"
            session = ConversationSession(
                session_id=new_id,
                user_id=user_id,
                started_at=now,
                last_activity_at=now,
            )
            self._sessions[new_id] = session

        logger.debug(
            f"Created conversation session {new_id}",
            extra={"user_id": user_id, "session_id": new_id},
        )
        return session

    def add_message(
        self,
        user_id: str,
        session_id: str,
        role: MessageRole | str,
        content: str,
        metadata: dict | None = None,
        resolved_query: str | None = None,
    ) -> ConversationMessage:
        """Append a message, refresh activity and track its entities."""
        session = self.get_session(user_id, session_id)
        now = self._clock()
        message = ConversationMessage(
            id=f"msg_{int(time.time() * 1000)}_{_suffix()}",
            session_id=session.session_id,
            user_id=user_id,
            role=MessageRole(role),
            content=content,
            resolved_query=resolved_query,
            timestamp=now,
            metadata=metadata or {},
        )

        with self._lock:
            session.messages.append(message)
            session.last_activity_at = now
            self._track_entities(session, content)

        return message

    def _track_entities(self, session: ConversationSession, content: str) -> None:
        # citations name the source document, not the subject of the turn
        content = CITATION_PATTERN.sub(" ", content)
        for entity_type, pattern in ENTITY_PATTERNS.items():
            for match in pattern.finditer(content):
                value = match.group(0)
                self._seq += 1
                key = f"{entity_type.value}:{value}"
                entity = session.entities.get(key)
                if entity is None:
                    session.entities[key] = TrackedEntity(
                        type=entity_type,
                        value=value,
                        last_mentioned_seq=self._seq,
                    )
                else:
                    entity.mention_count += 1
                    entity.last_mentioned_seq = self._seq

    # -- reference resolution ------------------------------------------

    @staticmethod
    def detect_references(query: str) -> list[str]:
        found: list[str] = []
        for pattern in REFERENCE_PATTERNS:
            found.extend(m.group(0) for m in pattern.finditer(query))
        return found

    def contains_references(self, query: str) -> bool:
        return any(p.search(query) for p in REFERENCE_PATTERNS)

    def most_recent_entity(self, session: ConversationSession) -> TrackedEntity | None:
        """Latest-mentioned definition (acronym), else latest-mentioned entity of any type."""
        entities = list(session.entities.values())
        if not entities:
            return None
        definitions = [e for e in entities if e.type == EntityType.DEFINITIONS]
        pool = definitions or entities
        return max(pool, key=lambda e: e.last_mentioned_seq)

    async def resolve_references(
        self, query: str, user_id: str, session_id: str
    ) -> ReferenceResolution:
        """
        Rewrite pronouns and back-references into explicit entities.

        Without references or history the query passes through unchanged with
        ``needs_context=False``. LLM resolution is tried first when a generator
        is configured; any failure falls back to the rule-based resolver.
        """
        session = self.get_session(user_id, session_id)
        detected = self.detect_references(query)

        if not detected or not session.messages:
            return ReferenceResolution(original_query=query, resolved_query=query)

        summary = build_context_summary(session.messages[-SUMMARY_MESSAGES:])
        entity = self.most_recent_entity(session)

        resolved = None
        if self.generator is not None:
            resolved = await self._resolve_with_llm(query, summary, session)
        if not resolved:
            resolved = self._resolve_simple(query, entity)

        resolved_entities = {}
        if entity is not None and resolved != query:
            resolved_entities = {ref: entity.value for ref in detected}

        logger.debug(
            f"Resolved query references: {query!r} -> {resolved!r}",
            extra={"session_id": session.session_id, "references": len(detected)},
        )
        return ReferenceResolution(
            original_query=query,
            resolved_query=resolved,
            detected_references=detected,
            resolved_entities=resolved_entities,
            needs_context=True,
            context_summary=summary,
        )

    @staticmethod
    def _resolve_simple(query: str, entity: TrackedEntity | None) -> str:
        if entity is None:
            return query
        resolved = re.sub(r"\bit\b", lambda _: entity.value, query, flags=re.I)
        resolved = re.sub(r"\bthat\b", lambda _: f"that {entity.value}", resolved, flags=re.I)
        return resolved

    async def _resolve_with_llm(
        self, query: str, summary: str, session: ConversationSession
    ) -> str | None:
        by_type: dict[str, list[str]] = {}
        for entity in sorted(session.entities.values(), key=lambda e: e.last_mentioned_seq):
            by_type.setdefault(entity.type.value, []).append(entity.value)
        entities_text = "\n".join(f"{t}: {', '.join(v[-3:])}" for t, v in by_type.items())

        prompt = RESOLUTION_PROMPT.format(context=summary, entities=entities_text, query=query)
        result = await call_external(
            "reference_resolution",
            lambda: self.generator.generate(
                prompt,
                system_prompt=RESOLUTION_SYSTEM_PROMPT,
                max_tokens=200,
                temperature=0.3,
            ),
            self.llm_timeout,
        )
        if not isinstance(result, Ok):
            return None
        resolved = result.value.strip().strip('"').strip()
        return resolved or None

    # -- context and housekeeping --------------------------------------

    def get_context_for_query(
        self, user_id: str, session_id: str, include_messages: int = SUMMARY_MESSAGES
    ) -> str:
        session = self.get_session(user_id, session_id)
        recent = session.messages[-include_messages:] if include_messages > 0 else []
        if not recent:
            return ""
        return (
            "Previous conversation context:\n"
            f"{build_context_summary(recent)}\n\n"
            f"Current topic: {session.current_topic or 'General discussion'}"
        )

    def update_topic(self, user_id: str, session_id: str, topic: str) -> None:
        session = self.get_session(user_id, session_id)
        session.current_topic = topic

    def get_history(
        self, user_id: str, session_id: str, limit: int | None = None
    ) -> list[ConversationMessage]:
        session = self.get_session(user_id, session_id)
        messages = list(session.messages)
        return messages[-limit:] if limit else messages

    def clear_session(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
            self._pins.pop(session_id, None)
        return removed

    def get_session_stats(self, session_id: str) -> SessionStats | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return SessionStats(
            message_count=len(session.messages),
            entity_count=len(session.entities),
            duration_seconds=(session.last_activity_at - session.started_at).total_seconds(),
            last_activity=session.last_activity_at,
        )

    @contextmanager
    def session_in_use(self, session_id: str) -> Iterator[None]:
        """Pin a session so idle cleanup skips it while a request is served."""
        with self._lock:
            self._pins[session_id] = self._pins.get(session_id, 0) + 1
        try:
            yield
        finally:
            with self._lock:
                remaining = self._pins.get(session_id, 1) - 1
                if remaining > 0:
                    self._pins[session_id] = remaining
                else:
                    self._pins.pop(session_id, None)

    def cleanup_old_sessions(self, max_age: timedelta | None = None) -> int:
        """Evict sessions idle longer than ``max_age`` (default: the idle window)."""
        cutoff = self._clock() - (max_age or self.idle_window)
        with self._lock:
            expired = [
                sid
                for sid, s in self._sessions.items()
                if s.last_activity_at < cutoff and not self._pins.get(sid)
            ]
            for sid in expired:
                del self._sessions[sid]

        if expired:
            logger.info(
                f"Evicted {len(expired)} idle conversation sessions",
                extra={"evicted": len(expired)},
            )
        return len(expired)

    @property
    def session_count(self) -> int:
        return len(self._sessions)
