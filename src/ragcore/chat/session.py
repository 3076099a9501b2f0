"""Chat session state and its generation state machine."""

from __future__ import annotations

import asyncio
import enum
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from ragcore.errors import RagCoreError, SessionBusy
from ragcore.models import Citation, Turn, TurnRole, TurnStatus, utcnow
from ragcore.providers.stream import CancellationToken


class SessionState(str, enum.Enum):
    IDLE = "idle"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    CANCELLED = "cancelled"
    ERRORED = "errored"


_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.RETRIEVING}),
    SessionState.RETRIEVING: frozenset({SessionState.GENERATING, SessionState.CANCELLED, SessionState.ERRORED}),
    SessionState.GENERATING: frozenset({SessionState.IDLE, SessionState.CANCELLED, SessionState.ERRORED}),
    SessionState.CANCELLED: frozenset({SessionState.IDLE}),
    SessionState.ERRORED: frozenset({SessionState.IDLE}),
}

ACTIVE_STATES = frozenset({SessionState.RETRIEVING, SessionState.GENERATING})


class IllegalTransition(RagCoreError):
    """Raised when a session is moved along an edge the state machine does not have."""


class GenerationOutcome(str, enum.Enum):
    FINISHED = "finished"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass(frozen=True)
class GenerationResult:
    session_id: str
    outcome: GenerationOutcome
    turn: Optional[Turn] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class ActiveGeneration:
    """Bookkeeping for the single in-flight generation of a session."""

    cancel: CancellationToken = field(default_factory=CancellationToken)
    task: Optional["asyncio.Task[GenerationResult]"] = None
    keep_partial: bool = True
    parts: List[str] = field(default_factory=list)
    citations: tuple[Citation, ...] = ()
    started_at: datetime = field(default_factory=utcnow)

    @property
    def content(self) -> str:
        return "".join(self.parts)


class ChatSession:
    """One conversation: ordered finalized turns plus at most one active generation."""

    def __init__(
        self,
        session_id: str,
        workspace_id: str,
        provider_id: str | None,
        document_ids: tuple[str, ...] = (),
        *,
        turns: Optional[List[Turn]] = None,
        created_at: datetime | None = None,
    ) -> None:
        self.session_id = session_id
        self.workspace_id = workspace_id
        self.provider_id = provider_id
        self.document_ids = document_ids
        self.created_at = created_at or utcnow()
        self._turns: List[Turn] = list(turns or [])
        self._state = SessionState.IDLE
        self._active: ActiveGeneration | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    @property
    def active(self) -> ActiveGeneration | None:
        return self._active

    @property
    def pending_turn(self) -> Turn | None:
        """The assistant turn being streamed, if any."""
        active = self._active
        if active is None or self._state is not SessionState.GENERATING:
            return None
        return Turn(
            role=TurnRole.ASSISTANT,
            content=active.content,
            created_at=active.started_at,
            citations=active.citations,
            status=TurnStatus.STREAMING,
        )

    def begin(self) -> ActiveGeneration:
        """Claim the session for a new generation or raise ``SessionBusy``."""
        with self._lock:
            if self._state in ACTIVE_STATES or self._active is not None:
                raise SessionBusy(self.session_id)
            if self._state in (SessionState.ERRORED, SessionState.CANCELLED):
                self._state = SessionState.IDLE
            self._move(SessionState.RETRIEVING)
            self._active = ActiveGeneration()
            return self._active

    def transition(self, target: SessionState) -> None:
        with self._lock:
            self._move(target)

    def release(self, active: ActiveGeneration) -> None:
        """Drop the generation handle; a session left mid-state falls back to ``IDLE``."""
        with self._lock:
            if self._active is active:
                self._active = None
            if self._state in ACTIVE_STATES or self._state is SessionState.CANCELLED:
                self._state = SessionState.IDLE

    def acknowledge(self) -> bool:
        with self._lock:
            if self._state is not SessionState.ERRORED:
                return False
            self._state = SessionState.IDLE
            return True

    def append(self, turn: Turn) -> int:
        """Append a finalized turn; returns its position."""
        if not turn.is_final:
            raise IllegalTransition("Only finalized turns can be appended")
        with self._lock:
            self._turns.append(turn)
            return len(self._turns) - 1

    def _move(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise IllegalTransition(f"Session {self.session_id}: {self._state.value} -> {target.value}")
        self._state = target
