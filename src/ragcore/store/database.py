"""SQL registry for documents, store metadata and chat history."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.pool import StaticPool

from ragcore.models import (
    Citation,
    Document,
    DocumentStatus,
    IngestionState,
    Turn,
    TurnRole,
    TurnStatus,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime:
    if value is None:
        return _utcnow()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class SessionRecord:
    """Persisted session header plus its finalized turns."""

    session_id: str
    workspace_id: str
    provider_id: str | None
    document_ids: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=_utcnow)
    turns: Sequence[Turn] = ()


class Registry:
    """Store registry state in a SQL database.

    Each method runs in its own transaction; callers on the event loop run
    them through ``asyncio.to_thread``.
    """

    def __init__(self, connection_uri: str) -> None:
        self._engine = self._create_engine(connection_uri)
        self._metadata = MetaData()
        self.documents = Table(
            "documents",
            self._metadata,
            Column("document_id", String(255), primary_key=True),
            Column("workspace_id", String(255), nullable=False, index=True),
            Column("source", Text, nullable=False),
            Column("content_hash", String(64), nullable=True),
            Column("status", String(32), nullable=False),
            Column("reason", Text, nullable=True),
            Column("generation", String(32), nullable=True),
            Column("chunk_count", Integer, nullable=False, default=0),
            Column("updated_at", DateTime(timezone=True), nullable=False),
        )
        self.store_meta = Table(
            "store_meta",
            self._metadata,
            Column("key", String(64), primary_key=True),
            Column("value", Text, nullable=False),
        )
        self.sessions = Table(
            "sessions",
            self._metadata,
            Column("session_id", String(64), primary_key=True),
            Column("workspace_id", String(255), nullable=False, index=True),
            Column("provider_id", String(64), nullable=True),
            Column("document_ids", Text, nullable=True),
            Column("created_at", DateTime(timezone=True), nullable=False),
        )
        self.turns = Table(
            "turns",
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("session_id", String(64), nullable=False, index=True),
            Column("position", Integer, nullable=False),
            Column("role", String(16), nullable=False),
            Column("content", Text, nullable=False),
            Column("status", String(16), nullable=False),
            Column("citations", Text, nullable=True),
            Column("error_kind", String(32), nullable=True),
            Column("error_message", Text, nullable=True),
            Column("created_at", DateTime(timezone=True), nullable=False),
        )
        self._metadata.create_all(self._engine)

    @staticmethod
    def _create_engine(connection_uri: str) -> Engine:
        url = make_url(connection_uri)
        if url.get_backend_name() == "sqlite":
            database = url.database or ""
            if database in ("", ":memory:"):
                return create_engine(
                    connection_uri,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(connection_uri)

    @property
    def engine(self) -> Engine:
        return self._engine

    def dispose(self) -> None:
        self._engine.dispose()

    # Documents -----------------------------------------------------------

    def get_document(self, document_id: str) -> Document | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(self.documents).where(self.documents.c.document_id == document_id)
            ).mappings().first()
        return self._to_document(row) if row else None

    def list_documents(self, workspace_id: str | None = None) -> list[Document]:
        query = select(self.documents).order_by(self.documents.c.document_id)
        if workspace_id is not None:
            query = query.where(self.documents.c.workspace_id == workspace_id)
        with self._engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [self._to_document(row) for row in rows]

    def set_status(
        self,
        document_id: str,
        status: DocumentStatus,
        *,
        source: str | None = None,
        workspace_id: str | None = None,
    ) -> Document:
        """Record a status change, creating the row on first sight."""
        with self._engine.begin() as conn:
            values: dict[str, Any] = {
                "status": status.state.value,
                "reason": status.reason,
                "updated_at": _utcnow(),
            }
            if source is not None:
                values["source"] = source
            if workspace_id is not None:
                values["workspace_id"] = workspace_id
            self._upsert_document(conn, document_id, values)
            row = self._document_row(conn, document_id)
        return self._to_document(row)

    def commit_generation(
        self,
        document_id: str,
        *,
        generation: str,
        content_hash: str | None,
        chunk_count: int,
        workspace_id: str,
        source: str,
    ) -> str | None:
        """Atomically make ``generation`` the visible chunk set; returns the retired one."""
        with self._engine.begin() as conn:
            row = self._document_row(conn, document_id)
            previous = row["generation"] if row else None
            self._upsert_document(
                conn,
                document_id,
                {
                    "generation": generation,
                    "content_hash": content_hash,
                    "chunk_count": chunk_count,
                    "workspace_id": workspace_id,
                    "source": source,
                    "status": IngestionState.INDEXED.value,
                    "reason": None,
                    "updated_at": _utcnow(),
                },
            )
        return previous

    def remove_document(self, document_id: str) -> str | None:
        """Delete the registry row; returns the generation that was active, if any."""
        with self._engine.begin() as conn:
            row = self._document_row(conn, document_id)
            if row is None:
                return None
            conn.execute(delete(self.documents).where(self.documents.c.document_id == document_id))
        return row["generation"]

    def active_generations(
        self,
        *,
        workspace_id: str | None = None,
        document_ids: Iterable[str] | None = None,
    ) -> dict[str, str]:
        query = select(self.documents.c.document_id, self.documents.c.generation).where(
            self.documents.c.generation.is_not(None)
        )
        if workspace_id is not None:
            query = query.where(self.documents.c.workspace_id == workspace_id)
        if document_ids is not None:
            query = query.where(self.documents.c.document_id.in_(list(document_ids)))
        with self._engine.connect() as conn:
            return {row.document_id: row.generation for row in conn.execute(query)}

    def _document_row(self, conn: Connection, document_id: str) -> Mapping[str, Any] | None:
        return conn.execute(
            select(self.documents).where(self.documents.c.document_id == document_id)
        ).mappings().first()

    def _upsert_document(self, conn: Connection, document_id: str, values: dict[str, Any]) -> None:
        exists = conn.execute(
            select(func.count()).select_from(self.documents).where(self.documents.c.document_id == document_id)
        ).scalar_one()
        if exists:
            conn.execute(
                self.documents.update().where(self.documents.c.document_id == document_id).values(**values)
            )
            return
        payload = {
            "document_id": document_id,
            "workspace_id": "default",
            "source": "",
            "chunk_count": 0,
            "status": IngestionState.PENDING.value,
        }
        payload.update(values)
        conn.execute(self.documents.insert().values(**payload))

    @staticmethod
    def _to_document(row: Mapping[str, Any]) -> Document:
        return Document(
            document_id=row["document_id"],
            source=row["source"],
            workspace_id=row["workspace_id"],
            status=DocumentStatus(IngestionState(row["status"]), row["reason"]),
            content_hash=row["content_hash"],
            generation=row["generation"],
            chunk_count=row["chunk_count"] or 0,
            updated_at=_aware(row["updated_at"]),
        )

    # Store metadata --------------------------------------------------------

    def get_meta(self, key: str) -> str | None:
        with self._engine.connect() as conn:
            return conn.execute(
                select(self.store_meta.c.value).where(self.store_meta.c.key == key)
            ).scalar_one_or_none()

    def set_meta_if_absent(self, key: str, value: str) -> str:
        """Store ``value`` unless ``key`` is already set; returns the stored value."""
        with self._engine.begin() as conn:
            current = conn.execute(
                select(self.store_meta.c.value).where(self.store_meta.c.key == key)
            ).scalar_one_or_none()
            if current is not None:
                return current
            conn.execute(self.store_meta.insert().values(key=key, value=value))
        return value

    # Sessions --------------------------------------------------------------

    def save_session(self, record: SessionRecord) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                self.sessions.insert().values(
                    session_id=record.session_id,
                    workspace_id=record.workspace_id,
                    provider_id=record.provider_id,
                    document_ids=json.dumps(list(record.document_ids)),
                    created_at=record.created_at,
                )
            )

    def load_session(self, session_id: str) -> SessionRecord | None:
        with self._engine.connect() as conn:
            header = conn.execute(
                select(self.sessions).where(self.sessions.c.session_id == session_id)
            ).mappings().first()
            if header is None:
                return None
            rows = conn.execute(
                select(self.turns)
                .where(self.turns.c.session_id == session_id)
                .order_by(self.turns.c.position)
            ).mappings().all()
        return SessionRecord(
            session_id=header["session_id"],
            workspace_id=header["workspace_id"],
            provider_id=header["provider_id"],
            document_ids=tuple(json.loads(header["document_ids"] or "[]")),
            created_at=_aware(header["created_at"]),
            turns=[self._to_turn(row) for row in rows],
        )

    def append_turn(self, session_id: str, position: int, turn: Turn) -> None:
        citations = [
            {"document_id": c.document_id, "ordinal": c.ordinal, "score": c.score} for c in turn.citations
        ]
        with self._engine.begin() as conn:
            conn.execute(
                self.turns.insert().values(
                    session_id=session_id,
                    position=position,
                    role=turn.role.value,
                    content=turn.content,
                    status=turn.status.value,
                    citations=json.dumps(citations) if citations else None,
                    error_kind=turn.error_kind,
                    error_message=turn.error_message,
                    created_at=turn.created_at,
                )
            )

    def delete_session(self, session_id: str) -> bool:
        with self._engine.begin() as conn:
            conn.execute(delete(self.turns).where(self.turns.c.session_id == session_id))
            result = conn.execute(delete(self.sessions).where(self.sessions.c.session_id == session_id))
        return bool(result.rowcount)

    def session_ids(self, workspace_id: str) -> list[str]:
        with self._engine.connect() as conn:
            return list(
                conn.execute(
                    select(self.sessions.c.session_id).where(self.sessions.c.workspace_id == workspace_id)
                ).scalars()
            )

    @staticmethod
    def _to_turn(row: Mapping[str, Any]) -> Turn:
        citations = [
            Citation(document_id=item["document_id"], ordinal=int(item["ordinal"]), score=float(item["score"]))
            for item in json.loads(row["citations"] or "[]")
        ]
        return Turn(
            role=TurnRole(row["role"]),
            content=row["content"],
            created_at=_aware(row["created_at"]),
            citations=tuple(citations),
            status=TurnStatus(row["status"]),
            error_kind=row["error_kind"],
            error_message=row["error_message"],
        )
