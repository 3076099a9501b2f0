from __future__ import annotations

import asyncio

import pytest

from ragcore.errors import EmbeddingDimensionMismatch, IndexCorruption, InvalidInput
from ragcore.models import Chunk, Citation, DocumentStatus, IngestionState, Turn, TurnRole, TurnStatus
from ragcore.store.database import SessionRecord
from ragcore.store.locks import KeyedLocks
from ragcore.store.vector import QueryFilter, VectorStore


def _chunks(document_id: str, vectors, prefix: str = "text") -> list[Chunk]:
    return [
        Chunk(document_id=document_id, ordinal=index, text=f"{prefix} {index}", vector=tuple(vector))
        for index, vector in enumerate(vectors)
    ]


@pytest.mark.asyncio
async def test_upsert_and_query_sorted_by_score(store: VectorStore):
    await store.upsert("d1", _chunks("d1", [(1.0, 0.0), (0.6, 0.8)]), workspace_id="w1")
    await store.upsert("d2", _chunks("d2", [(0.0, 1.0)]), workspace_id="w1")

    result = await store.query((1.0, 0.0), k=3)

    assert [(hit.chunk.document_id, hit.chunk.ordinal) for hit in result] == [("d1", 0), ("d1", 1), ("d2", 0)]
    scores = [hit.score for hit in result]
    assert scores == sorted(scores, reverse=True)
    assert scores[0] == pytest.approx(1.0)
    assert scores[2] == pytest.approx(0.0, abs=1e-9)
    assert store.dimension == 2
    assert await store.count() == 3


@pytest.mark.asyncio
async def test_equal_scores_break_ties_by_ordinal(store: VectorStore):
    await store.upsert("d1", _chunks("d1", [(1.0, 0.0)] * 3), workspace_id="w")
    result = await store.query((1.0, 0.0), k=3)
    assert [hit.chunk.ordinal for hit in result] == [0, 1, 2]


@pytest.mark.asyncio
async def test_replace_is_atomic_and_drops_old_chunks(store: VectorStore):
    await store.upsert("d1", _chunks("d1", [(1.0, 0.0)] * 3, prefix="old"), workspace_id="w")
    await store.upsert("d1", _chunks("d1", [(1.0, 0.0)], prefix="new"), workspace_id="w")
    await store.flush()

    result = await store.query((1.0, 0.0), k=10)
    assert [hit.chunk.text for hit in result] == ["new 0"]
    assert await store.count() == 1
    assert await store.recover() == 0


@pytest.mark.asyncio
async def test_failed_replace_keeps_previous_chunks(store: VectorStore):
    await store.upsert("d1", _chunks("d1", [(1.0, 0.0), (0.0, 1.0)], prefix="old"), workspace_id="w")

    with pytest.raises(EmbeddingDimensionMismatch):
        await store.upsert("d1", _chunks("d1", [(1.0, 0.0, 0.0)]), workspace_id="w")

    result = await store.query((1.0, 0.0), k=10)
    assert sorted(hit.chunk.text for hit in result) == ["old 0", "old 1"]


@pytest.mark.asyncio
async def test_short_write_is_reported_and_rolled_back(store: VectorStore, monkeypatch):
    await store.upsert("d1", _chunks("d1", [(1.0, 0.0)], prefix="old"), workspace_id="w")
    monkeypatch.setattr(store, "_generation_size", lambda generation: 0)

    with pytest.raises(IndexCorruption):
        await store.upsert("d1", _chunks("d1", [(1.0, 0.0), (0.0, 1.0)], prefix="new"), workspace_id="w")

    monkeypatch.undo()
    result = await store.query((1.0, 0.0), k=10)
    assert [hit.chunk.text for hit in result] == ["old 0"]
    assert await store.recover() == 0


@pytest.mark.asyncio
async def test_concurrent_replacements_never_mix_generations(store: VectorStore):
    await store.upsert("d1", _chunks("d1", [(1.0, 0.0)] * 4, prefix="a"), workspace_id="w")

    async def writer(prefix: str, size: int) -> None:
        await store.upsert("d1", _chunks("d1", [(1.0, 0.0)] * size, prefix=prefix), workspace_id="w")

    async def reader() -> set[tuple[str, ...]]:
        seen = set()
        for _ in range(5):
            result = await store.query((1.0, 0.0), k=10)
            seen.add(tuple(sorted({hit.chunk.text.split()[0] for hit in result})))
        return seen

    outcome = await asyncio.gather(writer("b", 2), reader(), writer("c", 3), reader())
    for seen in outcome[1::2]:
        assert all(len(prefixes) == 1 for prefixes in seen)
    await store.flush()
    final = await store.query((1.0, 0.0), k=10)
    assert len({hit.chunk.text.split()[0] for hit in final}) == 1


@pytest.mark.asyncio
async def test_delete_is_idempotent(store: VectorStore):
    await store.upsert("d1", _chunks("d1", [(1.0, 0.0)]), workspace_id="w")
    assert await store.delete("d1") is True
    assert await store.delete("d1") is False
    assert await store.delete("never-existed") is False
    assert len(await store.query((1.0, 0.0), k=5)) == 0


@pytest.mark.asyncio
async def test_filters_by_workspace_and_document(store: VectorStore):
    await store.upsert("d1", _chunks("d1", [(1.0, 0.0)]), workspace_id="w1")
    await store.upsert("d2", _chunks("d2", [(1.0, 0.0)]), workspace_id="w2")
    await store.upsert("d3", _chunks("d3", [(1.0, 0.0)]), workspace_id="w2")

    w2 = await store.query((1.0, 0.0), k=5, filter=QueryFilter(workspace_id="w2"))
    assert {hit.chunk.document_id for hit in w2} == {"d2", "d3"}
    assert {hit.workspace_id for hit in w2} == {"w2"}

    scoped = await store.query((1.0, 0.0), k=5, filter=QueryFilter(document_ids=("d1", "d3")))
    assert {hit.chunk.document_id for hit in scoped} == {"d1", "d3"}

    assert dict(await store.count_by_workspace()) == {"w1": 1, "w2": 2}


@pytest.mark.asyncio
async def test_approximate_search_above_threshold(registry, chroma_client, collection_name):
    store = VectorStore(registry, collection_name, client=chroma_client, exact_search_threshold=1)
    await store.upsert("d1", _chunks("d1", [(1.0, 0.0), (0.0, 1.0), (0.7, 0.7)]), workspace_id="w")
    result = await store.query((1.0, 0.0), k=2)
    assert [hit.chunk.ordinal for hit in result] == [0, 2]
    assert result.hits[0].score == pytest.approx(1.0, abs=1e-3)


@pytest.mark.asyncio
async def test_recover_removes_orphan_rows(store: VectorStore, chroma_client, collection_name):
    await store.upsert("d1", _chunks("d1", [(1.0, 0.0)]), workspace_id="w")
    collection = chroma_client.get_collection(collection_name)
    collection.add(
        ids=["crashed-0", "crashed-1"],
        documents=["half", "written"],
        embeddings=[[1.0, 0.0], [0.0, 1.0]],
        metadatas=[
            {"document_id": "d9", "workspace_id": "w", "generation": "crashed", "ordinal": i, "start": 0, "end": 0}
            for i in range(2)
        ],
    )

    assert await store.recover() == 2
    assert collection.count() == 1
    assert [hit.chunk.document_id for hit in await store.query((1.0, 0.0), k=5)] == ["d1"]


@pytest.mark.asyncio
async def test_unreadable_rows_are_reported(store: VectorStore, chroma_client, collection_name):
    generation = await store.upsert("d1", _chunks("d1", [(1.0, 0.0)]), workspace_id="w")
    collection = chroma_client.get_collection(collection_name)
    collection.update(ids=[f"{generation}-0"], metadatas=[{"document_id": "d1", "generation": generation, "ordinal": "x"}])
    reported = []
    store.on_corruption = reported.append

    result = await store.query((1.0, 0.0), k=5)

    assert len(result) == 0
    assert reported == ["d1"]


@pytest.mark.asyncio
async def test_empty_upsert_rejected(store: VectorStore):
    with pytest.raises(InvalidInput):
        await store.upsert("d1", [], workspace_id="w")
    with pytest.raises(InvalidInput):
        await store.upsert("d1", _chunks("d1", [(1.0, 0.0)]), [(1.0, 0.0), (0.0, 1.0)], workspace_id="w")


@pytest.mark.asyncio
async def test_chunks_for_returns_active_chunks_in_order(store: VectorStore):
    chunks = [Chunk(document_id="d1", ordinal=i, text=f"part {i}", start=i * 7, end=i * 7 + 6) for i in range(3)]
    await store.upsert("d1", list(reversed(chunks)), [(1.0, 0.0)] * 3, workspace_id="w")
    stored = await store.chunks_for("d1")
    assert [(c.ordinal, c.start, c.end, c.text) for c in stored] == [(c.ordinal, c.start, c.end, c.text) for c in chunks]


def test_registry_status_and_generations(registry):
    registry.set_status("d1", DocumentStatus(IngestionState.INDEXING), source="a.txt", workspace_id="w")
    doc = registry.get_document("d1")
    assert doc.status.state is IngestionState.INDEXING
    assert doc.generation is None

    assert registry.commit_generation(
        "d1", generation="g1", content_hash="h", chunk_count=2, workspace_id="w", source="a.txt"
    ) is None
    assert registry.commit_generation(
        "d1", generation="g2", content_hash="h2", chunk_count=3, workspace_id="w", source="a.txt"
    ) == "g1"
    assert registry.active_generations(workspace_id="w") == {"d1": "g2"}
    assert registry.active_generations(workspace_id="other") == {}

    registry.set_status("d1", DocumentStatus.failed("boom"))
    doc = registry.get_document("d1")
    assert str(doc.status) == "failed(boom)"
    assert doc.generation == "g2"

    assert registry.remove_document("d1") == "g2"
    assert registry.remove_document("d1") is None


def test_registry_meta_is_set_once(registry):
    assert registry.set_meta_if_absent("embedding_dim", "384") == "384"
    assert registry.set_meta_if_absent("embedding_dim", "768") == "384"
    assert registry.get_meta("embedding_dim") == "384"


def test_registry_persists_session_turns(registry):
    registry.save_session(SessionRecord(session_id="s1", workspace_id="w", provider_id="offline", document_ids=("d1",)))
    turn = Turn(
        role=TurnRole.ASSISTANT,
        content="Answer",
        citations=(Citation(document_id="d1", ordinal=0, score=0.5),),
        status=TurnStatus.PARTIAL,
    )
    registry.append_turn("s1", 0, Turn(role=TurnRole.USER, content="Question"))
    registry.append_turn("s1", 1, turn)

    record = registry.load_session("s1")
    assert record.document_ids == ("d1",)
    assert [t.content for t in record.turns] == ["Question", "Answer"]
    assert record.turns[1].status is TurnStatus.PARTIAL
    assert record.turns[1].citations[0].document_id == "d1"
    assert registry.session_ids("w") == ["s1"]

    assert registry.delete_session("s1") is True
    assert registry.delete_session("s1") is False
    assert registry.load_session("s1") is None


@pytest.mark.asyncio
async def test_keyed_locks_serialize_per_key():
    locks = KeyedLocks()
    order = []

    async def worker(key: str, label: str) -> None:
        async with locks.hold(key):
            order.append(f"{label}-in")
            await asyncio.sleep(0.01)
            order.append(f"{label}-out")

    await asyncio.gather(worker("a", "first"), worker("a", "second"), worker("b", "other"))
    assert order.index("second-in") > order.index("first-out")
    assert len(locks) == 0
