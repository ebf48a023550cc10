import json
import os

import pytest

from codelore_mcp import db as dbmod
from codelore_mcp.errors import ScanError


JAVA_SOURCE = """package com.example.shop;

import java.util.List;

public class A {
    private final List<String> items;

    public A(List<String> items) {
        this.items = items;
    }

    public int count() {
        return items.size();
    }

    public boolean isEmpty() {
        return items.isEmpty();
    }

    public String first() {
        return items.isEmpty() ? null : items.get(0);
    }
}
"""


async def _entry(stack, path):
    return await dbmod.get_entry(stack.cfg.db_path, project_id="shop", app_id="shop-backend", path=path)


def _bump_mtime(path, seconds=10):
    st = os.stat(path)
    new = st.st_mtime_ns + seconds * 1_000_000_000
    os.utime(path, ns=(new, new))
    return new


@pytest.mark.asyncio
async def test_new_file_is_indexed(stack):
    (stack.root / "A.java").write_text(JAVA_SOURCE)

    report = await stack.pipeline.rebuild()

    assert report.indexed == 1
    assert report.failed == []
    entry = await _entry(stack, "A.java")
    assert entry is not None
    assert not entry.is_pending
    assert entry.last_indexed_modified_at == os.stat(stack.root / "A.java").st_mtime_ns
    assert len(entry.chunk_refs) >= 1
    tagged = await stack.store.document_ids({"filepath": "A.java"})
    assert set(tagged) == set(entry.chunk_refs)


@pytest.mark.asyncio
async def test_chunks_carry_file_and_enricher_metadata(stack):
    (stack.root / "A.java").write_text(JAVA_SOURCE)
    await stack.pipeline.rebuild()

    results = await stack.store.similarity_search("items count isEmpty", top_k=5, similarity_threshold=0.0)
    assert results
    meta = results[0].document.metadata
    assert meta["filepath"] == "A.java"
    assert meta["project_id"] == "shop"
    assert meta["app_id"] == "shop-backend"
    assert meta["contains"] == "source code"
    assert meta["language"] == "java"
    assert meta["responsibility"] == "Test fixture"
    assert meta["chunk_number"] == "0"


@pytest.mark.asyncio
async def test_deleted_file_is_removed(stack):
    source = stack.root / "A.java"
    source.write_text(JAVA_SOURCE)
    await stack.pipeline.rebuild()

    source.unlink()
    await stack.scanner.scan()
    entry = await _entry(stack, "A.java")
    assert entry.last_seen_modified_at is None
    assert entry.is_pending

    report = await stack.pipeline.rebuild()

    assert report.removed == 1
    assert await _entry(stack, "A.java") is None
    assert await stack.store.document_ids({"filepath": "A.java"}) == []
    assert await stack.store.count() == 0


@pytest.mark.asyncio
async def test_modified_file_replaces_chunks(stack):
    source = stack.root / "A.java"
    source.write_text(JAVA_SOURCE)
    await stack.pipeline.rebuild()
    old_refs = set((await _entry(stack, "A.java")).chunk_refs)

    source.write_text(JAVA_SOURCE.replace("first", "head"))
    new_mtime = _bump_mtime(source)
    report = await stack.pipeline.rebuild()

    assert report.indexed == 1
    entry = await _entry(stack, "A.java")
    assert entry.last_indexed_modified_at == new_mtime
    stored = set(await stack.store.document_ids())
    assert old_refs.isdisjoint(stored)
    assert set(entry.chunk_refs) == stored


@pytest.mark.asyncio
async def test_second_rebuild_without_changes_does_not_mutate(stack):
    (stack.root / "A.java").write_text(JAVA_SOURCE)
    (stack.root / "B.java").write_text(JAVA_SOURCE.replace("class A", "class B"))
    await stack.pipeline.rebuild()
    adds, deletes = stack.store.adds, stack.store.deletes
    calls = len(stack.chat.calls)

    report = await stack.pipeline.rebuild()

    assert (report.indexed, report.removed, report.failed) == (0, 0, [])
    assert stack.store.adds == adds
    assert stack.store.deletes == deletes
    assert len(stack.chat.calls) == calls


@pytest.mark.asyncio
async def test_enrichment_failure_is_contained(stack):
    (stack.root / "A.java").write_text(JAVA_SOURCE)
    (stack.root / "B.java").write_text(JAVA_SOURCE.replace("class A", "class B"))

    def script(messages):
        if "Source code filename: B.java" in messages[0].content:
            return "not json at all"
        return json.dumps([{"key": "responsibility", "value": "ok"}])

    stack.chat.script = script
    report = await stack.pipeline.rebuild()

    assert report.indexed == 1
    assert [f["path"] for f in report.failed] == ["B.java"]
    assert "MetadataExtractionError" in report.failed[0]["error"]
    b = await _entry(stack, "B.java")
    assert b.is_pending
    assert b.chunk_refs == ()
    assert await stack.store.document_ids({"filepath": "B.java"}) == []

    # A healthy model on the next rebuild picks the file up.
    stack.chat.script = None
    report = await stack.pipeline.rebuild()
    assert report.indexed == 1
    assert not (await _entry(stack, "B.java")).is_pending


@pytest.mark.asyncio
async def test_vector_write_failure_leaves_entry_pending(stack):
    source = stack.root / "A.java"
    source.write_text(JAVA_SOURCE)
    await stack.pipeline.rebuild()
    before = await _entry(stack, "A.java")

    source.write_text(JAVA_SOURCE + "\n// changed\n")
    _bump_mtime(source)
    stack.store.fail_add_for = "A.java"
    report = await stack.pipeline.rebuild()

    assert len(report.failed) == 1
    after = await _entry(stack, "A.java")
    assert after.is_pending
    assert after.chunk_refs == before.chunk_refs
    assert after.last_indexed_modified_at == before.last_indexed_modified_at
    # The previous version is still retrievable.
    assert set(await stack.store.document_ids({"filepath": "A.java"})) == set(before.chunk_refs)


@pytest.mark.asyncio
async def test_ledger_failure_rolls_back_new_chunks(stack, monkeypatch):
    (stack.root / "A.java").write_text(JAVA_SOURCE)

    async def broken_reconciled(*args, **kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(dbmod, "reconciled", broken_reconciled)
    report = await stack.pipeline.rebuild()

    assert len(report.failed) == 1
    assert await stack.store.count() == 0
    assert (await _entry(stack, "A.java")).is_pending


@pytest.mark.asyncio
async def test_failed_old_chunk_delete_is_swept_later(stack):
    source = stack.root / "A.java"
    source.write_text(JAVA_SOURCE)
    await stack.pipeline.rebuild()
    old_refs = set((await _entry(stack, "A.java")).chunk_refs)

    source.write_text(JAVA_SOURCE + "\n// changed\n")
    _bump_mtime(source)
    stack.store.fail_delete = True
    report = await stack.pipeline.rebuild()
    assert report.indexed == 1

    entry = await _entry(stack, "A.java")
    assert not entry.is_pending
    assert old_refs <= set(await stack.store.document_ids())

    stack.store.fail_delete = False
    report = await stack.pipeline.rebuild()
    assert report.orphans_removed == len(old_refs)
    assert set(await stack.store.document_ids()) == set(entry.chunk_refs)


@pytest.mark.asyncio
async def test_forced_rebuild_reindexes_everything(stack):
    (stack.root / "A.java").write_text(JAVA_SOURCE)
    await stack.pipeline.rebuild()
    old_refs = set((await _entry(stack, "A.java")).chunk_refs)

    report = await stack.pipeline.rebuild(force=True)

    assert report.indexed == 1
    new_refs = set((await _entry(stack, "A.java")).chunk_refs)
    assert new_refs and new_refs.isdisjoint(old_refs)
    assert set(await stack.store.document_ids()) == new_refs


@pytest.mark.asyncio
async def test_empty_file_is_reconciled_without_chunks(stack):
    (stack.root / "Empty.java").write_text("   \n\n")

    report = await stack.pipeline.rebuild()

    assert report.indexed == 1
    entry = await _entry(stack, "Empty.java")
    assert not entry.is_pending
    assert entry.chunk_refs == ()
    assert stack.chat.calls == []


@pytest.mark.asyncio
async def test_oversized_file_stays_pending(stack):
    stack.indexer.max_file_size_mb = 0
    (stack.root / "A.java").write_text(JAVA_SOURCE)

    report = await stack.pipeline.rebuild()

    assert len(report.failed) == 1
    assert "File too large" in report.failed[0]["error"]
    assert (await _entry(stack, "A.java")).is_pending


@pytest.mark.asyncio
async def test_missing_app_root_aborts_rebuild(stack):
    (stack.root / "A.java").write_text(JAVA_SOURCE)
    await stack.pipeline.rebuild()
    for child in stack.root.iterdir():
        child.unlink()
    stack.root.rmdir()

    with pytest.raises(ScanError):
        await stack.pipeline.rebuild()

    # Nothing was marked deleted.
    entry = await _entry(stack, "A.java")
    assert entry.last_seen_modified_at is not None
    assert await stack.store.count() > 0


@pytest.mark.asyncio
async def test_missing_app_root_aborts_forced_rebuild_before_invalidation(stack):
    (stack.root / "A.java").write_text(JAVA_SOURCE)
    await stack.pipeline.rebuild()
    before = await _entry(stack, "A.java")
    for child in stack.root.iterdir():
        child.unlink()
    stack.root.rmdir()

    with pytest.raises(ScanError):
        await stack.pipeline.rebuild(force=True)

    assert await _entry(stack, "A.java") == before
    status = await stack.pipeline.status()
    assert status["pending_files"] == 0
    assert status["pending_deletions"] == 0


@pytest.mark.asyncio
async def test_binary_file_is_not_sent_to_the_model(stack):
    png = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR" + bytes(range(256)) * 8
    (stack.root / "logo.png").write_bytes(png)

    report = await stack.pipeline.rebuild()

    assert report.indexed == 1
    entry = await _entry(stack, "logo.png")
    assert not entry.is_pending
    assert entry.chunk_refs == ()
    assert stack.chat.calls == []
    assert await stack.store.count() == 0


@pytest.mark.asyncio
async def test_status_reports_counts(stack):
    (stack.root / "A.java").write_text(JAVA_SOURCE)
    await stack.pipeline.rebuild()

    status = await stack.pipeline.status()

    assert status["tracked_files"] == 1
    assert status["pending_files"] == 0
    assert status["vector_documents"] == status["chunk_refs"] >= 1
    assert status["rebuild_running"] is False
