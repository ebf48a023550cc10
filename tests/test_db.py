import os

import aiosqlite
import pytest

from codelore_mcp import db as dbmod


async def _mark(db_path, path, mtime, project_id="p1", app_id="a1"):
    await dbmod.mark_pending(db_path, project_id=project_id, app_id=app_id, path=path, observed_modified_at=mtime)


async def _get(db_path, path, project_id="p1", app_id="a1"):
    return await dbmod.get_entry(db_path, project_id=project_id, app_id=app_id, path=path)


@pytest.mark.asyncio
async def test_mark_pending_creates_pending_entry(db_path):
    await _mark(db_path, "src/A.java", 100)

    entry = await _get(db_path, "src/A.java")
    assert entry.last_seen_modified_at == 100
    assert entry.last_indexed_modified_at is None
    assert entry.chunk_refs == ()
    assert entry.is_pending
    assert [e.path for e in await dbmod.list_pending(db_path)] == ["src/A.java"]


@pytest.mark.asyncio
async def test_mark_pending_is_idempotent(db_path):
    await _mark(db_path, "A.java", 100)
    first = await _get(db_path, "A.java")
    await _mark(db_path, "A.java", 100)

    assert await _get(db_path, "A.java") == first
    assert len(await dbmod.list_entries(db_path)) == 1


@pytest.mark.asyncio
async def test_reconciled_clears_pending_and_orders_refs(db_path):
    await _mark(db_path, "A.java", 100)
    entry = await _get(db_path, "A.java")

    await dbmod.reconciled(db_path, entry, new_chunk_refs=["c2", "c0", "c1"], new_indexed_at=100)

    entry = await _get(db_path, "A.java")
    assert not entry.is_pending
    assert entry.last_indexed_modified_at == 100
    assert entry.chunk_refs == ("c2", "c0", "c1")
    assert await dbmod.list_pending(db_path) == []

    await _mark(db_path, "A.java", 200)
    entry = await _get(db_path, "A.java")
    assert entry.is_pending
    await dbmod.reconciled(db_path, entry, new_chunk_refs=["d0"], new_indexed_at=200)
    assert (await _get(db_path, "A.java")).chunk_refs == ("d0",)


@pytest.mark.asyncio
async def test_chunk_id_cannot_belong_to_two_entries(db_path):
    await _mark(db_path, "A.java", 1)
    await _mark(db_path, "B.java", 1)
    a = await _get(db_path, "A.java")
    b = await _get(db_path, "B.java")
    await dbmod.reconciled(db_path, a, new_chunk_refs=["shared"], new_indexed_at=1)

    with pytest.raises(aiosqlite.IntegrityError):
        await dbmod.reconciled(db_path, b, new_chunk_refs=["own", "shared"], new_indexed_at=1)

    # Rolled back as a unit.
    b = await _get(db_path, "B.java")
    assert b.chunk_refs == ()
    assert b.is_pending


@pytest.mark.asyncio
async def test_invalidate_all_makes_every_entry_pending(db_path):
    for name in ("A.java", "B.java"):
        await _mark(db_path, name, 5)
        await dbmod.reconciled(db_path, await _get(db_path, name), new_chunk_refs=[name], new_indexed_at=5)
    assert await dbmod.list_pending(db_path) == []

    assert await dbmod.invalidate_all(db_path) == 2

    pending = await dbmod.list_pending(db_path)
    assert [e.path for e in pending] == ["A.java", "B.java"]
    assert all(e.last_seen_modified_at is None for e in pending)
    # Chunk ownership survives until reconciliation.
    assert [e.chunk_refs for e in pending] == [("A.java",), ("B.java",)]


@pytest.mark.asyncio
async def test_reset_indexed_forces_reindex_of_present_files(db_path):
    await _mark(db_path, "A.java", 5)
    await dbmod.reconciled(db_path, await _get(db_path, "A.java"), new_chunk_refs=["x"], new_indexed_at=5)

    await dbmod.reset_indexed(db_path)

    entry = await _get(db_path, "A.java")
    assert entry.is_pending
    assert not entry.is_deleted


@pytest.mark.asyncio
async def test_list_pending_order_is_stable(db_path):
    for project_id, app_id, path in [("p2", "a1", "Z.java"), ("p1", "a2", "B.java"), ("p1", "a1", "C.java"), ("p1", "a1", "A.java")]:
        await _mark(db_path, path, 1, project_id=project_id, app_id=app_id)

    pending = await dbmod.list_pending(db_path)

    assert [e.identity for e in pending] == [
        ("p1", "a1", "A.java"),
        ("p1", "a1", "C.java"),
        ("p1", "a2", "B.java"),
        ("p2", "a1", "Z.java"),
    ]


@pytest.mark.asyncio
async def test_remove_entry_only_for_deletions(db_path):
    await _mark(db_path, "A.java", 1)
    entry = await _get(db_path, "A.java")
    with pytest.raises(ValueError):
        await dbmod.remove_entry(db_path, entry)

    await dbmod.reconciled(db_path, entry, new_chunk_refs=["c0"], new_indexed_at=1)
    await _mark(db_path, "A.java", None)
    entry = await _get(db_path, "A.java")
    assert entry.is_deleted and entry.is_pending

    await dbmod.remove_entry(db_path, entry)

    assert await _get(db_path, "A.java") is None
    stats = await dbmod.ledger_stats(db_path)
    assert stats["chunk_refs"] == 0


@pytest.mark.asyncio
async def test_remove_entry_skips_file_that_reappeared(db_path):
    await _mark(db_path, "A.java", None)
    stale = await _get(db_path, "A.java")
    await _mark(db_path, "A.java", 7)

    await dbmod.remove_entry(db_path, stale)

    assert (await _get(db_path, "A.java")).last_seen_modified_at == 7


@pytest.mark.asyncio
async def test_ledger_stats(db_path):
    await _mark(db_path, "A.java", 1)
    await _mark(db_path, "B.java", 1)
    await dbmod.reconciled(db_path, await _get(db_path, "A.java"), new_chunk_refs=["c0", "c1"], new_indexed_at=1)
    await _mark(db_path, "C.java", None)

    assert await dbmod.ledger_stats(db_path) == {
        "tracked_files": 3,
        "pending_files": 2,
        "pending_deletions": 1,
        "chunk_refs": 2,
    }


@pytest.mark.skipif(os.name == "nt", reason="Windows permissions differ")
def test_db_permissions(tmp_path):
    db_path = tmp_path / "ledger.db"
    dbmod.ensure_db_permissions(str(db_path))
    mode = db_path.stat().st_mode & 0o777
    assert mode == 0o600
