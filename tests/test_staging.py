import asyncio
import dataclasses
import os
import time

import pytest

from mediavault.domain.errors import BatchRejected, SessionBusy, SessionNotFound, StorageError
from mediavault.domain.rules import Category
from mediavault.services.staging_service import (
    SESSION_ID_RE,
    RawFile,
    SessionState,
    StagingArea,
)


def _stage(staging, files, session_id=None, requested=None):
    return asyncio.run(staging.stage(files, session_id=session_id, requested=requested))


def test_stage_writes_indexed_files(staging, settings, png):
    data = png()
    session, added = _stage(staging, [RawFile("My Photo!!.PNG", data, "image/png")])
    assert SESSION_ID_RE.fullmatch(session.session_id)
    assert [entry.index for entry in added] == [0]
    entry = added[0]
    assert entry.original_name == "My_Photo.PNG"
    assert entry.category is Category.IMAGE
    assert entry.mime == "image/png"
    assert (settings.temp_root / session.session_id / "0").read_bytes() == data
    assert session.state is SessionState.OPEN


def test_stage_into_existing_session_continues_indices(staging, png):
    session, _ = _stage(staging, [RawFile("a.png", png())])
    _, added = _stage(staging, [RawFile("b.png", png()), RawFile("c.png", png())], session.session_id)
    assert [entry.index for entry in added] == [1, 2]
    entries = asyncio.run(staging.list_session(session.session_id))
    assert [entry.original_name for entry in entries] == ["a.png", "b.png", "c.png"]


def test_rejected_batch_leaves_nothing_behind(staging, settings, png):
    files = [
        RawFile("one.png", png()),
        RawFile("two.txt", b"plain text is not enabled by default\n"),
        RawFile("three.png", png()),
    ]
    with pytest.raises(BatchRejected) as excinfo:
        _stage(staging, files)
    errors = excinfo.value.errors
    assert [error["index"] for error in errors] == [1]
    assert errors[0]["code"] == "unsupported_category"
    assert list(settings.temp_root.iterdir()) == []
    assert not settings.final_root.exists()


def test_rejected_batch_keeps_earlier_entries_of_session(staging, settings, png):
    session, _ = _stage(staging, [RawFile("keep.png", png())])
    with pytest.raises(BatchRejected):
        _stage(staging, [RawFile("bad.bin", b"\x00\x00garbage")], session.session_id)
    session_dir = settings.temp_root / session.session_id
    assert sorted(os.listdir(session_dir)) == ["0"]
    assert [e.index for e in asyncio.run(staging.list_session(session.session_id))] == [0]


def test_too_many_files_rejected_before_writing(settings, enforcer, png):
    staging = StagingArea(dataclasses.replace(settings, max_files_per_batch=2), enforcer)
    with pytest.raises(BatchRejected) as excinfo:
        _stage(staging, [RawFile(f"{i}.png", png()) for i in range(3)])
    assert excinfo.value.errors[0]["code"] == "too_many_files"
    assert not settings.temp_root.exists()


def test_upload_limit_checked_before_writing(settings, enforcer, png):
    staging = StagingArea(dataclasses.replace(settings, upload_limit_bytes=100), enforcer)
    with pytest.raises(BatchRejected) as excinfo:
        _stage(staging, [RawFile("big.png", png(size=500))])
    error = excinfo.value.errors[0]
    assert error["code"] == "too_large"
    assert error["limit"] == 100
    assert not settings.temp_root.exists()


def test_empty_batch_is_refused(staging):
    with pytest.raises(StorageError) as excinfo:
        _stage(staging, [])
    assert excinfo.value.code == "no_files"


def test_requested_category_mismatch(staging, png):
    with pytest.raises(BatchRejected) as excinfo:
        _stage(staging, [RawFile("a.png", png())], requested=Category.VIDEO)
    assert excinfo.value.errors[0]["code"] == "category_mismatch"


@pytest.mark.parametrize("session_id", ["missing-session-0000", "../../etc", "short"])
def test_unknown_session_not_found(staging, session_id):
    with pytest.raises(SessionNotFound):
        asyncio.run(staging.list_session(session_id))


def test_committing_session_refuses_writes(staging, png):
    session, _ = _stage(staging, [RawFile("a.png", png())])
    asyncio.run(staging.begin_commit(session.session_id))
    with pytest.raises(SessionBusy):
        _stage(staging, [RawFile("b.png", png())], session.session_id)
    with pytest.raises(SessionBusy):
        asyncio.run(staging.begin_commit(session.session_id))


def test_pending_writes_block_commit(staging, png):
    session, _ = _stage(staging, [RawFile("a.png", png())])
    session.pending_writes = 1
    with pytest.raises(SessionBusy):
        asyncio.run(staging.begin_commit(session.session_id))
    session.pending_writes = 0
    assert asyncio.run(staging.begin_commit(session.session_id)).state is SessionState.COMMITTING


def test_release_reopens_session(staging, png):
    session, _ = _stage(staging, [RawFile("a.png", png())])
    asyncio.run(staging.begin_commit(session.session_id))
    staging.release(session)
    _, added = _stage(staging, [RawFile("b.png", png())], session.session_id)
    assert added[0].index == 1


def test_discard_removes_session(staging, settings, png):
    session, _ = _stage(staging, [RawFile("a.png", png())])
    asyncio.run(staging.discard(session.session_id))
    assert not (settings.temp_root / session.session_id).exists()
    with pytest.raises(SessionNotFound):
        asyncio.run(staging.list_session(session.session_id))


def test_sweep_removes_only_expired_sessions(staging, settings, png):
    old, _ = _stage(staging, [RawFile("old.png", png())])
    young, _ = _stage(staging, [RawFile("young.png", png())])
    past = time.time() - settings.temp_ttl_seconds - 60
    os.utime(settings.temp_root / old.session_id, (past, past))

    removed = asyncio.run(staging.sweep_once())

    assert removed == [old.session_id]
    assert not (settings.temp_root / old.session_id).exists()
    assert (settings.temp_root / young.session_id).exists()
    assert old.state is SessionState.CLOSED
    with pytest.raises(SessionNotFound):
        asyncio.run(staging.list_session(old.session_id))


def test_sweep_skips_committing_sessions(staging, settings, png):
    session, _ = _stage(staging, [RawFile("a.png", png())])
    asyncio.run(staging.begin_commit(session.session_id))
    later = time.time() + settings.temp_ttl_seconds * 2
    assert asyncio.run(staging.sweep_once(now=later)) == []
    assert (settings.temp_root / session.session_id).exists()


def test_sweep_without_temp_root(staging):
    assert asyncio.run(staging.sweep_once()) == []


def test_sweep_continues_after_entry_failure(staging, settings, png, monkeypatch):
    first, _ = _stage(staging, [RawFile("a.png", png())])
    second, _ = _stage(staging, [RawFile("b.png", png())])
    broken = min(first.session_id, second.session_id)

    from mediavault.services import staging_service

    real_remove = staging_service.remove_tree

    async def flaky_remove(path):
        if os.path.basename(path) == broken:
            raise PermissionError("denied")
        return await real_remove(path)

    monkeypatch.setattr(staging_service, "remove_tree", flaky_remove)
    removed = asyncio.run(staging.sweep_once(now=time.time() + settings.temp_ttl_seconds * 2))
    assert removed == [max(first.session_id, second.session_id)]


def test_session_recovered_from_disk_is_revalidated(settings, enforcer, png):
    first = StagingArea(settings, enforcer)
    session, _ = _stage(first, [RawFile("a.png", png()), RawFile("b.png", png())])

    restarted = StagingArea(settings, enforcer)
    entries = asyncio.run(restarted.list_session(session.session_id))
    assert [entry.index for entry in entries] == [0, 1]
    assert entries[0].category is Category.UNKNOWN

    recovered = asyncio.run(restarted.begin_commit(session.session_id))
    assert recovered.validated
    assert all(entry.category is Category.IMAGE for entry in recovered.sorted_entries())


def test_recovered_session_with_bad_entry_fails_commit(settings, enforcer, png):
    session, _ = _stage(StagingArea(settings, enforcer), [RawFile("a.png", png())])
    (settings.temp_root / session.session_id / "1").write_bytes(b"\x00\x00tampered")

    restarted = StagingArea(settings, enforcer)
    with pytest.raises(BatchRejected):
        asyncio.run(restarted.begin_commit(session.session_id))
    reopened = asyncio.run(restarted.get(session.session_id))
    assert reopened.state is SessionState.OPEN


def test_sweeper_start_and_stop(settings, enforcer):
    staging = StagingArea(dataclasses.replace(settings, sweep_interval_seconds=1), enforcer)

    async def run():
        staging.start()
        task = staging._sweeper
        await asyncio.sleep(0)
        assert not task.done()
        await staging.stop()
        return task

    task = asyncio.run(run())
    assert task.cancelled()
    assert staging._sweeper is None


def test_long_original_name_keeps_extension(staging, png):
    _, added = _stage(staging, [RawFile("p" * 300 + ".png", png())])
    assert added[0].original_name.endswith(".png")
    assert len(added[0].original_name) <= 200
