"""
Tests for the file stores: on-disk layout, corruption recovery, index
reconciliation and index-driven sweeps.
"""
import asyncio
import json
import os
import pytest

from database.store_base import ContextCodec, RunStateCodec, _now_ms
from database.store_file import FileContextStore, FileRunStateStore
from models.schemas import CustomerContext

SUBJECT = "phone_+14155550100"
DAY_MS = 24 * 60 * 60 * 1000


def _read_json(data_dir, name):
    with open(os.path.join(data_dir, name)) as f:
        return json.load(f)


def _write_run_state(data_dir, subject_id, timestamp, index=True):
    with open(os.path.join(data_dir, f"runstate-{subject_id}.json"), "w") as f:
        f.write(RunStateCodec.encode(subject_id, "blob", timestamp))
    if index:
        path = os.path.join(data_dir, "index.json")
        current = _read_json(data_dir, "index.json") if os.path.exists(path) else {}
        current[subject_id] = timestamp
        with open(path, "w") as f:
            json.dump(current, f)


class TestFileRunStateStore:

    @pytest.mark.asyncio
    async def test_layout(self, data_dir):
        store = FileRunStateStore(data_dir=data_dir)
        await store.save(SUBJECT, '{"step": 1}')

        record = _read_json(data_dir, f"runstate-{SUBJECT}.json")
        assert record["subjectId"] == SUBJECT
        assert record["runState"] == '{"step": 1}'
        assert isinstance(record["timestamp"], int)

        index = _read_json(data_dir, "index.json")
        assert index == {SUBJECT: record["timestamp"]}

    @pytest.mark.asyncio
    async def test_no_tmp_files_remain(self, data_dir):
        store = FileRunStateStore(data_dir=data_dir)
        for i in range(5):
            await store.save(f"phone_+1415555010{i}", "blob")
        assert [f for f in os.listdir(data_dir) if f.endswith(".tmp")] == []

    @pytest.mark.asyncio
    async def test_concurrent_saves_keep_every_index_entry(self, data_dir):
        store = FileRunStateStore(data_dir=data_dir)
        await store.init()
        subjects = [f"phone_+1415555{i:04d}" for i in range(20)]
        await asyncio.gather(*(store.save(s, "blob") for s in subjects))
        assert set(_read_json(data_dir, "index.json")) == set(subjects)

    @pytest.mark.asyncio
    async def test_survives_restart(self, data_dir):
        await FileRunStateStore(data_dir=data_dir).save(SUBJECT, "blob")
        reopened = FileRunStateStore(data_dir=data_dir)
        await reopened.init()
        assert await reopened.load(SUBJECT) == "blob"

    @pytest.mark.asyncio
    async def test_subject_ids_are_path_safe(self, data_dir):
        store = FileRunStateStore(data_dir=data_dir)
        await store.save("crm_../../etc/passwd", "blob")
        assert await store.load("crm_../../etc/passwd") == "blob"
        assert all(os.sep not in name for name in os.listdir(data_dir))
        assert len([n for n in os.listdir(data_dir) if n.startswith("runstate-")]) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "{truncated", '{"subjectId": "x", "timestamp": 1}'])
    async def test_corrupted_file_is_deleted(self, data_dir, content):
        store = FileRunStateStore(data_dir=data_dir)
        await store.init()
        path = os.path.join(data_dir, f"runstate-{SUBJECT}.json")
        with open(path, "w") as f:
            f.write(content)

        assert await store.load(SUBJECT) is None
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_expired_file_is_deleted_on_load(self, data_dir):
        store = FileRunStateStore(data_dir=data_dir)
        await store.init()
        _write_run_state(data_dir, SUBJECT, _now_ms() - 2 * DAY_MS)

        assert await store.load(SUBJECT) is None
        assert not os.path.exists(os.path.join(data_dir, f"runstate-{SUBJECT}.json"))
        assert SUBJECT not in _read_json(data_dir, "index.json")

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_expired_and_rewrites_index(self, data_dir):
        store = FileRunStateStore(data_dir=data_dir)
        await store.init()
        now = _now_ms()
        _write_run_state(data_dir, "phone_+10000000001", now - 2 * DAY_MS)
        _write_run_state(data_dir, "phone_+10000000002", now - 3 * DAY_MS)
        await store.save("phone_+10000000003", "fresh")

        assert await store.cleanup_expired() == 2
        assert set(_read_json(data_dir, "index.json")) == {"phone_+10000000003"}
        assert not os.path.exists(os.path.join(data_dir, "runstate-phone_+10000000001.json"))
        assert await store.load("phone_+10000000003") == "fresh"

    @pytest.mark.asyncio
    async def test_cleanup_counts_orphan_index_entries(self, data_dir):
        store = FileRunStateStore(data_dir=data_dir)
        await store.init()
        with open(os.path.join(data_dir, "index.json"), "w") as f:
            json.dump({"phone_+10000000009": _now_ms() - 2 * DAY_MS}, f)

        assert await store.cleanup_expired() == 1
        assert _read_json(data_dir, "index.json") == {}

    @pytest.mark.asyncio
    async def test_cleanup_on_missing_dir_returns_zero(self, data_dir):
        store = FileRunStateStore(data_dir=os.path.join(data_dir, "missing"))
        assert await store.cleanup_expired() == 0


class TestIndexReconciliation:

    @pytest.mark.asyncio
    async def test_orphan_index_entries_are_dropped(self, data_dir):
        with open(os.path.join(data_dir, "index.json"), "w") as f:
            json.dump({"phone_+10000000001": _now_ms()}, f)

        await FileRunStateStore(data_dir=data_dir).init()
        assert _read_json(data_dir, "index.json") == {}

    @pytest.mark.asyncio
    async def test_unindexed_records_are_adopted_with_their_timestamp(self, data_dir):
        ts = _now_ms() - 1000
        _write_run_state(data_dir, SUBJECT, ts, index=False)

        await FileRunStateStore(data_dir=data_dir).init()
        assert _read_json(data_dir, "index.json") == {SUBJECT: ts}

    @pytest.mark.asyncio
    async def test_unindexed_corrupted_records_are_removed(self, data_dir):
        path = os.path.join(data_dir, f"runstate-{SUBJECT}.json")
        with open(path, "w") as f:
            f.write("")

        await FileRunStateStore(data_dir=data_dir).init()
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_adopted_stale_records_are_swept(self, data_dir):
        _write_run_state(data_dir, SUBJECT, _now_ms() - 2 * DAY_MS, index=False)
        store = FileRunStateStore(data_dir=data_dir)
        await store.init()
        assert await store.cleanup_expired() == 1


class TestFileContextStore:

    @pytest.mark.asyncio
    async def test_layout(self, data_dir):
        store = FileContextStore(data_dir=data_dir)
        ctx = CustomerContext.new(SUBJECT)
        ctx.conversation_history.append({"role": "user", "content": "hi"})
        await store.save(SUBJECT, ctx)

        record = _read_json(data_dir, f"context-{SUBJECT}.json")
        assert record["subjectId"] == SUBJECT
        assert record["context"]["conversationHistory"] == [{"role": "user", "content": "hi"}]
        assert record["context"]["escalationLevel"] == 0
        assert SUBJECT in _read_json(data_dir, "context-index.json")

    @pytest.mark.asyncio
    async def test_index_file_is_not_mistaken_for_a_record(self, data_dir):
        store = FileContextStore(data_dir=data_dir)
        await store.save(SUBJECT, CustomerContext.new(SUBJECT))

        reopened = FileContextStore(data_dir=data_dir)
        await reopened.init()
        assert set(_read_json(data_dir, "context-index.json")) == {SUBJECT}

    @pytest.mark.asyncio
    async def test_run_state_and_context_share_a_directory(self, data_dir):
        run_states = FileRunStateStore(data_dir=data_dir)
        contexts = FileContextStore(data_dir=data_dir)
        await run_states.save(SUBJECT, "blob")
        await contexts.save(SUBJECT, CustomerContext.new(SUBJECT))

        await run_states.delete(SUBJECT)
        assert await contexts.load(SUBJECT) is not None
        assert _read_json(data_dir, "index.json") == {}

    @pytest.mark.asyncio
    async def test_default_window_is_seven_days(self, data_dir):
        store = FileContextStore(data_dir=data_dir)
        await store.init()
        with open(os.path.join(data_dir, f"context-{SUBJECT}.json"), "w") as f:
            f.write(ContextCodec.encode(SUBJECT, CustomerContext.new(SUBJECT), _now_ms() - 3 * DAY_MS))

        assert await store.load(SUBJECT) is not None


class TestInvalidUtf8:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("timestamp", [1, None])
    async def test_record_with_bad_bytes_is_deleted(self, data_dir, timestamp):
        store = FileRunStateStore(data_dir=data_dir)
        await store.init()
        ts = _now_ms() if timestamp is None else timestamp
        path = os.path.join(data_dir, f"runstate-{SUBJECT}.json")
        with open(path, "wb") as f:
            f.write(b'{"subjectId": "x", "runState": "\xff\xfe", "timestamp": ' + str(ts).encode() + b"}")

        assert await store.load(SUBJECT) is None
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_unindexed_record_with_bad_bytes_removed_on_init(self, data_dir):
        path = os.path.join(data_dir, f"runstate-{SUBJECT}.json")
        with open(path, "wb") as f:
            f.write(b"\xff\xfe\x00garbage")

        await FileRunStateStore(data_dir=data_dir).init()
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("store_cls,index_name", [
        (FileRunStateStore, "index.json"),
        (FileContextStore, "context-index.json"),
    ])
    async def test_index_with_bad_bytes_is_treated_as_empty(self, data_dir, store_cls, index_name):
        payload = "blob" if store_cls is FileRunStateStore else CustomerContext.new(SUBJECT)
        index_path = os.path.join(data_dir, index_name)
        with open(index_path, "wb") as f:
            f.write(b"\xff\xfe{}")

        store = store_cls(data_dir=data_dir)
        await store.init()
        with open(index_path, "wb") as f:
            f.write(b"\xff\xfe{}")

        await store.save(SUBJECT, payload)
        assert set(_read_json(data_dir, index_name)) == {SUBJECT}
        assert await store.load(SUBJECT) is not None

        with open(index_path, "wb") as f:
            f.write(b"\xff\xfe{}")
        assert await store.cleanup_expired() == 0
        await store.delete(SUBJECT)
        assert await store.load(SUBJECT) is None

    @pytest.mark.asyncio
    async def test_init_rebuilds_index_with_bad_bytes_from_records(self, data_dir):
        ts = _now_ms() - 1000
        _write_run_state(data_dir, SUBJECT, ts, index=False)
        with open(os.path.join(data_dir, "index.json"), "wb") as f:
            f.write(b"\xff\xfe{}")

        await FileRunStateStore(data_dir=data_dir).init()
        assert _read_json(data_dir, "index.json") == {SUBJECT: ts}
