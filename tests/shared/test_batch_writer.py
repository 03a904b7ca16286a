import pytest
from unittest.mock import MagicMock

from pymongo import UpdateOne

from utils.batch_writer import MAX_CHUNK_SIZE, WriteGroup, WritePlan, commit_in_chunks


def _plan(n, collection="things"):
    plan = WritePlan()
    for i in range(n):
        plan.set(collection, f"id{i}", {"n": i}, detail=f"n={i}")
    return plan


class TestCommitInChunks:
    def test_chunks_are_sequential_and_bounded(self, make_db):
        db = make_db()

        committed = commit_in_chunks(db, _plan(5).writers, chunk_size=2, transactional=False)

        assert committed == 5
        assert [len(ops) for ops in db["things"].bulk_calls] == [2, 2, 1]

    def test_failure_stops_remaining_chunks(self, make_db, caplog):
        db = make_db()
        db["things"].fail_on_call = 2

        with pytest.raises(RuntimeError):
            commit_in_chunks(db, _plan(5).writers, chunk_size=2, transactional=False)

        assert [len(ops) for ops in db["things"].bulk_calls] == [2]
        assert "Chunk 2/3 failed; 2 of 5 writes were already committed" in caplog.text

    @pytest.mark.parametrize("size", [0, -1, MAX_CHUNK_SIZE + 1])
    def test_chunk_size_is_validated(self, make_db, size):
        with pytest.raises(ValueError):
            commit_in_chunks(make_db(), _plan(1).writers, chunk_size=size)

    def test_empty_plan_is_a_no_op(self, make_db):
        db = make_db()
        assert commit_in_chunks(db, [], transactional=False) == 0
        assert db.all_bulk_calls() == {}

    def test_transactional_groups_share_one_session(self, make_db):
        db = make_db()
        session = db.client.start_session.return_value.__enter__.return_value
        db["things"].bulk_write = MagicMock()

        commit_in_chunks(db, _plan(3).writers, chunk_size=2, transactional=True)

        assert db.client.start_session.call_count == 2
        assert session.start_transaction.call_count == 2
        for call in db["things"].bulk_write.call_args_list:
            assert call.kwargs["session"] is session

    def test_environment_toggles_transactions(self, make_db, monkeypatch):
        monkeypatch.setenv("PUTIKUNN_WRITE_TRANSACTIONS", "false")
        db = make_db()

        commit_in_chunks(db, _plan(1).writers)

        db.client.start_session.assert_not_called()
        assert len(db["things"].bulk_calls) == 1


class TestWriteGroup:
    def test_consecutive_ops_share_a_bulk_write(self, make_db):
        group = WriteGroup()
        group.insert("a", {"_id": 1})
        group.set("a", 2, {"x": 1})
        group.delete("b", 3)
        group.set("a", 4, {"x": 2}, upsert=True)

        assert [(coll, len(ops)) for coll, ops in group.runs] == [("a", 2), ("b", 1), ("a", 1)]
        assert len(group) == 4

        db = make_db()
        group.commit(db, transactional=False)
        assert len(db["a"].bulk_calls) == 2
        assert len(db["b"].bulk_calls) == 1


def test_update_can_unset_fields(make_db):
    plan = WritePlan()
    plan.set("entries", "e1", {"score": 3}, unset=["date", "player_gender"])
    plan.set("entries", "e2", {"score": 4})
    db = make_db()

    commit_in_chunks(db, plan.writers, transactional=False)

    first, second = db["entries"].bulk_calls[0]
    assert first == UpdateOne({"_id": "e1"}, {"$set": {"score": 3}, "$unset": {"date": "", "player_gender": ""}})
    assert second == UpdateOne({"_id": "e2"}, {"$set": {"score": 4}})


def test_plan_rows_describe_each_write():
    plan = WritePlan()
    plan.insert("entries", {"player_name": "A"}, detail="new")
    plan.set("stats", "S1_p1", {"points_total": 1}, upsert=True, detail="total")
    plan.delete("entries", "e9", detail="dup")

    assert plan.rows == [
        {"collection": "entries", "op": "insert", "doc_id": "", "detail": "new"},
        {"collection": "stats", "op": "upsert", "doc_id": "S1_p1", "detail": "total"},
        {"collection": "entries", "op": "delete", "doc_id": "e9", "detail": "dup"},
    ]
    assert len(plan) == 3
