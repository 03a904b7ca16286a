"""
Batch writer: pending mutations are queued as closures and committed in
bounded, sequential write groups.

A group is the unit of atomicity. Nothing spans groups: when a group fails the
run stops, groups already committed stay committed and later groups never run.
"""
import os
import logging
from typing import Callable

from pymongo import DeleteOne, InsertOne, UpdateOne

DEFAULT_CHUNK_SIZE = 350
# Upper bound for one write group
MAX_CHUNK_SIZE = 400


def transactions_enabled() -> bool:
    return os.getenv("PUTIKUNN_WRITE_TRANSACTIONS", "1").strip().lower() in ("1", "true", "yes")


class WriteGroup:
    """One atomic write group. Consecutive ops on a collection share one bulk_write."""

    def __init__(self):
        self.runs: list[tuple[str, list]] = []

    def _append(self, collection: str, op) -> None:
        if self.runs and self.runs[-1][0] == collection:
            self.runs[-1][1].append(op)
        else:
            self.runs.append((collection, [op]))

    def insert(self, collection: str, doc: dict) -> None:
        self._append(collection, InsertOne(doc))

    def set(self, collection: str, doc_id, fields: dict, upsert: bool = False, unset=()) -> None:
        update = {"$set": fields}
        if unset:
            update["$unset"] = {field: "" for field in unset}
        self._append(collection, UpdateOne({"_id": doc_id}, update, upsert=upsert))

    def delete(self, collection: str, doc_id) -> None:
        self._append(collection, DeleteOne({"_id": doc_id}))

    def __len__(self) -> int:
        return sum(len(ops) for _, ops in self.runs)

    def commit(self, db, transactional: bool = True) -> None:
        if not self.runs:
            return
        if not transactional:
            for coll, ops in self.runs:
                db[coll].bulk_write(ops, ordered=True)
            return
        with db.client.start_session() as session:
            with session.start_transaction():
                for coll, ops in self.runs:
                    db[coll].bulk_write(ops, ordered=True, session=session)


Writer = Callable[[WriteGroup], None]


class WritePlan:
    """Ordered write closures plus one report row per closure."""

    def __init__(self):
        self.writers: list[Writer] = []
        self.rows: list[dict] = []

    def __len__(self) -> int:
        return len(self.writers)

    def _add(self, writer: Writer, collection: str, op: str, doc_id, detail: str) -> None:
        self.writers.append(writer)
        self.rows.append(
            {
                "collection": collection,
                "op": op,
                "doc_id": "" if doc_id is None else str(doc_id),
                "detail": detail,
            }
        )

    def insert(self, collection: str, doc: dict, detail: str = "") -> None:
        self._add(lambda g: g.insert(collection, doc), collection, "insert", doc.get("_id"), detail)

    def set(self, collection: str, doc_id, fields: dict, upsert: bool = False, unset=(), detail: str = "") -> None:
        op = "upsert" if upsert else "update"
        unset = tuple(unset)
        self._add(
            lambda g: g.set(collection, doc_id, fields, upsert=upsert, unset=unset), collection, op, doc_id, detail
        )

    def delete(self, collection: str, doc_id, detail: str = "") -> None:
        self._add(lambda g: g.delete(collection, doc_id), collection, "delete", doc_id, detail)


def commit_in_chunks(
    db,
    writers: list[Writer],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    transactional: bool | None = None,
) -> int:
    """Commit writers sequentially, one write group per chunk. Returns the number committed."""
    if chunk_size <= 0 or chunk_size > MAX_CHUNK_SIZE:
        raise ValueError(f"chunk_size must be within 1..{MAX_CHUNK_SIZE}, got {chunk_size}")
    if transactional is None:
        transactional = transactions_enabled()

    total = len(writers)
    n_chunks = (total + chunk_size - 1) // chunk_size
    committed = 0
    for idx, start in enumerate(range(0, total, chunk_size), start=1):
        chunk = writers[start:start + chunk_size]
        group = WriteGroup()
        for fn in chunk:
            fn(group)
        try:
            group.commit(db, transactional=transactional)
        except Exception:
            logging.error(
                "[BatchWriter] Chunk %d/%d failed; %d of %d writes were already committed, "
                "remaining chunks skipped.",
                idx,
                n_chunks,
                committed,
                total,
            )
            raise
        committed += len(chunk)
        logging.info("[BatchWriter] Committed chunk %d/%d (%d/%d writes)", idx, n_chunks, committed, total)
    return committed
