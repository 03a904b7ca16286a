"""
Season stats propagation for changed rank_hc results.

Deltas are accumulated per (season, participant) before anything is written,
and applied with a zero floor on the total and on every slot.

Results, events and season stats are written in separate write groups. Each
changed result is stamped with `points_previous` and a `points_revision`; the
stats document records the revisions it has absorbed under
`applied_revisions`, and a later run re-queues any stamped result whose
revision is missing there.
"""
from __future__ import annotations

import hashlib
import logging

from utils.num_utils import is_finite_number, round1, safe_float


def stats_doc_id(season_id, participant_id) -> str:
    return f"{season_id}_{participant_id}"


def points_revision(result_id, prev_points, points) -> str:
    raw = f"{result_id}|{round1(prev_points)}|{round1(points)}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:12]


class SeasonDeltaAccumulator:
    """Collects point deltas per season stats document for one run."""

    def __init__(self):
        self.pending: dict[str, dict] = {}
        self.dropped = 0

    def add(
        self,
        season_id,
        participant_id,
        slot_id,
        delta,
        result_id=None,
        revision: str | None = None,
        user_id=None,
        player_name: str | None = None,
    ) -> bool:
        """Queue one delta. Returns False when it was zero or dropped for a missing id."""
        delta = round1(delta)
        if delta == 0:
            return False
        if not season_id or not participant_id or not slot_id:
            self.dropped += 1
            logging.debug(
                "[RankHC] Dropped delta %s for result %s (season=%s participant=%s slot=%s)",
                delta,
                result_id,
                season_id,
                participant_id,
                slot_id,
            )
            return False

        key = stats_doc_id(season_id, participant_id)
        entry = self.pending.get(key)
        if entry is None:
            entry = {
                "season_id": season_id,
                "participant_id": participant_id,
                "user_id": None,
                "player_name": "",
                "total_delta": 0.0,
                "slot_deltas": {},
                "revisions": {},
            }
            self.pending[key] = entry
        entry["user_id"] = entry["user_id"] or user_id or None
        entry["player_name"] = entry["player_name"] or player_name or ""
        entry["total_delta"] = round1(entry["total_delta"] + delta)
        slot = str(slot_id)
        entry["slot_deltas"][slot] = round1(entry["slot_deltas"].get(slot, 0) + delta)
        if result_id is not None and revision:
            entry["revisions"][str(result_id)] = revision
        return True


def apply_delta(stats_doc: dict | None, slot_deltas: dict, total_delta) -> tuple[dict, bool]:
    """
    New points_total / points_by_slot for one stats document.
    Returns (fields, clamped) where clamped tells whether the zero floor kicked in.
    """
    current = stats_doc or {}
    by_slot_raw = current.get("points_by_slot")
    by_slot = dict(by_slot_raw) if isinstance(by_slot_raw, dict) else {}
    clamped = False
    for slot, delta in slot_deltas.items():
        raw = safe_float(by_slot.get(slot)) + safe_float(delta)
        if round1(raw) < 0:
            clamped = True
        by_slot[slot] = round1(max(0.0, raw))

    raw_total = safe_float(current.get("points_total")) + safe_float(total_delta)
    if round1(raw_total) < 0:
        clamped = True
    return {"points_total": round1(max(0.0, raw_total)), "points_by_slot": by_slot}, clamped


def unapplied_delta(result: dict, stats_doc: dict | None):
    """
    Delta of a previously stamped result that its stats document never absorbed,
    as (delta, revision); None when there is nothing to recover.
    """
    revision = result.get("points_revision")
    if not revision or not is_finite_number(result.get("points_previous")):
        return None
    applied = (stats_doc or {}).get("applied_revisions") or {}
    if applied.get(str(result.get("_id"))) == revision:
        return None
    delta = round1(safe_float(result.get("points")) - safe_float(result.get("points_previous")))
    if delta == 0:
        return None
    return delta, revision


def build_stats_update(entry: dict, stats_doc: dict | None, now_iso: str) -> tuple[dict, bool]:
    """$set fields for the merge-upsert of one season stats document."""
    totals, clamped = apply_delta(stats_doc, entry["slot_deltas"], entry["total_delta"])
    fields = {
        "season_id": entry["season_id"],
        "participant_id": entry["participant_id"],
    }
    if entry["user_id"]:
        fields["user_id"] = entry["user_id"]
    if entry["player_name"]:
        fields["player_name"] = entry["player_name"]
    fields.update(totals)
    for result_id, revision in entry["revisions"].items():
        fields[f"applied_revisions.{result_id}"] = revision
    fields["rank_hc_recalculated_at"] = now_iso
    fields["updated_at"] = now_iso
    return fields, clamped
