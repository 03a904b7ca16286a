"""
Recalculate rank-cut points for offline rank_hc training events.

Stamps each event with its effective cut settings, rewrites points/cut_bonus
on ranked results that changed, and pushes the point deltas into
training_season_stats. Dry-run unless --apply --test.

Usage:
    python -m RankHC_Scorer [--season-id S ...] [--event-id E ...] [--bonus-step 0.3] [--target DB] [--apply --test]
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from utils.batch_writer import WritePlan, commit_in_chunks
from utils.cli import build_parser, export_plan, fatal, print_json, resolve_expected_target
from utils.db_utils import get_connection_string, get_db, resolve_target_db_name
from utils.log_utils import RUN_ID, configure_logging, log_kv, timed
from utils.num_utils import safe_float
from utils.safety import check_mode, check_target, describe_mode

from .aggregates import (
    SeasonDeltaAccumulator,
    build_stats_update,
    points_revision,
    stats_doc_id,
    unapplied_delta,
)
from .scoring import event_field_updates, resolve_event_settings, score_event

EVENTS_COLLECTION = "training_events"
RESULTS_COLLECTION = "training_event_results"
STATS_COLLECTION = "training_season_stats"

EVENT_MODE = "rank_hc"
CHUNK_SIZE = 400


def load_events(db, season_ids: list[str] | None = None, event_ids: list[str] | None = None) -> list[dict]:
    query: dict = {"offline_mode": EVENT_MODE}
    if season_ids:
        query["season_id"] = {"$in": list(season_ids)}
    events = list(db[EVENTS_COLLECTION].find(query))
    if event_ids:
        wanted = {str(e) for e in event_ids}
        events = [e for e in events if str(e["_id"]) in wanted]
    return events


def load_results(db, events: list[dict]) -> dict[str, list[dict]]:
    by_event: dict[str, list[dict]] = {str(e["_id"]): [] for e in events}
    if not by_event:
        return by_event
    for doc in db[RESULTS_COLLECTION].find({"event_id": {"$in": list(by_event)}}):
        by_event.setdefault(str(doc.get("event_id")), []).append(doc)
    return by_event


def _delta_ids(result: dict, event: dict) -> tuple:
    return (
        result.get("season_id") or event.get("season_id"),
        result.get("participant_id"),
        result.get("slot_id") or event.get("slot_id"),
    )


def load_stats(db, events: list[dict], results_by_event: dict[str, list[dict]]) -> dict[str, dict]:
    ids = set()
    for event in events:
        for result in results_by_event.get(str(event["_id"]), []):
            season_id, participant_id, _ = _delta_ids(result, event)
            if season_id and participant_id:
                ids.add(stats_doc_id(season_id, participant_id))
    if not ids:
        return {}
    return {doc["_id"]: doc for doc in db[STATS_COLLECTION].find({"_id": {"$in": sorted(ids)}})}


def plan_rescore(
    events: list[dict],
    results_by_event: dict[str, list[dict]],
    stats_by_id: dict[str, dict],
    bonus_step_override=None,
    now: datetime | None = None,
) -> tuple[WritePlan, dict]:
    """Compute every event/result/stats write in memory. Returns (plan, counters)."""
    now_iso = (now or datetime.now(timezone.utc)).isoformat()
    plan = WritePlan()
    acc = SeasonDeltaAccumulator()
    counts = {
        "scanned_events": 0,
        "scanned_results": 0,
        "updated_events": 0,
        "updated_results": 0,
        "unchanged_results": 0,
        "skipped_results": 0,
        "updated_stats": 0,
        "recovered_deltas": 0,
        "dropped_deltas": 0,
        "floor_clamped": 0,
    }

    for event in events:
        counts["scanned_events"] += 1
        settings = resolve_event_settings(event, bonus_step_override)

        event_updates = event_field_updates(event, settings)
        if event_updates:
            counts["updated_events"] += 1
            plan.set(
                EVENTS_COLLECTION,
                event["_id"],
                {**event_updates, "updated_at": now_iso},
                detail=", ".join(f"{k}={v}" for k, v in event_updates.items()),
            )

        results = results_by_event.get(str(event["_id"]), [])

        # deltas stamped by an earlier run whose stats write never landed
        for result in results:
            season_id, participant_id, slot_id = _delta_ids(result, event)
            stats_doc = stats_by_id.get(stats_doc_id(season_id, participant_id))
            pending = unapplied_delta(result, stats_doc)
            if pending is None:
                continue
            delta, revision = pending
            if acc.add(season_id, participant_id, slot_id, delta, result["_id"], revision,
                       result.get("user_id"), result.get("player_name")):
                counts["recovered_deltas"] += 1

        scored = score_event(event, results, settings)
        counts["scanned_results"] += scored["scanned"]
        counts["skipped_results"] += scored["skipped"]
        counts["unchanged_results"] += scored["unchanged"]

        for change in scored["changes"]:
            result = change["result"]
            revision = points_revision(result["_id"], change["prev_points"], change["points"])
            counts["updated_results"] += 1
            plan.set(
                RESULTS_COLLECTION,
                result["_id"],
                {
                    "points": change["points"],
                    "cut_bonus": change["cut_bonus"],
                    "points_previous": change["prev_points"],
                    "points_revision": revision,
                    "updated_at": now_iso,
                },
                detail=f"rank={result.get('rank')} points {change['prev_points']} -> {change['points']}",
            )
            season_id, participant_id, slot_id = _delta_ids(result, event)
            acc.add(season_id, participant_id, slot_id, change["delta"], result["_id"], revision,
                    result.get("user_id"), result.get("player_name"))

    counts["dropped_deltas"] = acc.dropped

    for doc_id, entry in acc.pending.items():
        fields, clamped = build_stats_update(entry, stats_by_id.get(doc_id), now_iso)
        if clamped:
            counts["floor_clamped"] += 1
            logging.warning(
                "[RankHC] Season stats %s clamped at zero (total_delta=%s, slot_deltas=%s)",
                doc_id,
                entry["total_delta"],
                entry["slot_deltas"],
            )
        counts["updated_stats"] += 1
        plan.set(
            STATS_COLLECTION,
            doc_id,
            fields,
            upsert=True,
            detail=f"points_total={fields['points_total']} delta={entry['total_delta']}",
        )

    counts["pending_writes"] = len(plan)
    return plan, counts


def run(
    db,
    season_ids: list[str] | None = None,
    event_ids: list[str] | None = None,
    bonus_step_override=None,
    apply: bool = False,
    export_path: str | None = None,
    now: datetime | None = None,
    transactional: bool | None = None,
) -> dict:
    with timed("rank_hc.read"):
        events = load_events(db, season_ids, event_ids)
        results_by_event = load_results(db, events)
        stats_by_id = load_stats(db, events, results_by_event)
    logging.info(
        "[RankHC] Loaded %d events, %d results, %d season stats",
        len(events),
        sum(len(v) for v in results_by_event.values()),
        len(stats_by_id),
    )

    plan, summary = plan_rescore(events, results_by_event, stats_by_id, bonus_step_override, now=now)
    log_kv(logging.INFO, "[RankHC] plan", mode=describe_mode(apply), **summary)

    if export_path:
        export_plan(plan.rows, export_path)

    if apply and len(plan):
        with timed("rank_hc.write", ops=len(plan)):
            summary["applied_writes"] = commit_in_chunks(db, plan.writers, CHUNK_SIZE, transactional=transactional)
    else:
        summary["applied_writes"] = 0
    return summary


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = build_parser("Recalculate rank_hc points for training events")
    parser.add_argument("--season-id", action="append", default=[], help="Season to rescore (repeatable)")
    parser.add_argument("--event-id", action="append", default=[], help="Event to rescore (repeatable)")
    parser.add_argument("--bonus-step", default=None, help="Override the per-step cut bonus for every event")
    args = parser.parse_args(argv)

    reason = check_mode(args.apply, args.test)
    if reason:
        return fatal(reason)

    season_ids = [s for s in args.season_id if s]
    event_ids = [e for e in args.event_id if e]
    bonus_step = None if args.bonus_step is None else max(0.0, safe_float(args.bonus_step))

    try:
        uri = get_connection_string()
    except RuntimeError as e:
        return fatal(str(e))

    expected = resolve_expected_target(args)
    actual = resolve_target_db_name(uri)
    print_json(
        {
            "mode": describe_mode(args.apply),
            "target": actual,
            "expectedTarget": expected,
            "seasonFilter": season_ids,
            "eventFilter": event_ids,
            "bonusStepOverride": bonus_step,
            "runId": RUN_ID,
        }
    )
    reason = check_target(expected, actual)
    if reason:
        return fatal(reason)

    try:
        summary = run(
            get_db(uri, actual),
            season_ids=season_ids,
            event_ids=event_ids,
            bonus_step_override=bonus_step,
            apply=args.apply,
            export_path=args.export_plan,
        )
    except Exception:
        logging.exception("[RankHC] Recalculation failed")
        return 1

    print_json(summary)
    if not args.apply:
        print("Dry-run complete. Re-run with --apply --test to write changes.")
    else:
        print("Apply complete.")
    return 0
