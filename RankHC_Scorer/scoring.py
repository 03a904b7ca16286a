"""
Rank-cut points for offline "rank_hc" training events.

Every ranked participant earns one base point. Participants inside the cut
(the top cut_percent of the field, rounded up) also earn a bonus of
bonus_step for every place between them and the cut line, counting
themselves, so rank 1 earns the most.
"""
from __future__ import annotations

import math
import logging

from utils.num_utils import clamp, is_finite_number, round1, safe_float

SCORING_VERSION = "incremental_v2"
DEFAULT_CUT_PERCENT = 70.0
DEFAULT_BONUS_STEP = 0.3
BASE_POINTS = 1


def get_cut_count(participants_count, cut_percent) -> int:
    participants = max(0.0, safe_float(participants_count))
    pct = clamp(safe_float(cut_percent), 0, 100)
    if participants == 0 or pct == 0:
        return 0
    return math.ceil(participants * pct / 100)


def compute_rank_cut_points(rank, participants_count, cut_percent, bonus_step, base_points=BASE_POINTS) -> dict:
    """
    {'cut_count', 'qualifies', 'step_count', 'cut_bonus', 'points'}.
    points is None when the rank is absent or not positive.
    """
    cut_count = get_cut_count(participants_count, cut_percent)
    has_rank = is_finite_number(rank) and safe_float(rank) > 0
    safe_rank = safe_float(rank)
    qualifies = has_rank and cut_count > 0 and safe_rank <= cut_count
    step_count = int(cut_count - safe_rank + 1) if qualifies else 0
    cut_bonus = round1(step_count * max(0.0, safe_float(bonus_step))) if qualifies else 0
    return {
        "cut_count": cut_count,
        "qualifies": qualifies,
        "step_count": step_count,
        "cut_bonus": cut_bonus,
        "points": round1(base_points + cut_bonus) if has_rank else None,
    }


def resolve_event_settings(event: dict, bonus_step_override=None) -> dict:
    """
    Effective scoring settings for an event. Missing or non-numeric values fall
    back to the defaults; an explicit 0 is kept.
    """
    raw_pct = event.get("cut_percent")
    cut_percent = safe_float(raw_pct) if is_finite_number(raw_pct) else DEFAULT_CUT_PERCENT
    cut_percent = clamp(cut_percent, 0, 100)

    if bonus_step_override is not None:
        bonus_step = safe_float(bonus_step_override)
    elif is_finite_number(event.get("cut_bonus")):
        bonus_step = safe_float(event.get("cut_bonus"))
    else:
        bonus_step = DEFAULT_BONUS_STEP
    bonus_step = round1(max(0.0, bonus_step))

    participants = max(0, int(safe_float(event.get("participants_count"))))
    return {
        "participants_count": participants,
        "cut_percent": cut_percent,
        "bonus_step": bonus_step,
        "cut_count": get_cut_count(participants, cut_percent),
        "scoring_version": SCORING_VERSION,
    }


def event_field_updates(event: dict, settings: dict) -> dict:
    """Only the stamped fields that differ from the resolved settings."""
    updates = {}
    if not is_finite_number(event.get("cut_percent")) or round1(event.get("cut_percent")) != round1(settings["cut_percent"]):
        updates["cut_percent"] = settings["cut_percent"]
    if not is_finite_number(event.get("cut_bonus")) or round1(event.get("cut_bonus")) != settings["bonus_step"]:
        updates["cut_bonus"] = settings["bonus_step"]
    if event.get("rank_hc_scoring") != settings["scoring_version"]:
        updates["rank_hc_scoring"] = settings["scoring_version"]
    return updates


def score_event(event: dict, results: list[dict], settings: dict) -> dict:
    """
    Recompute points for every ranked result of one event.

    Returns {'changes': [...], 'scanned', 'skipped', 'unchanged'}; each change
    carries the result, new points/cut_bonus, previous points and the delta.
    Results without a positive rank are not touched.
    """
    changes = []
    skipped = unchanged = 0
    if settings["cut_count"] > settings["participants_count"]:
        logging.warning(
            "[RankHC] Event %s: cutCount (%d) is higher than participantsCount (%d).",
            event.get("_id"),
            settings["cut_count"],
            settings["participants_count"],
        )

    for result in results:
        scored = compute_rank_cut_points(
            result.get("rank"),
            settings["participants_count"],
            settings["cut_percent"],
            settings["bonus_step"],
        )
        if scored["points"] is None:
            skipped += 1
            continue

        prev_points = round1(result.get("points"))
        prev_bonus = round1(result.get("cut_bonus"))
        if prev_points == scored["points"] and prev_bonus == scored["cut_bonus"]:
            unchanged += 1
            continue

        changes.append(
            {
                "result": result,
                "points": scored["points"],
                "cut_bonus": scored["cut_bonus"],
                "qualifies": scored["qualifies"],
                "prev_points": prev_points,
                "delta": round1(scored["points"] - prev_points),
            }
        )

    return {"changes": changes, "scanned": len(results), "skipped": skipped, "unchanged": unchanged}
