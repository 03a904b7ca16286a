"""
Entry reconciler: decide create / update / delete for every (game, player).

Signature = player key | game id | game type | variant key. At most one entry
survives per signature; the rest are queued for deletion.
"""
from __future__ import annotations

import re
import logging
from datetime import datetime, timezone

from utils.num_utils import is_finite_number, round1, safe_float

from .extract import extract_player_stats, resolve_session_players
from .identity import normalize_email, normalize_gender, normalize_name, player_key
from .variants import build_variant_key, entry_variant_key, is_better_score

LEADERBOARD_TYPE = "general"

VARIANT_FIELDS = ("time_ladder_discs_per_turn", "streak_distance", "atw_discs_per_turn")

# Payload fields that may be omitted; stale stored values are unset
OPTIONAL_FIELDS = ("player_uid", "player_gender", "date")

_FRACTION = re.compile(r"\.(\d+)")


def _parse_date(value) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            text = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], value.strip(), count=1)
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    elif is_finite_number(value):
        # epoch millis, as the app writes them
        dt = datetime.fromtimestamp(safe_float(value) / 1000.0, tz=timezone.utc)
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_date(value) -> str | None:
    """ISO-8601 UTC with milliseconds ('2025-03-01T10:00:00.000Z'); None when unparseable."""
    dt = _parse_date(value)
    if dt is None:
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _date_ts(value) -> float:
    dt = _parse_date(value)
    return dt.timestamp() if dt else 0.0


def session_date(session: dict) -> str | None:
    return iso_date(session.get("date")) or iso_date(session.get("created_date"))


def signature_of(key: str, game_id, game_type: str, variant_key: str) -> str:
    return f"{key}|game:{game_id}|type:{game_type}|{variant_key}"


def to_comparable(entry: dict) -> dict:
    """Normalized subset used only to decide whether a write is needed."""
    return {
        "game_id": str(entry["game_id"]) if entry.get("game_id") else None,
        "player_uid": entry.get("player_uid") or None,
        "player_email": normalize_email(entry.get("player_email")) or "unknown",
        "player_name": normalize_name(entry.get("player_name")),
        "player_gender": normalize_gender(entry.get("player_gender")),
        "game_type": entry.get("game_type") or None,
        "score": safe_float(entry.get("score")),
        "accuracy": round1(entry.get("accuracy")),
        "made_putts": safe_float(entry.get("made_putts")),
        "total_putts": safe_float(entry.get("total_putts")),
        "leaderboard_type": entry.get("leaderboard_type") or None,
        **{field: safe_float(entry.get(field)) for field in VARIANT_FIELDS},
        "date": iso_date(entry.get("date")),
    }


def _keep_new(game_type: str, new: dict, current: dict) -> bool:
    if is_better_score(game_type, new.get("score"), current.get("score")):
        return True
    return (
        safe_float(new.get("score")) == safe_float(current.get("score"))
        and _date_ts(new.get("date")) > _date_ts(current.get("date"))
    )


def dedupe_entries(entries: list[dict], session_by_id: dict) -> tuple[dict, list[dict]]:
    """
    Group existing entries by signature. Returns (survivor by signature, losers).
    Entries without a player key, game id or game type are left alone.
    """
    by_signature: dict[str, dict] = {}
    losers: list[dict] = []
    for entry in entries:
        key = player_key(entry)
        if not key or not entry.get("game_id") or not entry.get("game_type"):
            continue
        sig = signature_of(key, entry["game_id"], entry["game_type"], entry_variant_key(entry, session_by_id))
        current = by_signature.get(sig)
        if current is None:
            by_signature[sig] = entry
        elif _keep_new(entry["game_type"], entry, current):
            losers.append(current)
            by_signature[sig] = entry
        else:
            losers.append(entry)
    return by_signature, losers


def _alias_in(session: dict, fields, player: dict) -> str:
    """First raw spelling of the player that keys one of `fields`, else the display name."""
    for field in fields:
        mapping = session.get(field)
        if isinstance(mapping, dict):
            for alias in player["aliases"]:
                if alias in mapping:
                    return alias
    return player["name"]


def build_payload(session: dict, identity: dict, stats: dict, variant: dict, now_iso: str) -> dict:
    payload = {"game_id": str(session["_id"])}
    if identity.get("player_uid"):
        payload["player_uid"] = identity["player_uid"]
    payload.update(
        {
            "player_email": identity.get("player_email") or "unknown",
            "player_name": identity["player_name"],
            "game_type": session.get("game_type"),
            "score": stats["score"],
            "accuracy": stats["accuracy"],
            "made_putts": stats["made_putts"],
            "total_putts": stats["total_putts"],
            "leaderboard_type": LEADERBOARD_TYPE,
        }
    )
    if identity.get("player_gender"):
        payload["player_gender"] = identity["player_gender"]
    payload.update(variant["fields"])
    date = session_date(session)
    if date:
        payload["date"] = date
    payload["updated_date"] = now_iso
    return payload


def reconcile(sessions: list[dict], existing_entries: list[dict], resolver, now: datetime | None = None) -> dict:
    """
    Returns {'to_create': [payload], 'to_update': [{'_id', 'fields', 'unset'}], 'to_delete': [entry], 'counts': {...}}.
    Pure apart from identity lookups through `resolver`.
    """
    now_iso = iso_date(now or datetime.now(timezone.utc))
    session_by_id = {str(s["_id"]): s for s in sessions}
    counts = {
        "scanned_games": len(sessions),
        "scanned_players": 0,
        "existing_entries": len(existing_entries),
        "expected_records": 0,
        "duplicate_candidates": 0,
        "skipped_no_score": 0,
        "skipped_no_identity": 0,
        "merged_aliases": 0,
        "created": 0,
        "updated": 0,
        "unchanged": 0,
    }

    survivors, losers = dedupe_entries(existing_entries, session_by_id)
    counts["duplicate_candidates"] = len(losers)

    candidates: dict[str, dict] = {}
    for session in sessions:
        game_type = session.get("game_type")
        for player in resolve_session_players(session):
            counts["scanned_players"] += 1
            stats = extract_player_stats(session, player["name"], player["aliases"])
            if not is_finite_number(stats["score"]) or stats["score"] <= 0:
                counts["skipped_no_score"] += 1
                continue

            identity = resolver.resolve(_alias_in(session, ("player_uids", "player_emails"), player), session)
            key = player_key(identity)
            if not key:
                counts["skipped_no_identity"] += 1
                continue

            variant = build_variant_key(session, _alias_in(session, ("player_distances",), player))
            sig = signature_of(key, session["_id"], game_type, variant["key"])
            payload = build_payload(session, identity, stats, variant, now_iso)

            current = candidates.get(sig)
            if current is not None:
                counts["merged_aliases"] += 1
                if not is_better_score(game_type, payload["score"], current["score"]):
                    continue
            candidates[sig] = payload

    counts["expected_records"] = len(candidates)

    to_create: list[dict] = []
    to_update: list[dict] = []
    for sig, payload in candidates.items():
        existing = survivors.get(sig)
        if existing is None:
            to_create.append({**payload, "created_date": now_iso})
        elif to_comparable(payload) != to_comparable(existing):
            unset = [f for f in OPTIONAL_FIELDS if f not in payload and existing.get(f) not in (None, "")]
            to_update.append({"_id": existing["_id"], "fields": payload, "unset": unset})
        else:
            counts["unchanged"] += 1

    counts["created"] = len(to_create)
    counts["updated"] = len(to_update)
    logging.info(
        "[Rebuild] Reconciled %d games: create=%d update=%d delete=%d unchanged=%d",
        len(sessions),
        counts["created"],
        counts["updated"],
        len(losers),
        counts["unchanged"],
    )
    return {"to_create": to_create, "to_update": to_update, "to_delete": losers, "counts": counts}
