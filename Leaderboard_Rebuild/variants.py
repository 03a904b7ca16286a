"""
Variant keys per game type.

Two records are only comparable when they were played under the same
configuration, so every game type contributes a key component and the payload
fields that store it on the leaderboard entry.
"""
from __future__ import annotations

from utils.num_utils import fmt_num, is_finite_number, safe_float

from .identity import normalize_email, normalize_name

TIME_LADDER = "time_ladder"
STREAK_CHALLENGE = "streak_challenge"
AROUND_THE_WORLD = "around_the_world"

DEFAULT_GAME_TYPES = [TIME_LADDER, STREAK_CHALLENGE, AROUND_THE_WORLD]

# Game types where a lower score ranks higher
LOWER_IS_BETTER = {TIME_LADDER}

DEFAULT_VARIANT = "default"


def _positive(v):
    """The number if finite and > 0, else None."""
    if not is_finite_number(v):
        return None
    f = safe_float(v)
    return f if f > 0 else None


def _discs_variant(prefix: str, field: str, discs) -> dict:
    if discs is None:
        return {"key": f"{prefix}:unknown", "fields": {}}
    return {"key": f"{prefix}:{fmt_num(discs)}", "fields": {field: _as_stored(discs)}}


def _as_stored(v):
    return int(v) if float(v).is_integer() else v


# --- game -> variant -------------------------------------------------------

def _ladder_variant(session: dict, player_name: str) -> dict:
    discs = _positive((session.get("time_ladder_config") or {}).get("discs_per_turn"))
    return _discs_variant("ladder_discs", "time_ladder_discs_per_turn", discs)


def _streak_variant(session: dict, player_name: str) -> dict:
    distance = _positive((session.get("player_distances") or {}).get(player_name)) or 0
    return {
        "key": f"streak_distance:{fmt_num(distance)}",
        "fields": {"streak_distance": _as_stored(distance)},
    }


def _atw_variant(session: dict, player_name: str) -> dict:
    discs = _positive((session.get("atw_config") or {}).get("discs_per_turn"))
    return _discs_variant("atw_discs", "atw_discs_per_turn", discs)


_SESSION_VARIANTS = {
    TIME_LADDER: _ladder_variant,
    STREAK_CHALLENGE: _streak_variant,
    AROUND_THE_WORLD: _atw_variant,
}


def build_variant_key(session: dict, player_name: str) -> dict:
    """{'key': ..., 'fields': {...}} for one player in one game."""
    builder = _SESSION_VARIANTS.get(session.get("game_type"))
    if builder is None:
        return {"key": DEFAULT_VARIANT, "fields": {}}
    return builder(session, player_name)


# --- stored entry -> variant ------------------------------------------------

def _ladder_entry_key(entry: dict, session: dict) -> str:
    discs = _positive(entry.get("time_ladder_discs_per_turn"))
    if discs is None:
        discs = _positive((session.get("time_ladder_config") or {}).get("discs_per_turn"))
    return _discs_variant("ladder_discs", "time_ladder_discs_per_turn", discs)["key"]


def _entry_alias(entry: dict, session: dict) -> str | None:
    """Raw spelling the parent game used for the entry's player."""
    uid = entry.get("player_uid")
    if uid:
        for alias, mapped in (session.get("player_uids") or {}).items():
            if mapped and str(mapped) == str(uid):
                return alias
    email = normalize_email(entry.get("player_email"))
    if email and email != "unknown":
        for alias, mapped in (session.get("player_emails") or {}).items():
            if normalize_email(mapped) == email:
                return alias
    name = normalize_name(entry.get("player_name")).casefold()
    for alias in session.get("player_distances") or {}:
        if isinstance(alias, str) and alias.strip().casefold() == name:
            return alias
    return None


def _streak_entry_key(entry: dict, session: dict) -> str:
    raw = entry.get("streak_distance")
    if raw is None:
        raw = (session.get("player_distances") or {}).get(_entry_alias(entry, session))
    distance = _positive(raw) or 0
    return f"streak_distance:{fmt_num(distance)}"


def _atw_entry_key(entry: dict, session: dict) -> str:
    discs = _positive(entry.get("atw_discs_per_turn"))
    if discs is None:
        discs = _positive((session.get("atw_config") or {}).get("discs_per_turn"))
    return _discs_variant("atw_discs", "atw_discs_per_turn", discs)["key"]


_ENTRY_VARIANTS = {
    TIME_LADDER: _ladder_entry_key,
    STREAK_CHALLENGE: _streak_entry_key,
    AROUND_THE_WORLD: _atw_entry_key,
}


def entry_variant_key(entry: dict, session_by_id: dict) -> str:
    """Variant key of an existing entry, falling back to its parent game's config."""
    builder = _ENTRY_VARIANTS.get(entry.get("game_type"))
    if builder is None:
        return DEFAULT_VARIANT
    session = session_by_id.get(str(entry.get("game_id"))) or {}
    return builder(entry, session)


def is_better_score(game_type: str, next_score, prev_score) -> bool:
    nxt, prev = safe_float(next_score), safe_float(prev_score)
    if game_type in LOWER_IS_BETTER:
        return nxt < prev
    return nxt > prev
