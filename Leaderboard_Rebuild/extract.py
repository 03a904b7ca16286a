"""
Player presence and per-player stats for one game.

Games written by older app versions keep players in different maps, so
presence is the union of every map that can name a player. Names that only
differ by case or surrounding whitespace are one player; the first spelling in
PRESENCE_SOURCES order (roster first) is used for display.
"""
from __future__ import annotations

from utils.num_utils import as_number, clamp, round1, safe_float

from .variants import AROUND_THE_WORLD, STREAK_CHALLENGE

PRESENCE_SOURCES = (
    "total_points",
    "player_putts",
    "live_stats",
    "player_uids",
    "player_emails",
    "player_distances",
    "player_highest_streaks",
    "atw_state",
)


def _fold(name: str) -> str:
    return name.strip().casefold()


def resolve_session_players(session: dict) -> list[dict]:
    """[{'name': display_name, 'aliases': [raw spellings...]}] in discovery order."""
    players: dict[str, dict] = {}

    def _add(raw):
        if not isinstance(raw, str) or not raw.strip():
            return
        slot = players.get(_fold(raw))
        if slot is None:
            players[_fold(raw)] = {"name": raw, "aliases": [raw]}
        elif raw not in slot["aliases"]:
            slot["aliases"].append(raw)

    roster = session.get("players") or []
    if isinstance(roster, (list, tuple)):
        for raw in roster:
            _add(raw)
    for source in PRESENCE_SOURCES:
        mapping = session.get(source)
        if isinstance(mapping, dict):
            for raw in mapping:
                _add(raw)
    return list(players.values())


def _lookup(session: dict, field: str, aliases) -> object:
    mapping = session.get(field)
    if not isinstance(mapping, dict):
        return None
    for alias in aliases:
        if alias in mapping:
            return mapping[alias]
    return None


def _accuracy(made: float, total: float) -> float:
    if total <= 0:
        return 0.0
    return round1(clamp(made / total * 100, 0, 100))


def _putt_counts(session: dict, aliases) -> tuple[float, float]:
    putts = _lookup(session, "player_putts", aliases)
    if isinstance(putts, list) and putts:
        made = sum(1 for p in putts if isinstance(p, dict) and p.get("result") == "made")
        return float(made), float(len(putts))
    live = _lookup(session, "live_stats", aliases) or {}
    if not isinstance(live, dict):
        live = {}
    return max(0.0, safe_float(live.get("made_putts"))), max(0.0, safe_float(live.get("total_putts")))


def _total_points(session: dict, aliases) -> float:
    points = _lookup(session, "total_points", aliases)
    if points is None:
        live = _lookup(session, "live_stats", aliases)
        points = live.get("total_points") if isinstance(live, dict) else None
    return max(0.0, safe_float(points))


def _default_stats(session: dict, aliases) -> dict:
    made, total = _putt_counts(session, aliases)
    return {"score": _total_points(session, aliases), "made_putts": made, "total_putts": total}


def _streak_stats(session: dict, aliases) -> dict:
    stats = _default_stats(session, aliases)
    highest = max(0.0, safe_float(_lookup(session, "player_highest_streaks", aliases)))
    stats["score"] = max(stats["score"], highest)
    return stats


def _atw_stats(session: dict, aliases) -> dict:
    # a running best can exceed the live total after a restart
    state = _lookup(session, "atw_state", aliases)
    if not isinstance(state, dict):
        state = {}
    current = max(0.0, safe_float(_lookup(session, "total_points", aliases)))
    return {
        "score": max(max(0.0, safe_float(state.get("best_score"))), current),
        "made_putts": max(0.0, safe_float(state.get("total_makes"))),
        "total_putts": max(0.0, safe_float(state.get("total_putts"))),
    }


_STAT_EXTRACTORS = {
    AROUND_THE_WORLD: _atw_stats,
    STREAK_CHALLENGE: _streak_stats,
}


def extract_player_stats(session: dict, player_name: str, aliases=()) -> dict:
    """score / made_putts / total_putts / accuracy for one player. Never raises on bad data."""
    names = [player_name, *[a for a in aliases if a != player_name]]
    extractor = _STAT_EXTRACTORS.get(session.get("game_type"), _default_stats)
    stats = extractor(session, names)
    return {
        "score": as_number(stats["score"]),
        "made_putts": as_number(stats["made_putts"]),
        "total_putts": as_number(stats["total_putts"]),
        "accuracy": _accuracy(stats["made_putts"], stats["total_putts"]),
    }
