from datetime import datetime, timezone

import pytest

from Leaderboard_Rebuild.identity import IdentityResolver
from Leaderboard_Rebuild.reconcile import dedupe_entries, iso_date, reconcile, to_comparable

NOW = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def resolver(make_collection):
    users = [{"_id": "u1", "email": "anna@example.com", "full_name": "Anna Tamm", "gender": "F"}]
    return IdentityResolver(make_collection(users))


def _ladder_game(**extra):
    game = {
        "_id": "g1",
        "game_type": "time_ladder",
        "date": "2025-04-20T18:30:00Z",
        "time_ladder_config": {"discs_per_turn": 3},
        "players": ["anna", "Bert"],
        "player_uids": {"anna": "u1"},
        "total_points": {"anna": 52, "Bert": 61},
        "live_stats": {"anna": {"made_putts": 9, "total_putts": 12}},
    }
    game.update(extra)
    return game


def _entry(_id, score, date, **extra):
    entry = {
        "_id": _id,
        "game_id": "g1",
        "game_type": "classic",
        "player_name": "Ann",
        "player_email": "unknown",
        "leaderboard_type": "general",
        "score": score,
        "date": date,
    }
    entry.update(extra)
    return entry


class TestCreate:
    def test_new_players_are_created(self, resolver):
        result = reconcile([_ladder_game()], [], resolver, now=NOW)

        assert result["counts"]["created"] == 2
        anna = result["to_create"][0]
        assert anna["player_uid"] == "u1"
        assert anna["player_name"] == "Anna Tamm"
        assert anna["player_email"] == "anna@example.com"
        assert anna["player_gender"] == "N"
        assert anna["score"] == 52
        assert anna["accuracy"] == 75.0
        assert anna["time_ladder_discs_per_turn"] == 3
        assert anna["date"] == "2025-04-20T18:30:00.000Z"
        assert anna["created_date"] == "2025-05-01T12:00:00.000Z"
        bert = result["to_create"][1]
        assert bert["player_email"] == "unknown"
        assert "player_uid" not in bert

    def test_non_positive_scores_are_skipped(self, resolver):
        game = _ladder_game(total_points={"anna": 0, "Bert": float("nan")})

        result = reconcile([game], [], resolver, now=NOW)

        assert result["to_create"] == []
        assert result["counts"]["skipped_no_score"] == 2
        assert result["counts"]["scanned_players"] == 2

    def test_unidentifiable_players_are_skipped(self):
        class NamelessResolver:
            def resolve(self, raw_name, session):
                return {"player_name": "", "player_uid": None, "player_email": None, "player_gender": None}

        result = reconcile([_ladder_game()], [], NamelessResolver(), now=NOW)

        assert result["to_create"] == []
        assert result["counts"]["skipped_no_identity"] == 2

    def test_aliases_of_one_identity_collapse(self, resolver):
        game = {
            "_id": "g2",
            "game_type": "classic",
            "players": ["anna", "Anna T"],
            "player_uids": {"anna": "u1", "Anna T": "u1"},
            "total_points": {"anna": 10, "Anna T": 14},
        }

        result = reconcile([game], [], resolver, now=NOW)

        assert len(result["to_create"]) == 1
        assert result["to_create"][0]["score"] == 14
        assert result["counts"]["merged_aliases"] == 1


class TestIdempotence:
    def test_second_pass_has_nothing_to_do(self, resolver):
        games = [_ladder_game(), {
            "_id": "g3",
            "game_type": "streak_challenge",
            "players": ["Cleo"],
            "total_points": {"Cleo": 4},
            "player_highest_streaks": {"Cleo": 9},
            "player_distances": {"Cleo": 5},
        }]
        first = reconcile(games, [], resolver, now=NOW)
        stored = [{**doc, "_id": f"e{i}"} for i, doc in enumerate(first["to_create"])]

        later = datetime(2025, 6, 1, tzinfo=timezone.utc)
        second = reconcile(games, stored, resolver, now=later)

        assert second["to_create"] == []
        assert second["to_update"] == []
        assert second["to_delete"] == []
        assert second["counts"]["unchanged"] == 3

    def test_changed_score_is_updated(self, resolver):
        game = _ladder_game()
        first = reconcile([game], [], resolver, now=NOW)
        stored = [{**doc, "_id": f"e{i}"} for i, doc in enumerate(first["to_create"])]

        game["total_points"]["Bert"] = 58
        second = reconcile([game], stored, resolver, now=NOW)

        assert second["to_create"] == []
        assert [u["_id"] for u in second["to_update"]] == ["e1"]
        assert second["to_update"][0]["fields"]["score"] == 58

    def test_entry_without_variant_fields_matches_via_parent_game(self, resolver):
        game = _ladder_game()
        first = reconcile([game], [], resolver, now=NOW)
        legacy = []
        for i, doc in enumerate(first["to_create"]):
            doc = {**doc, "_id": f"e{i}"}
            doc.pop("time_ladder_discs_per_turn")
            legacy.append(doc)

        second = reconcile([game], legacy, resolver, now=NOW)

        assert second["to_create"] == []
        assert len(second["to_update"]) == 2

    def test_legacy_streak_entry_matches_under_resolved_name(self, resolver):
        game = {
            "_id": "g3",
            "game_type": "streak_challenge",
            "players": ["anna"],
            "player_uids": {"anna": "u1"},
            "total_points": {"anna": 4},
            "player_distances": {"anna": 5},
        }
        first = reconcile([game], [], resolver, now=NOW)
        legacy = {**first["to_create"][0], "_id": "e0"}
        assert legacy["player_name"] == "Anna Tamm"
        legacy.pop("streak_distance")

        second = reconcile([game], [legacy], resolver, now=NOW)

        assert second["to_create"] == []
        assert second["to_delete"] == []
        assert [u["_id"] for u in second["to_update"]] == ["e0"]

    def test_stale_optional_fields_are_unset_once(self, resolver):
        game = {"_id": "g5", "game_type": "classic", "players": ["Bert"], "total_points": {"Bert": 20}}
        first = reconcile([game], [], resolver, now=NOW)
        stored = {**first["to_create"][0], "_id": "e0", "player_gender": "M", "date": "2025-01-01T00:00:00.000Z"}

        updates_per_pass = []
        for _ in range(3):
            result = reconcile([game], [stored], resolver, now=NOW)
            updates_per_pass.append(len(result["to_update"]))
            for upd in result["to_update"]:
                assert sorted(upd["unset"]) == ["date", "player_gender"]
                stored.update(upd["fields"])
                for field in upd["unset"]:
                    stored.pop(field, None)

        assert updates_per_pass == [1, 0, 0]
        assert "player_gender" not in stored
        assert "date" not in stored


class TestDedupe:
    def test_better_score_survives_even_if_older(self):
        older_better = _entry("keep", 150, "2025-01-01T00:00:00Z")
        newer_worse = _entry("drop", 120, "2025-03-01T00:00:00Z")

        survivors, losers = dedupe_entries([newer_worse, older_better], {})

        assert [e["_id"] for e in survivors.values()] == ["keep"]
        assert [e["_id"] for e in losers] == ["drop"]

    def test_tie_goes_to_more_recent(self):
        old = _entry("old", 100, "2025-01-01T00:00:00Z")
        new = _entry("new", 100, "2025-02-01T00:00:00Z")

        survivors, losers = dedupe_entries([old, new], {})

        assert [e["_id"] for e in survivors.values()] == ["new"]
        assert [e["_id"] for e in losers] == ["old"]

    def test_lower_is_better_for_time_ladder(self):
        fast = _entry("fast", 40, "2025-01-01T00:00:00Z", game_type="time_ladder", time_ladder_discs_per_turn=3)
        slow = _entry("slow", 55, "2025-01-02T00:00:00Z", game_type="time_ladder", time_ladder_discs_per_turn=3)

        survivors, losers = dedupe_entries([fast, slow], {})

        assert [e["_id"] for e in losers] == ["slow"]

    def test_different_variants_are_not_duplicates(self):
        a = _entry("a", 40, None, game_type="time_ladder", time_ladder_discs_per_turn=3)
        b = _entry("b", 55, None, game_type="time_ladder", time_ladder_discs_per_turn=5)

        survivors, losers = dedupe_entries([a, b], {})

        assert len(survivors) == 2
        assert losers == []

    def test_reconcile_queues_exactly_one_delete(self, resolver):
        game = {"_id": "g1", "game_type": "classic", "players": ["Ann"], "total_points": {"Ann": 150}}
        entries = [
            _entry("drop", 120, "2025-03-01T00:00:00Z"),
            _entry("keep", 150, "2025-01-01T00:00:00Z"),
        ]

        result = reconcile([game], entries, resolver, now=NOW)

        assert [e["_id"] for e in result["to_delete"]] == ["drop"]
        assert result["counts"]["duplicate_candidates"] == 1

    def test_incomplete_entries_are_left_alone(self):
        survivors, losers = dedupe_entries([_entry("x", 10, None, game_id=None), _entry("y", 10, None, player_name="")], {})
        assert survivors == {}
        assert losers == []


class TestNormalization:
    def test_iso_date_variants(self):
        assert iso_date("2025-04-20T18:30:00Z") == "2025-04-20T18:30:00.000Z"
        assert iso_date(datetime(2025, 4, 20, 18, 30, 0, 123456)) == "2025-04-20T18:30:00.123Z"
        assert iso_date("2025-04-20") == "2025-04-20T00:00:00.000Z"
        assert iso_date(0) == "1970-01-01T00:00:00.000Z"
        assert iso_date("2025-04-20T18:30:00.12Z") == "2025-04-20T18:30:00.120Z"
        assert iso_date("2025-04-20T18:30:00.1234567+00:00") == "2025-04-20T18:30:00.123Z"
        assert iso_date("garbage") is None
        assert iso_date(None) is None

    def test_comparable_ignores_bookkeeping_fields(self):
        a = {"game_id": "g1", "score": 10, "accuracy": 50.04, "updated_date": "x", "player_email": ""}
        b = {"game_id": "g1", "score": 10.0, "accuracy": 50.0, "updated_date": "y", "created_date": "z"}
        assert to_comparable(a) == to_comparable(b)
