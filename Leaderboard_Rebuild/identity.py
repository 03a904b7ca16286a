"""Resolve raw player names on a game to user identities, memoized per run."""
from __future__ import annotations

import logging

_FEMALE = {"N", "F", "FEMALE", "NAINE", "W", "WOMAN", "WOMEN"}
_MALE = {"M", "MALE", "MEES", "MAN", "MEN"}

_NAME_FIELDS = ("full_name", "display_name", "fullName", "displayName")


def normalize_email(value) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def normalize_name(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_gender(gender) -> str | None:
    if not gender:
        return None
    norm = gender.strip().upper() if isinstance(gender, str) else gender
    if norm in _FEMALE:
        return "N"
    if norm in _MALE:
        return "M"
    return None


class IdentityResolver:
    """
    Looks users up by uid, then by email. Build one per run; the caches are
    never shared between runs. Misses are cached as None.
    """

    def __init__(self, users_collection):
        self.users = users_collection
        self.by_uid: dict[str, dict | None] = {}
        self.by_email: dict[str, dict | None] = {}
        self.lookups = 0

    def get_user_by_uid(self, uid) -> dict | None:
        if not uid:
            return None
        uid = str(uid)
        if uid in self.by_uid:
            return self.by_uid[uid]
        self.lookups += 1
        user = self.users.find_one({"_id": uid})
        self.by_uid[uid] = user
        if user and normalize_email(user.get("email")):
            self.by_email[normalize_email(user.get("email"))] = user
        return user

    def get_user_by_email(self, email) -> dict | None:
        normalized = normalize_email(email)
        if not normalized:
            return None
        if normalized in self.by_email:
            return self.by_email[normalized]
        self.lookups += 1
        user = self.users.find_one({"email": normalized})
        self.by_email[normalized] = user
        if user and user.get("_id") is not None:
            self.by_uid[str(user["_id"])] = user
        return user

    def resolve(self, raw_name: str, session: dict) -> dict:
        mapped_uid = (session.get("player_uids") or {}).get(raw_name)
        mapped_email = normalize_email((session.get("player_emails") or {}).get(raw_name))

        user = self.get_user_by_uid(mapped_uid)
        if not user and mapped_email:
            user = self.get_user_by_email(mapped_email)
        user = user or {}

        resolved_name = raw_name
        for field in _NAME_FIELDS:
            candidate = normalize_name(user.get(field))
            if candidate:
                resolved_name = candidate
                break
        resolved_name = normalize_name(resolved_name) or raw_name

        uid = user.get("_id") or mapped_uid
        identity = {
            "player_name": resolved_name,
            "player_uid": str(uid) if uid else None,
            "player_email": normalize_email(user.get("email") or mapped_email) or None,
            "player_gender": normalize_gender(user.get("gender")),
        }
        if not user and (mapped_uid or mapped_email):
            logging.debug("[Rebuild] No user found for %r (uid=%s, email=%s)", raw_name, mapped_uid, mapped_email)
        return identity


def player_key(identity: dict) -> str:
    """uid:<uid> | email:<email> | name:<name> | '' when nothing identifies the player."""
    if identity.get("player_uid"):
        return f"uid:{identity['player_uid']}"
    email = normalize_email(identity.get("player_email"))
    if email and email != "unknown":
        return f"email:{email}"
    name = normalize_name(identity.get("player_name")).lower()
    if name:
        return f"name:{name}"
    return ""
