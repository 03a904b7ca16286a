import os
import logging
from pathlib import Path
from urllib.parse import urlsplit

import pymongo
from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient
from dotenv import load_dotenv, find_dotenv

# Global cache for the MongoDB client so both jobs in one process share the pool
_CLIENT_CACHE = None

# Simple in-process cache for secrets
_SECRET_CACHE: dict[str, str] = {}

# Connection string keys, checked in order
CONNECTION_KEYS = [
    "MONGODB_CONNECTION_STRING",
    "MongoDb-Connection-String",
    "MONGO_URI",
    "MONGODB_URI",
]

DEFAULT_DB_NAME = "putikunn"
DEFAULT_EXPECTED_TARGET = "putikunn_migration"

_DOTENV_LOADED = False


def load_dotenvs() -> list[str]:
    """Load .env files without overriding real environment values.

    Order: PUTIKUNN_ENV_PATH, project root, CWD, then find_dotenv(usecwd=True).
    Returns the list of files that were loaded.
    """
    global _DOTENV_LOADED
    if _DOTENV_LOADED:
        return []
    _DOTENV_LOADED = True

    candidates: list[Path] = []
    if os.getenv("PUTIKUNN_ENV_PATH"):
        candidates.append(Path(os.getenv("PUTIKUNN_ENV_PATH", "")).expanduser().resolve())
    here = Path(__file__).resolve()
    candidates.append(here.parent.parent / ".env")
    candidates.append(Path.cwd() / ".env")

    loaded_from: list[str] = []
    for p in candidates:
        if str(p) in loaded_from or not p.is_file():
            continue
        load_dotenv(dotenv_path=str(p), override=False)
        logging.info("Loaded .env from: %s", p)
        loaded_from.append(str(p))

    if not loaded_from:
        auto = find_dotenv(usecwd=True)
        if auto:
            load_dotenv(dotenv_path=auto, override=False)
            logging.info("Loaded .env via find_dotenv: %s", auto)
            loaded_from.append(auto)

    return loaded_from


def get_secret(name: str, default: str | None = None) -> str | None:
    """
    Return secret value from environment if present; otherwise fetch from Azure Key Vault.
    Key Vault is only consulted when KEY_VAULT_URL is set. Values are cached per-process.
    Supports KV names that disallow underscores by trying hyphenated variants.
    """
    # 1) Env precedence (easy local override for dev/testing)
    if os.environ.get(name):
        return os.environ[name]

    # 2) Cache
    if name in _SECRET_CACHE:
        return _SECRET_CACHE[name]

    # 3) Azure Key Vault
    kv_url = os.getenv("KEY_VAULT_URL")
    if not kv_url:
        return default

    lookup_names = [name]
    if "_" in name:
        lookup_names.append(name.replace("_", "-"))
    try:
        client = SecretClient(vault_url=kv_url, credential=DefaultAzureCredential())
        for nm in lookup_names:
            try:
                val = client.get_secret(nm).value
            except Exception as e:
                logging.debug("Secrets: '%s' not found in Key Vault: %s", nm, e)
                continue
            if isinstance(val, str):
                _SECRET_CACHE[name] = val
                return val
    except Exception as e:
        logging.warning("Secrets: failed to fetch '%s' from Key Vault: %s", name, e)

    # 4) Fallback
    return default


def get_connection_string() -> str:
    """Resolve the Mongo connection string; a missing one is a configuration error."""
    load_dotenvs()
    for key in CONNECTION_KEYS:
        val = get_secret(key)
        if val:
            return val
    # Prevent silent fallback to localhost:27017
    raise RuntimeError(
        f"MongoDB Connection String not found in environment or Key Vault. Checked: {CONNECTION_KEYS}"
    )


def resolve_target_db_name(uri: str) -> str:
    """
    Database the credentials point at: the path component of the connection string,
    else PUTIKUNN_DB_NAME / MONGO_DB_NAME, else the default name.
    """
    path = urlsplit(uri).path if uri else ""
    db_name = path.lstrip("/").split("?", 1)[0].strip()
    if db_name:
        return db_name
    return os.getenv("PUTIKUNN_DB_NAME") or os.getenv("MONGO_DB_NAME") or DEFAULT_DB_NAME


def default_expected_target() -> str:
    load_dotenvs()
    return os.getenv("PUTIKUNN_EXPECTED_DB") or DEFAULT_EXPECTED_TARGET


def get_db_client(uri: str, **kwargs):
    """
    Returns a PyMongo client for the given connection string.
    Uses a global cache to reuse the client within one process.
    """
    global _CLIENT_CACHE

    if _CLIENT_CACHE is not None:
        return _CLIENT_CACHE

    try:
        _CLIENT_CACHE = pymongo.MongoClient(uri, **kwargs)
        return _CLIENT_CACHE
    except Exception as e:
        logging.critical(f"Failed to create MongoClient: {e}")
        raise


def get_db(uri: str, db_name: str):
    """Returns the database object for db_name."""
    return get_db_client(uri)[db_name]
