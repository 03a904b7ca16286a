import os
import json
import time
import uuid
import logging
from contextlib import contextmanager
from datetime import datetime, timezone

# --- Structured logging helpers (safe-by-default) ---
LOG_FORMAT_MODE = os.getenv("PUTIKUNN_LOG_FORMAT", "plain").strip().lower()  # 'plain' | 'json'


def configure_logging() -> None:
    """Only set basicConfig if no handlers exist; respect PUTIKUNN_LOG_LEVEL either way."""
    level_name = os.getenv("PUTIKUNN_LOG_LEVEL", "INFO").strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s - %(levelname)s - %(message)s",
        )
    root.setLevel(level)


def _now_utc():
    return datetime.now(timezone.utc)


def _jsonify(v):
    try:
        return json.loads(json.dumps(v, default=str))
    except (TypeError, ValueError):
        return str(v)


def _gen_run_id() -> str:
    rid = os.getenv("RUN_ID")
    if rid and rid.strip():
        return rid.strip()
    return uuid.uuid4().hex[:12].upper()


RUN_ID = _gen_run_id()


def _fmt_kv(msg: str, **kw) -> str:
    if LOG_FORMAT_MODE == "json":
        payload = {"ts": _now_utc().isoformat(), "msg": msg, "run_id": RUN_ID, **kw}
        return json.dumps(payload, default=str)
    parts = [f"{k}={_jsonify(v)}" for k, v in kw.items()]
    return f"{msg} | run_id={RUN_ID}" + (", " + ", ".join(parts) if parts else "")


def log_kv(level: int, msg: str, **kw) -> None:
    logging.log(level, _fmt_kv(msg, **kw))


@contextmanager
def timed(section: str, **kw):
    """Time a code section and always log duration (ms), even on exceptions."""
    t0 = time.perf_counter()
    try:
        yield
    except Exception:
        logging.exception("Section failed: %s | run_id=%s", section, RUN_ID)
        raise
    finally:
        ms = (time.perf_counter() - t0) * 1000.0
        log_kv(logging.INFO, "timing", section=section, ms=round(ms, 2), **kw)
