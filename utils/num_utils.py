import math


def safe_float(v, default: float = 0.0) -> float:
    """Coerce anything to a finite float; None, junk, NaN and +/-inf become `default`."""
    if isinstance(v, bool):
        return float(v)
    if isinstance(v, dict) and "$numberDouble" in v:
        v = v["$numberDouble"]
    try:
        out = float(v)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(out):
        return default
    return out


def is_finite_number(v) -> bool:
    if v is None or isinstance(v, bool):
        return False
    try:
        return math.isfinite(float(v))
    except (TypeError, ValueError):
        return False


def round1(v) -> float:
    """One decimal, halves rounded up (0.25 -> 0.3, -0.25 -> -0.2)."""
    return math.floor(safe_float(v) * 10 + 0.5) / 10


def clamp(v: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, v))


def fmt_num(v) -> str:
    """Canonical text for a number: 3.0 -> '3', 2.5 -> '2.5'."""
    f = safe_float(v)
    if f.is_integer():
        return str(int(f))
    return repr(f)


def as_number(v):
    """Integral floats collapse to int so stored values match what the app writes."""
    f = safe_float(v)
    return int(f) if f.is_integer() else f
