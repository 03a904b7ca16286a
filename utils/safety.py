"""
Safety gate for the maintenance jobs.

Dry-run is the default and never writes. A mutating run needs both --apply and
--test, and the database named by the connection string must match --target.
"""

PROCEED = None


def check_mode(apply: bool, confirmed: bool) -> str | None:
    """Evaluated before credentials are read. Returns an abort reason or None."""
    if apply and not confirmed:
        return "Safety check failed: use --apply --test to run writes in test workflow."
    return PROCEED


def check_target(expected_target: str | None, actual_target: str | None) -> str | None:
    if not expected_target:
        return "No expected target given: pass --target <database> or set PUTIKUNN_EXPECTED_DB."
    if actual_target != expected_target:
        return (
            f'Target mismatch. Connection string targets "{actual_target}", '
            f'expected "{expected_target}".'
        )
    return PROCEED


def check_safety(
    apply: bool,
    confirmed: bool,
    expected_target: str | None,
    actual_target: str | None,
) -> str | None:
    """Full gate: proceed (None) or the reason to abort."""
    return check_mode(apply, confirmed) or check_target(expected_target, actual_target)


def describe_mode(apply: bool) -> str:
    return "apply" if apply else "dry-run"
