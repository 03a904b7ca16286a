import sys
import json
import logging
import argparse

import pandas as pd

from utils.db_utils import default_expected_target


def build_parser(description: str) -> argparse.ArgumentParser:
    """Flags shared by every maintenance job. Repeatable flags collect into lists."""
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("--apply", action="store_true", help="Write changes (default is dry-run)")
    parser.add_argument("--test", action="store_true", help="Second confirmation required with --apply")
    parser.add_argument(
        "--target",
        default=None,
        help="Expected database name; must match the connection string (default: PUTIKUNN_EXPECTED_DB)",
    )
    parser.add_argument("--export-plan", default=None, help="Write the pending mutation plan to this CSV path")
    return parser


def resolve_expected_target(args) -> str:
    return args.target or default_expected_target()


def print_json(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def fatal(reason: str) -> int:
    print(f"FATAL: {reason}", file=sys.stderr)
    logging.error(reason)
    return 1


def export_plan(rows: list[dict], path: str) -> int:
    """Dump plan rows (collection, op, doc_id, detail) to CSV; returns row count."""
    df = pd.DataFrame(rows, columns=["collection", "op", "doc_id", "detail"])
    df.to_csv(path, index=False)
    logging.info("Exported %d planned writes to %s", len(df), path)
    return len(df)
