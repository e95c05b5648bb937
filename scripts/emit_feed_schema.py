#!/usr/bin/env python3
"""Emit deterministic SQL for the home feed tables and optional demo listings."""

from __future__ import annotations

import argparse
import json
from datetime import datetime
from typing import Any

from homefeed.services.repository import FEED_SCHEMA_SQL
from homefeed.services.store import demo_listings


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _quote_optional(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, datetime):
        return f"{_quote_sql(value.isoformat())}::timestamptz"
    return _quote_sql(str(value))


def render_listing_sql(listing: dict[str, Any]) -> str:
    listing_id = _quote_sql(str(listing["id"]))
    payload = {
        key: value
        for key, value in listing.items()
        if key not in {"id", "plan_code", "base_tier", "visible", "upgrades"}
    }
    statements = [
        "insert into feed_listings (id, plan_code, base_tier, visible, payload)\n"
        f"values ({listing_id}, {_quote_optional(listing.get('plan_code'))}, "
        f"{_quote_optional(listing.get('base_tier'))}::integer, {str(bool(listing.get('visible', True))).lower()}, "
        f"{_quote_sql(json.dumps(payload, sort_keys=True))}::jsonb)\n"
        "on conflict (id) do nothing;"
    ]
    for upgrade in listing.get("upgrades") or []:
        statements.append(
            "insert into feed_listing_upgrades (listing_id, code, start_at, end_at)\n"
            f"values ({listing_id}, {_quote_sql(upgrade['code'])}, "
            f"{_quote_optional(upgrade['start_at'])}, {_quote_optional(upgrade['end_at'])});"
        )
    return "\n".join(statements)


def render_sql(*, reset_signals: bool, seed_demo: bool, now: datetime | None = None) -> str:
    parts = ["-- Home feed schema", FEED_SCHEMA_SQL.strip()]
    if reset_signals:
        parts.append("-- Clear fairness rotation state\ndelete from feed_fairness_signals;")
    if seed_demo:
        parts.append("-- Demo listings")
        parts.extend(render_listing_sql(listing) for listing in demo_listings(now))
    return "\n\n".join(parts) + "\n"


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL to create the home feed tables.")
    parser.add_argument(
        "--reset-signals",
        action="store_true",
        help="Append a statement that clears every fairness signal",
    )
    parser.add_argument(
        "--seed-demo",
        action="store_true",
        help="Append inserts for the demo listing set",
    )
    args = parser.parse_args()

    print(render_sql(reset_signals=args.reset_signals, seed_demo=args.seed_demo))


if __name__ == "__main__":
    main()
