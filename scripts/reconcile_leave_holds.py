#!/usr/bin/env python
"""Report leave holds that outlived their request.

Nothing is released automatically; the operator decides per hold.
"""
from __future__ import annotations

import argparse
import json
from datetime import timedelta
from typing import Any

from kintai.db import SessionLocal
from kintai.services.leave_ledger import list_stale_holds
from kintai.settings import get_settings


def run(*, older_than_minutes: int | None = None) -> dict[str, Any]:
    minutes = older_than_minutes if older_than_minutes is not None else get_settings().stale_hold_minutes
    with SessionLocal() as db:
        holds = list_stale_holds(db, older_than=timedelta(minutes=minutes))
        return {
            "older_than_minutes": minutes,
            "stale_hold_count": len(holds),
            "holds": [
                {
                    "request_id": item.request_id,
                    "user_id": item.user_id,
                    "leave_type_id": item.leave_type_id,
                    "units_held": item.units_held,
                    "created_at": item.created_at.isoformat() if item.created_at else None,
                }
                for item in holds
            ],
        }


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--older-than-minutes", type=int, default=None)
    args = parser.parse_args()
    print(json.dumps(run(older_than_minutes=args.older_than_minutes), ensure_ascii=False, indent=2))
