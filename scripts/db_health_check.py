#!/usr/bin/env python
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine, inspect, text

from kintai.settings import get_settings

EXPECTED_HEAD = "0002_leave_grant_lapse"


def run() -> dict[str, Any]:
    database_url = get_settings().database_url
    engine = create_engine(database_url)
    report: dict[str, Any] = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict[str, Any]) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    tables = set(inspect(engine).get_table_names())
    with engine.connect() as conn:
        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        if "attendance_records" in tables:
            duplicate_roots = conn.execute(
                text(
                    """
                    select user_id, work_date, count(*)
                    from attendance_records
                    where source_id is null and deleted_at is null
                    group by user_id, work_date
                    having count(*) > 1
                    """
                )
            ).fetchall()
            add(
                "attendance_duplicate_root_rows",
                "fail" if duplicate_roots else "ok",
                {"rows": [[str(value) for value in row] for row in duplicate_roots]},
            )

            unattributed = conn.execute(
                text(
                    """
                    select id
                    from attendance_records
                    where source_id is not null
                      and (edit_reason is null or edited_by is null)
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "attendance_unattributed_corrections",
                "fail" if unattributed else "ok",
                {"sample_ids": [row[0] for row in unattributed]},
            )

        if "leave_ledger_entries" in tables and "leave_holds" in tables:
            held_mismatch = conn.execute(
                text(
                    """
                    select e.user_id, e.leave_type_id, e.held_units, coalesce(sum(h.units_held), 0)
                    from leave_ledger_entries e
                    left join leave_holds h
                      on h.user_id = e.user_id
                     and h.leave_type_id = e.leave_type_id
                     and h.status = 'held'
                    group by e.id, e.user_id, e.leave_type_id, e.held_units
                    having e.held_units <> coalesce(sum(h.units_held), 0)
                    """
                )
            ).fetchall()
            add(
                "leave_held_units_match_open_holds",
                "fail" if held_mismatch else "ok",
                {"rows": [list(row) for row in held_mismatch]},
            )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
