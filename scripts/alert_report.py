#!/usr/bin/env python3
"""Produce a combined alert and risk report from a detection run export."""
from __future__ import annotations

import argparse
import csv
import json
import sys
from pathlib import Path
from typing import Iterable

from report_utils import (
    build_report,
    derive_patient_ids,
    iter_cohort_alert_rows,
    iter_patient_alert_rows,
    load_export,
)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bundle alert and risk summaries into a single report",
    )
    parser.add_argument(
        "export",
        type=Path,
        help="Path to a run_batch JSON export",
    )
    parser.add_argument(
        "--patients-csv",
        type=Path,
        help="Optional CSV containing patient IDs to include",
    )
    parser.add_argument(
        "--patient",
        dest="patients",
        action="append",
        help="Add a patient ID to the report (repeatable)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Write JSON report to this path instead of stdout",
    )
    parser.add_argument(
        "--csv-patient-alerts",
        type=Path,
        help="Write per-patient alert counts to CSV",
    )
    parser.add_argument(
        "--csv-cohort-alerts",
        type=Path,
        help="Write cohort-level alert counts to CSV",
    )
    parser.add_argument(
        "--indent",
        type=int,
        default=2,
        help="Indent level for JSON output, negative to disable",
    )
    return parser.parse_args()


def write_csv(path: Path, fieldnames: Iterable[str], rows: Iterable[dict]) -> None:
    with path.open("w", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)


def main() -> None:
    args = parse_args()
    data = load_export(args.export)
    patient_ids = derive_patient_ids(data, args.patients_csv, args.patients)

    report = build_report(data, patient_ids)

    indent = None if args.indent < 0 else args.indent
    output = json.dumps(report, indent=indent, sort_keys=True)

    if args.output:
        args.output.write_text(f"{output}\n")
    else:
        print(output)

    if args.csv_patient_alerts:
        write_csv(
            args.csv_patient_alerts,
            ["patient_id", "alert_type", "alerts", "risk_level"],
            iter_patient_alert_rows(report),
        )

    if args.csv_cohort_alerts:
        write_csv(
            args.csv_cohort_alerts,
            ["alert_type", "alerts"],
            iter_cohort_alert_rows(report),
        )

    if report["failed_patterns"]:
        for pattern_id, diagnostic in sorted(report["failed_patterns"].items()):
            print(f"warning: pattern {pattern_id} failed: {diagnostic}", file=sys.stderr)

    if report["missing_patients"]:
        joined = ", ".join(report["missing_patients"])
        print(
            f"warning: {len(report['missing_patients'])} patient ID(s) not found: {joined}",
            file=sys.stderr,
        )


if __name__ == "__main__":
    main()
