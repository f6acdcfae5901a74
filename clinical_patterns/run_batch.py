"""Command-line utility for running clinical pattern detection over a cohort.

The tool reads patient documents either from a single JSON file holding a list
of patients or from a directory of ``<patient_id>.json`` files (see
:mod:`clinical_patterns.gateway` for the document layout)::

    python -m clinical_patterns.run_batch --data patients.json --as-of 2024-06-30

Use ``--patient`` repeatedly or provide a newline-delimited ``--patient-file``
to restrict the cohort. ``--patterns`` loads pattern definitions from JSON
instead of the built-in library and ``--settings`` overrides engine settings.
Results are written as JSON to stdout or to ``--output`` if provided.
"""
from __future__ import annotations

import argparse
import asyncio
import csv
import json
import logging
from dataclasses import fields, is_dataclass
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from clinical_patterns.config import EngineSettings
from clinical_patterns.engine import DetectionEngine
from clinical_patterns.gateway import InMemoryClinicalGateway, load_patient_records
from clinical_patterns.models import CohortFilter, DetectionRunReport
from clinical_patterns.pattern_library import DEFAULT_PATTERN_DEFINITIONS

REPORT_CHOICES = ("detection", "correlations", "seasonal", "blood_type", "age_group")


def _load_patient_ids(args: argparse.Namespace) -> list[str]:
    patient_ids: list[str] = []
    if args.patient:
        patient_ids.extend(args.patient)
    if args.patient_file:
        for path in args.patient_file:
            file_path = Path(path)
            if file_path.suffix.lower() == ".csv":
                with file_path.open(newline="") as handle:
                    reader = csv.reader(handle)
                    for idx, row in enumerate(reader):
                        if not row:
                            continue
                        value = row[0].strip()
                        if not value:
                            continue
                        if idx == 0 and value.lower() in {"patient_id", "id"}:
                            continue
                        patient_ids.append(value)
            else:
                with file_path.open() as handle:
                    for line in handle:
                        line = line.strip()
                        if line:
                            patient_ids.append(line)
    return patient_ids


def to_jsonable(value: Any) -> Any:
    """Recursively convert engine results into JSON-compatible values."""

    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return {item.name: to_jsonable(getattr(value, item.name)) for item in fields(value) if item.repr}
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (frozenset, set)):
        return sorted(to_jsonable(item) for item in value)
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def run_report_to_dict(report: DetectionRunReport) -> dict[str, Any]:
    payload = to_jsonable(report)
    payload["failed_patterns"] = report.failed_patterns
    payload["high_risk_patients"] = report.high_risk_patients
    return payload


def _read_json(path: Path) -> Any:
    with path.open() as handle:
        return json.load(handle)


def build_engine(args: argparse.Namespace) -> DetectionEngine:
    settings = EngineSettings.from_env()
    if args.settings:
        overrides = _read_json(args.settings)
        merged = _settings_as_mapping(settings)
        for key, value in overrides.items():
            if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        settings = EngineSettings.from_mapping(merged)

    as_of = args.as_of
    gateway = InMemoryClinicalGateway(
        load_patient_records(args.data),
        today=(lambda: as_of) if as_of else None,
        recent_window_days=settings.recent_visit_window_days,
    )
    engine = DetectionEngine(gateway, settings=settings, today=(lambda: as_of) if as_of else None)
    definitions = _read_json(args.patterns) if args.patterns else DEFAULT_PATTERN_DEFINITIONS
    engine.add_patterns(definitions)
    return engine


def _settings_as_mapping(settings: EngineSettings) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for item in fields(settings):
        value = getattr(settings, item.name)
        payload[item.name] = {f.name: getattr(value, f.name) for f in fields(value)} if is_dataclass(value) else value
    return payload


async def run(engine: DetectionEngine, args: argparse.Namespace, patient_ids: list[str]) -> Any:
    cohort = CohortFilter(patient_ids=frozenset(patient_ids)) if patient_ids else None
    if args.report == "detection":
        report = await engine.run_detection_cycle(cohort)
        return {
            "report": run_report_to_dict(report),
            "alerts": to_jsonable(await engine.list_alerts(unread_only=True)),
        }
    if args.report == "correlations":
        return to_jsonable(await engine.get_default_correlations(cohort))
    if args.report == "seasonal":
        end = args.end or args.as_of or date.today()
        start = args.start or date(end.year - 1, end.month, 1)
        return to_jsonable(await engine.get_seasonal_trends(start, end))
    return to_jsonable(await engine.get_population_breakdown(args.report, cohort))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run clinical pattern detection in batch")
    parser.add_argument("--data", type=Path, required=True, help="Patients JSON file or directory of <patient_id>.json")
    parser.add_argument("--patient", action="append", help="Patient ID to process (may be repeated)")
    parser.add_argument(
        "--patient-file",
        action="append",
        help="Path to file with newline-delimited patient IDs",
    )
    parser.add_argument("--patterns", type=Path, help="JSON file with pattern definitions")
    parser.add_argument("--settings", type=Path, help="JSON file with engine setting overrides")
    parser.add_argument("--as-of", type=date.fromisoformat, help="Snapshot date (YYYY-MM-DD), defaults to today")
    parser.add_argument("--report", choices=REPORT_CHOICES, default="detection", help="What to compute")
    parser.add_argument("--start", type=date.fromisoformat, help="Seasonal report start date")
    parser.add_argument("--end", type=date.fromisoformat, help="Seasonal report end date")
    parser.add_argument("--output", type=Path, help="Optional output JSON file")
    parser.add_argument("--indent", type=int, default=None, help="Pretty-print JSON with the given indent")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:  # pragma: no cover - CLI entry point
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    patient_ids = _load_patient_ids(args)
    engine = build_engine(args)
    results = asyncio.run(run(engine, args, patient_ids))

    output_text = json.dumps(results, indent=args.indent)
    if args.output:
        args.output.write_text(output_text)
    else:
        print(output_text)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
