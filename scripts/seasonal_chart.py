#!/usr/bin/env python3
"""Plot month-of-year visit trends as an interactive Plotly chart.

Usage example:

```
python -m clinical_patterns.run_batch --data patients.json --report seasonal \
    --start 2023-01-01 --end 2023-12-31 --output seasonal.json
python scripts/seasonal_chart.py seasonal.json /tmp/seasonal_plots
```

Writes ``seasonal_visits.html`` and ``seasonal_trends.csv`` into the output
directory.
"""
from __future__ import annotations

import argparse
import json
from pathlib import Path

import pandas as pd
import plotly.graph_objects as go

TREND_COLORS = {
    "HIGH": "rgba(214, 39, 40, 0.8)",
    "NORMAL": "rgba(31, 119, 180, 0.6)",
    "LOW": "rgba(44, 160, 44, 0.8)",
}


def load_trends(path: Path) -> pd.DataFrame:
    with path.open() as handle:
        trends = json.load(handle)
    frame = pd.DataFrame(trends)
    if frame.empty:
        return frame
    return frame.sort_values("month").reset_index(drop=True)


def build_figure(frame: pd.DataFrame) -> go.Figure:
    fig = go.Figure()
    fig.add_trace(
        go.Bar(
            x=frame["month_name"],
            y=frame["average_visits_per_day"],
            marker_color=[TREND_COLORS.get(trend, TREND_COLORS["NORMAL"]) for trend in frame["trend_type"]],
            customdata=frame[["visit_count", "days_observed", "percentage_deviation"]].to_numpy(),
            hovertemplate=(
                "%{x}<br>%{y:.2f} visits/day<br>%{customdata[0]} visits over %{customdata[1]} days"
                "<br>%{customdata[2]:+.1f}% vs average<extra></extra>"
            ),
            name="Visits per day",
        )
    )
    fig.add_trace(
        go.Scatter(
            x=frame["month_name"],
            y=frame["respiratory_issues"],
            mode="lines+markers",
            name="Respiratory symptoms",
            yaxis="y2",
        )
    )
    fig.add_trace(
        go.Scatter(
            x=frame["month_name"],
            y=frame["allergic_reactions"],
            mode="lines+markers",
            name="Allergic reactions",
            yaxis="y2",
            line=dict(dash="dash"),
        )
    )
    fig.update_layout(
        title="Visits per day by month",
        xaxis_title="Month",
        yaxis_title="Visits per day",
        yaxis2=dict(title="Symptom mentions", overlaying="y", side="right"),
    )
    return fig


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plot seasonal visit trends")
    parser.add_argument("trends", type=Path, help="JSON list written by run_batch --report seasonal")
    parser.add_argument("output_dir", type=Path, help="Directory for the HTML chart and CSV summary")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    frame = load_trends(args.trends)
    if frame.empty:
        raise SystemExit("No seasonal trends found in input")

    args.output_dir.mkdir(parents=True, exist_ok=True)
    build_figure(frame).write_html(args.output_dir / "seasonal_visits.html")
    frame.to_csv(args.output_dir / "seasonal_trends.csv", index=False)


if __name__ == "__main__":
    main()
