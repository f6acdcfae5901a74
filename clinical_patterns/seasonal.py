"""Month-of-year visit trends."""
from __future__ import annotations

import calendar
from datetime import date
from typing import Iterable

import pandas as pd

from .models import SeasonalTrend, TrendType, VisitRecord

RESPIRATORY_KEYWORDS = ("cough", "fever", "cold")
ALLERGIC_KEYWORDS = ("allerg", "rash", "itch")

_SEASONS = {
    12: "Winter", 1: "Winter", 2: "Winter",
    3: "Spring", 4: "Spring", 5: "Spring",
    6: "Summer", 7: "Summer", 8: "Summer",
    9: "Fall", 10: "Fall", 11: "Fall",
}


def season_for(month: int) -> str:
    return _SEASONS[month]


def _mentions(symptoms: pd.Series, keywords: Iterable[str]) -> pd.Series:
    pattern = "|".join(keywords)
    return symptoms.str.lower().str.contains(pattern, regex=True)


class SeasonalTrendAnalyzer:
    """Compares each calendar month's visit rate with the overall rate.

    Months are grouped across years, so a range spanning two Januaries
    reports a single January with the days of both.
    """

    def __init__(self, *, deviation_percent: float = 15.0) -> None:
        self._deviation_percent = deviation_percent

    def analyze(self, visits: Iterable[VisitRecord], start: date, end: date) -> list[SeasonalTrend]:
        if end < start:
            raise ValueError(f"end ({end}) must not be before start ({start})")

        days = pd.date_range(start, end, freq="D")
        days_per_month = pd.Series(days.month).value_counts().sort_index()

        frame = pd.DataFrame(
            [(v.visit_date, v.symptoms or "") for v in visits if start <= v.visit_date <= end],
            columns=["visit_date", "symptoms"],
        )
        frame["month"] = pd.to_datetime(frame["visit_date"]).dt.month
        frame["respiratory"] = _mentions(frame["symptoms"].astype(str), RESPIRATORY_KEYWORDS)
        frame["allergic"] = _mentions(frame["symptoms"].astype(str), ALLERGIC_KEYWORDS)
        monthly = frame.groupby("month").agg(
            visits=("visit_date", "size"),
            respiratory=("respiratory", "sum"),
            allergic=("allergic", "sum"),
        )

        total_days = int(days_per_month.sum())
        overall = len(frame) / total_days

        trends: list[SeasonalTrend] = []
        for month, days_observed in days_per_month.items():
            month = int(month)
            count = int(monthly["visits"].get(month, 0))
            average = count / int(days_observed)
            if overall > 0:
                deviation = (average / overall - 1.0) * 100.0
            else:
                deviation = 0.0
            trends.append(
                SeasonalTrend(
                    month=month,
                    month_name=calendar.month_name[month],
                    season=season_for(month),
                    visit_count=count,
                    days_observed=int(days_observed),
                    average_visits_per_day=average,
                    percentage_deviation=round(deviation, 4),
                    trend_type=self._trend_type(deviation),
                    respiratory_issues=int(monthly["respiratory"].get(month, 0)),
                    allergic_reactions=int(monthly["allergic"].get(month, 0)),
                )
            )
        return trends

    def _trend_type(self, deviation: float) -> TrendType:
        if deviation > self._deviation_percent:
            return TrendType.HIGH
        if deviation < -self._deviation_percent:
            return TrendType.LOW
        return TrendType.NORMAL


__all__ = [
    "ALLERGIC_KEYWORDS",
    "RESPIRATORY_KEYWORDS",
    "SeasonalTrendAnalyzer",
    "season_for",
]
