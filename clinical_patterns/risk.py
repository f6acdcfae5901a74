"""Weighted per-patient risk scoring."""
from __future__ import annotations

from .config import RiskBands, RiskWeights, SIGNAL_NAMES, SignalScales
from .models import ClinicalSnapshot, RiskAssessment, RiskLevel


def _clip(value: float) -> float:
    return min(1.0, max(0.0, value))


class RiskScorer:
    """Combines normalized clinical signals into a score in [0, 1].

    Every signal is clipped against a saturation scale, so increasing any
    raw input can never lower the score.
    """

    def __init__(
        self,
        *,
        weights: RiskWeights | None = None,
        scales: SignalScales | None = None,
        bands: RiskBands | None = None,
        notable_threshold: float = 0.5,
    ) -> None:
        self._weights = weights or RiskWeights()
        self._scales = scales or SignalScales()
        self._bands = bands or RiskBands()
        self._notable_threshold = notable_threshold

    def normalize(self, snapshot: ClinicalSnapshot) -> dict[str, float]:
        scales = self._scales
        gap_days = snapshot.days_since_last_vaccination
        vaccination_gap = 1.0 if gap_days is None else _clip(gap_days / scales.vaccination_gap_days)
        return {
            "recent_visits": _clip(snapshot.recent_visit_count / scales.recent_visits),
            "active_allergies": _clip(snapshot.allergy_count / scales.active_allergies),
            "active_diagnoses": _clip(snapshot.active_diagnosis_count / scales.active_diagnoses),
            "lab_abnormality": _clip(snapshot.lab_abnormal_ratio / scales.lab_abnormality),
            "vaccination_gap": vaccination_gap,
        }

    def level_for(self, score: float) -> RiskLevel:
        if score >= self._bands.critical:
            return RiskLevel.CRITICAL
        if score >= self._bands.high:
            return RiskLevel.HIGH
        if score >= self._bands.medium:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def score(self, snapshot: ClinicalSnapshot) -> RiskAssessment:
        signals = self.normalize(snapshot)
        weights = self._weights.as_dict()
        contributions = {name: weights[name] * signals[name] for name in SIGNAL_NAMES}
        total = _clip(sum(contributions.values()))

        notable = [name for name in SIGNAL_NAMES if signals[name] >= self._notable_threshold]
        notable.sort(key=lambda name: contributions[name], reverse=True)

        return RiskAssessment(
            patient_id=snapshot.patient_id,
            risk_score=round(total, 6),
            risk_level=self.level_for(total),
            risk_factors=tuple(notable),
            signals=signals,
            contributions=contributions,
            as_of=snapshot.as_of,
        )
