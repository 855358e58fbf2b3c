"""Heuristic bot-likelihood score from interaction telemetry.

0 means human-like, 1 means bot-like. Each component needs a minimum number
of samples; an under-sampled component is left out of the blend entirely
rather than folded in as a neutral value.
"""

import math
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from behavior_analysis.telemetry import BehaviorSample, PointerSample
from config.constants import (ANGLE_VARIANCE_CAP, CLICK_MIN_SAMPLES,
                              CLICK_VARIANCE_SCALE_MS2, CLICK_WEIGHT,
                              CONFIDENCE_SAMPLE_SCALE, KEY_MIN_SAMPLES,
                              KEY_VARIANCE_SCALE_MS2, KEY_WEIGHT,
                              MOUSE_MIN_POSITIONS, MOUSE_WEIGHT, NEUTRAL_RISK,
                              STRAIGHT_ANGLE_EPSILON)
from errors import ErrorKind


class RiskComponents(BaseModel):
    model_config = ConfigDict(frozen=True)

    mouseMovement: float = NEUTRAL_RISK
    keyboardPattern: float = NEUTRAL_RISK
    interactionConsistency: float = NEUTRAL_RISK
    # Reported for diagnostics only; not part of the blend
    timing: float = NEUTRAL_RISK


class RiskScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: float = Field(NEUTRAL_RISK, ge=0.0, le=1.0)
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    components: RiskComponents = Field(default_factory=RiskComponents)
    # Set when the score is neutral for lack of data
    reason: Optional[ErrorKind] = None


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


def mouse_movement_score(positions: Sequence[PointerSample]) -> Optional[float]:
    """Straightness/regularity of the sampled pointer path.

    Bots tend to move in straight lines with constant heading, so a high
    share of near-zero turning angles and a low angle variance both push the
    score towards 1.

    Returns:
        The component score, or None with fewer than the minimum positions.
    """
    if len(positions) < MOUSE_MIN_POSITIONS:
        return None

    points = np.array([(p.x, p.y) for p in positions], dtype=float)
    segments = np.diff(points, axis=0)
    headings = np.arctan2(segments[:, 1], segments[:, 0])
    turns = np.abs(np.diff(headings))

    straight = (turns < STRAIGHT_ANGLE_EPSILON) | (turns > 2 * math.pi - STRAIGHT_ANGLE_EPSILON)
    straight_fraction = float(np.count_nonzero(straight)) / len(turns)
    variance = float(np.var(turns))

    return _clamp(0.7 * straight_fraction + 0.3 * (1.0 - min(variance, ANGLE_VARIANCE_CAP) / ANGLE_VARIANCE_CAP))


def interval_regularity(timestamps: Sequence[float], variance_scale: float) -> float:
    """1 for perfectly even intervals, falling to 0 as their variance grows."""
    intervals = np.diff(np.asarray(timestamps, dtype=float))
    variance = float(np.var(intervals)) if len(intervals) else 0.0
    return _clamp(1.0 - min(variance / variance_scale, 1.0))


def click_timing_score(clicks: Sequence[PointerSample]) -> Optional[float]:
    if len(clicks) < CLICK_MIN_SAMPLES:
        return None
    return interval_regularity([c.t for c in clicks], CLICK_VARIANCE_SCALE_MS2)


def keystroke_timing_score(timings: Sequence[float]) -> Optional[float]:
    if len(timings) < KEY_MIN_SAMPLES:
        return None
    return interval_regularity(timings, KEY_VARIANCE_SCALE_MS2)


def session_timing_score(elapsed_ms: float) -> float:
    """Coarse plausibility of the session duration (diagnostic only)."""
    if elapsed_ms < 1000:
        return 0.5
    if 3000 < elapsed_ms < 30000:
        return 0.2
    return 0.7


def blend_components(sample: BehaviorSample, prior: float = NEUTRAL_RISK) -> Tuple[float, RiskComponents]:
    """Sequentially blend the available components into ``prior``.

    ``score = score * (1 - w) + component * w`` for each component with
    enough data; skipped components leave the running score unchanged.
    """
    mouse = mouse_movement_score(sample.mouse_positions)
    clicks = click_timing_score(sample.click_pattern)
    keys = keystroke_timing_score(sample.key_press_timings)

    score = prior
    for component, weight in ((mouse, MOUSE_WEIGHT), (clicks, CLICK_WEIGHT), (keys, KEY_WEIGHT)):
        if component is not None:
            score = score * (1 - weight) + component * weight

    components = RiskComponents(
        mouseMovement=NEUTRAL_RISK if mouse is None else mouse,
        keyboardPattern=NEUTRAL_RISK if keys is None else keys,
        interactionConsistency=NEUTRAL_RISK if clicks is None else clicks,
        timing=session_timing_score(sample.elapsed_ms),
    )
    return _clamp(score), components


def compute_confidence(sample: BehaviorSample) -> float:
    return min(sample.total_samples / CONFIDENCE_SAMPLE_SCALE, 1.0)


def compute_risk_score(sample: BehaviorSample) -> RiskScore:
    """Score a telemetry snapshot. Pure: the sample is not modified.

    With no pointer activity at all the result is neutral (0.5) with zero
    confidence; absence of data is uninformative on the client.
    """
    if not sample.has_pointer_data:
        return RiskScore(value=NEUTRAL_RISK, confidence=0.0, components=RiskComponents(),
                         reason=ErrorKind.INSUFFICIENT_TELEMETRY)

    value, components = blend_components(sample)
    return RiskScore(value=value, confidence=compute_confidence(sample), components=components)


def describe(score: RiskScore) -> Dict[str, float]:
    """Flat view of a score for logging."""
    return {"value": round(score.value, 3), "confidence": round(score.confidence, 3),
            **{k: round(v, 3) for k, v in score.components.model_dump().items()}}
