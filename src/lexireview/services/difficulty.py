"""Adaptive difficulty control driven by learner feedback.

Feedback on generated sentences is turned into a numeric pressure signal and
smoothed with an exponentially weighted moving average (EWMA). When the
smoothed pressure crosses a threshold the profile's ``difficulty_bias`` moves
one step, and once the bias runs out of room the CEFR level moves one band.

The EWMA state is an explicit value: callers load it with the user's profile,
pass it in, and store whatever comes back. Nothing in this module raises on
bad input. Out-of-range values are clamped and the clamp is reported.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from lexireview.models.review_models import CEFR_LEVELS, DifficultyFeedback, UserPrefs

logger = logging.getLogger(__name__)

BIAS_MIN = -1.5
BIAS_MAX = 1.5
BUDGET_MIN = 0
BUDGET_MAX = 3
DEFAULT_LEVEL = "B1"

FEEDBACK_SIGNALS = {
    DifficultyFeedback.TOO_EASY.value: -1.0,
    DifficultyFeedback.OK.value: 0.0,
    DifficultyFeedback.TOO_HARD.value: 1.0,
}


@dataclass(frozen=True)
class EWMAParams:
    """Tuning of the difficulty controller."""
    alpha: float = 0.3
    high_threshold: float = 0.5
    low_threshold: float = 0.5  # magnitude; crossing means pressure <= -low_threshold
    bias_step: float = 0.25
    min_bias: float = BIAS_MIN
    max_bias: float = BIAS_MAX
    min_budget: int = BUDGET_MIN
    max_budget: int = BUDGET_MAX
    underestimate_ratio: float = 1.5
    overestimate_ratio: float = 0.5
    budget_step: int = 1


@dataclass(frozen=True)
class EWMAState:
    """Smoothed difficulty pressure of one user."""
    value: float = 0.0
    samples: int = 0

    def to_dict(self) -> Dict[str, float]:
        return {"value": self.value, "samples": self.samples}

    @classmethod
    def from_dict(cls, payload: Optional[Dict[str, float]]) -> "EWMAState":
        payload = payload or {}
        return cls(value=payload.get("value", 0.0), samples=payload.get("samples", 0))


@dataclass(frozen=True)
class AdjustmentResult:
    profile: UserPrefs
    ewma_state: EWMAState
    level_shift: int = 0
    bias_delta: float = 0.0
    clamped: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BudgetCalibrationResult:
    adjusted_budget: int
    accuracy: float
    clamped: List[str] = field(default_factory=list)


DEFAULT_EWMA_PARAMS = EWMAParams()


def get_default_ewma_params() -> EWMAParams:
    return EWMAParams()


def validate_ewma_params(params: EWMAParams) -> List[str]:
    """Return every problem with ``params``. An empty list means valid."""
    errors = []
    if not 0 < params.alpha < 1:
        errors.append(f"alpha must be strictly between 0 and 1, got {params.alpha}")
    if params.high_threshold < 0:
        errors.append(f"high_threshold must not be negative, got {params.high_threshold}")
    if params.low_threshold < 0:
        errors.append(f"low_threshold must not be negative, got {params.low_threshold}")
    if params.bias_step < 0:
        errors.append(f"bias_step must not be negative, got {params.bias_step}")
    if params.min_bias > params.max_bias:
        errors.append("min_bias cannot be greater than max_bias")
    if params.min_budget > params.max_budget:
        errors.append("min_budget cannot be greater than max_budget")
    if params.min_budget < BUDGET_MIN or params.max_budget > BUDGET_MAX:
        errors.append(f"budget bounds must stay within [{BUDGET_MIN}, {BUDGET_MAX}]")
    if params.overestimate_ratio > params.underestimate_ratio:
        errors.append("overestimate_ratio cannot be greater than underestimate_ratio")
    return errors


def create_ewma_params(**overrides) -> EWMAParams:
    """Build a parameter set, raising ValueError when it is not usable."""
    params = EWMAParams(**overrides)
    errors = validate_ewma_params(params)
    if errors:
        raise ValueError(f"Invalid EWMA parameters: {'; '.join(errors)}")
    return params


def calculate_ewma(current: float, new: float, alpha: float) -> float:
    return alpha * new + (1 - alpha) * current


def shift_level(level: str, delta: int) -> str:
    """Move ``level`` by ``delta`` CEFR bands, stopping at A1 and C2."""
    index = CEFR_LEVELS.index(level) if level in CEFR_LEVELS else CEFR_LEVELS.index(DEFAULT_LEVEL)
    index = max(0, min(len(CEFR_LEVELS) - 1, index + delta))
    return CEFR_LEVELS[index]


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _sanitize_profile(profile: UserPrefs, params: EWMAParams) -> Tuple[UserPrefs, List[str]]:
    """Bring every adaptive field of ``profile`` back into range."""
    clamped = []
    level = profile.level_cefr
    if level not in CEFR_LEVELS:
        clamped.append("level_cefr")
        level = DEFAULT_LEVEL

    bias = profile.difficulty_bias
    if not isinstance(bias, (int, float)) or math.isnan(bias):
        clamped.append("difficulty_bias")
        bias = 0.0
    elif not params.min_bias <= bias <= params.max_bias:
        clamped.append("difficulty_bias")
        bias = _clamp(bias, params.min_bias, params.max_bias)

    budget = profile.unknown_budget
    if not isinstance(budget, int) or not params.min_budget <= budget <= params.max_budget:
        clamped.append("unknown_budget")
        budget = int(_clamp(round(budget) if isinstance(budget, (int, float)) else params.min_budget,
                            params.min_budget, params.max_budget))

    return profile.with_changes(level_cefr=level, difficulty_bias=float(bias), unknown_budget=budget), clamped


def _sanitize_params(params: EWMAParams, clamped: List[str]) -> EWMAParams:
    if validate_ewma_params(params):
        clamped.append("params")
        return DEFAULT_EWMA_PARAMS
    return params


def adjust_level_and_budget(
    profile: UserPrefs,
    feedback: Union[DifficultyFeedback, str, None],
    ewma_state: Optional[EWMAState] = None,
    params: EWMAParams = DEFAULT_EWMA_PARAMS,
) -> AdjustmentResult:
    """Fold one feedback event into the profile.

    ``None`` feedback leaves everything untouched. ``unknown_budget`` is only
    clamped here; it moves through ``calibrate_budget_estimation``.
    """
    clamped: List[str] = []
    params = _sanitize_params(params, clamped)
    profile, profile_clamps = _sanitize_profile(profile, params)
    clamped.extend(profile_clamps)

    state = ewma_state or EWMAState()
    if not isinstance(state.value, (int, float)) or not math.isfinite(state.value):
        clamped.append("ewma_state")
        state = EWMAState(value=0.0, samples=state.samples or 0)

    if feedback is None:
        return AdjustmentResult(profile=profile, ewma_state=state, clamped=clamped)

    key = feedback.value if isinstance(feedback, DifficultyFeedback) else feedback
    if key not in FEEDBACK_SIGNALS:
        clamped.append("feedback")
        key = DifficultyFeedback.OK.value
    signal = FEEDBACK_SIGNALS[key]

    pressure = calculate_ewma(state.value, signal, params.alpha)
    samples = (state.samples or 0) + 1

    direction = 0
    if pressure >= params.high_threshold:
        direction = 1
    elif pressure <= -params.low_threshold:
        direction = -1

    bias = profile.difficulty_bias
    level = profile.level_cefr
    level_shift = 0
    if direction:
        target = bias + direction * params.bias_step
        if params.min_bias <= target <= params.max_bias:
            bias = target
        else:
            shifted = shift_level(level, direction)
            if shifted != level:
                level_shift = direction
                level = shifted
                bias = 0.0
            else:
                clamped.append("level_cefr")
                bias = _clamp(target, params.min_bias, params.max_bias)
        # the crossing has been acted on
        pressure = 0.0

    new_profile = profile.with_changes(level_cefr=level, difficulty_bias=bias)
    if direction:
        logger.info(
            f"Difficulty pressure crossed threshold ({direction:+d}): "
            f"bias {profile.difficulty_bias:.2f} -> {bias:.2f}, level {profile.level_cefr} -> {level}"
        )
    return AdjustmentResult(
        profile=new_profile,
        ewma_state=EWMAState(value=pressure, samples=samples),
        level_shift=level_shift,
        bias_delta=bias - profile.difficulty_bias,
        clamped=clamped,
    )


def calibrate_budget_estimation(
    estimated_new_terms: int,
    observed_new_terms: int,
    current_budget: int,
    params: EWMAParams = DEFAULT_EWMA_PARAMS,
) -> BudgetCalibrationResult:
    """Nudge the unknown-term budget by how well the generator predicted novelty.

    ``accuracy`` is observed / estimated. When the generator estimated zero
    new terms, any observed unknown word counts as an underestimate.
    """
    clamped: List[str] = []
    params = _sanitize_params(params, clamped)
    if not _is_number(estimated_new_terms) or estimated_new_terms < 0:
        clamped.append("estimated_new_terms")
        estimated_new_terms = 0
    if not _is_number(observed_new_terms) or observed_new_terms < 0:
        clamped.append("observed_new_terms")
        observed_new_terms = 0
    if not _is_number(current_budget):
        clamped.append("current_budget")
        current_budget = params.min_budget
    elif not params.min_budget <= current_budget <= params.max_budget:
        clamped.append("current_budget")
        current_budget = int(_clamp(current_budget, params.min_budget, params.max_budget))

    if estimated_new_terms > 0:
        accuracy = observed_new_terms / estimated_new_terms
    else:
        accuracy = 1.0 + observed_new_terms

    adjusted = current_budget
    if accuracy >= params.underestimate_ratio:
        adjusted = current_budget - params.budget_step
    elif accuracy <= params.overestimate_ratio:
        adjusted = current_budget + params.budget_step
    adjusted = int(_clamp(adjusted, params.min_budget, params.max_budget))

    if adjusted != current_budget:
        logger.info(
            f"Unknown-term budget {current_budget} -> {adjusted} "
            f"(estimated {estimated_new_terms}, observed {observed_new_terms})"
        )
    return BudgetCalibrationResult(adjusted_budget=adjusted, accuracy=accuracy, clamped=clamped)


def format_adjustment(result: AdjustmentResult) -> str:
    profile = result.profile
    if result.level_shift > 0:
        level_text = f"level raised to {profile.level_cefr}"
    elif result.level_shift < 0:
        level_text = f"level lowered to {profile.level_cefr}"
    else:
        level_text = f"level kept at {profile.level_cefr}"
    return (
        f"Difficulty bias {profile.difficulty_bias:+.2f} ({result.bias_delta:+.2f}), "
        f"{level_text}, pressure {result.ewma_state.value:.2f}"
    )


def format_calibration(result: BudgetCalibrationResult) -> str:
    if result.accuracy >= DEFAULT_EWMA_PARAMS.underestimate_ratio:
        verdict = "novelty underestimated"
    elif result.accuracy <= DEFAULT_EWMA_PARAMS.overestimate_ratio:
        verdict = "novelty overestimated"
    else:
        verdict = "estimate accurate"
    return f"Estimate accuracy {result.accuracy:.2f} ({verdict}), budget set to {result.adjusted_budget}"
