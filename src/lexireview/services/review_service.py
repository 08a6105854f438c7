"""Service tying word scheduling, difficulty control and generation together.

The service holds no user data. Word states, preferences and EWMA state are
loaded by the caller, passed in, and the updated values handed back to be
stored. Writes for one word must be serialized by the caller.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from lexireview.models.generation_models import (
    DEFAULT_MAX_TARGETS_PER_SENTENCE,
    DEFAULT_SENTENCE_LENGTH_RANGE,
    MAX_TARGETS,
    GenerateItemsOutput,
    PromptParams,
)
from lexireview.models.review_models import DifficultyFeedback, Rating, UserPrefs, WordState
from lexireview.monitoring import level_shifts, reviews
from lexireview.services import scheduler
from lexireview.services.difficulty import (
    DEFAULT_EWMA_PARAMS,
    AdjustmentResult,
    BudgetCalibrationResult,
    EWMAParams,
    EWMAState,
    adjust_level_and_budget,
    calibrate_budget_estimation,
)
from lexireview.services.prompt_builder import create_prompt_params
from lexireview.services.response_validator import ItemLike, check_budget

logger = logging.getLogger(__name__)

# Days since last seen are divided by this when ranking words that are not yet due
FORGETTING_WEEK = 7


@dataclass(frozen=True)
class CandidateWord:
    word: str
    state: WordState
    priority: float
    is_due: bool


@dataclass(frozen=True)
class CandidateSelection:
    candidates: List[CandidateWord]
    # nothing was due, so every candidate is an early review
    backfill_mode: bool


@dataclass(frozen=True)
class ReviewOutcome:
    word_state: WordState
    interval_days: int
    prefs: UserPrefs
    ewma_state: EWMAState
    adjustment: Optional[AdjustmentResult] = None


@dataclass(frozen=True)
class ReviewCounts:
    today_count: int
    total_count: int


@dataclass(frozen=True)
class SessionCalibration:
    prefs: UserPrefs
    calibration: BudgetCalibrationResult
    estimated_new_terms: int
    observed_new_terms: int


class ReviewService:
    """Service for running review sessions."""

    def __init__(
        self,
        candidate_limit: int = MAX_TARGETS,
        not_due_cap: int = 2,
        sentence_length_range: Tuple[int, int] = DEFAULT_SENTENCE_LENGTH_RANGE,
        max_targets_per_sentence: int = DEFAULT_MAX_TARGETS_PER_SENTENCE,
        ewma_params: EWMAParams = DEFAULT_EWMA_PARAMS,
    ):
        """Initialize the service with session limits and controller tuning."""
        self.candidate_limit = candidate_limit
        self.not_due_cap = not_due_cap
        self.sentence_length_range = sentence_length_range
        self.max_targets_per_sentence = max_targets_per_sentence
        self.ewma_params = ewma_params

    def select_candidates(
        self,
        states: Mapping[str, Optional[WordState]],
        now: datetime,
        limit: Optional[int] = None,
        exclude: Iterable[str] = (),
    ) -> CandidateSelection:
        """Pick words to review: due words by priority, then a few early reviews.

        Early reviews are ranked by how likely the word is forgotten:
        ``(5 - familiarity) + days_since_last_seen / 7``.
        """
        limit = self.candidate_limit if limit is None else limit
        excluded = set(exclude)
        due: List[CandidateWord] = []
        not_due: List[Tuple[float, CandidateWord]] = []

        for word, state in states.items():
            if word in excluded:
                continue
            state = state or WordState()
            problems = scheduler.validate_state(state)
            if problems:
                logger.warning(f"Stored state of {word!r} is invalid: {'; '.join(problems)}")
            score = scheduler.priority(state, now)
            if scheduler.is_due_today(state, now):
                due.append(CandidateWord(word=word, state=state, priority=score, is_due=True))
            else:
                candidate = CandidateWord(word=word, state=state, priority=score, is_due=False)
                not_due.append((self._forgetting_score(state, now), candidate))

        due.sort(key=lambda candidate: candidate.priority, reverse=True)
        selected = due[:limit]

        remaining = min(self.not_due_cap, limit - len(selected))
        if remaining > 0:
            not_due.sort(key=lambda pair: pair[0], reverse=True)
            selected.extend(candidate for _, candidate in not_due[:remaining])

        logger.info(f"Selected {len(selected)} candidates ({len(due)} due, {len(not_due)} not due)")
        return CandidateSelection(candidates=selected, backfill_mode=not due and bool(selected))

    @staticmethod
    def _forgetting_score(state: WordState, now: datetime) -> float:
        last_seen = scheduler.parse_timestamp(state.last_seen_at)
        now = scheduler.parse_timestamp(now)
        days = max(0.0, (now - last_seen).total_seconds() / 86400) if last_seen else 999.0
        return (scheduler.FAMILIARITY_MAX - (state.familiarity or 0)) + days / FORGETTING_WEEK

    def build_generation_params(
        self,
        targets: Sequence[Union[str, CandidateWord]],
        prefs: UserPrefs,
    ) -> PromptParams:
        """Turn selected words and the user's preferences into generation params."""
        words = [target.word if isinstance(target, CandidateWord) else target for target in targets]
        return create_prompt_params(
            words[:MAX_TARGETS],
            prefs,
            {
                "sentence_length_range": self.sentence_length_range,
                "max_targets_per_sentence": self.max_targets_per_sentence,
            },
        )

    def submit_review(
        self,
        word_state: Optional[WordState],
        rating: Union[Rating, str],
        now: datetime,
        prefs: Optional[UserPrefs] = None,
        ewma_state: Optional[EWMAState] = None,
        feedback: Union[DifficultyFeedback, str, None] = None,
    ) -> ReviewOutcome:
        """Record one rating, and optional sentence feedback, for a word."""
        rating = Rating(rating)
        state = word_state if word_state is not None else scheduler.initialize(now)
        result = scheduler.update(state, rating, now)
        reviews.labels(rating.value).inc()

        prefs = prefs or UserPrefs()
        ewma_state = ewma_state or EWMAState()
        adjustment = None
        if feedback is not None:
            adjustment = adjust_level_and_budget(prefs, feedback, ewma_state, self.ewma_params)
            prefs, ewma_state = adjustment.profile, adjustment.ewma_state
            if adjustment.level_shift:
                level_shifts.labels("up" if adjustment.level_shift > 0 else "down").inc()
            if adjustment.clamped:
                logger.warning(f"Clamped while adjusting difficulty: {', '.join(adjustment.clamped)}")

        return ReviewOutcome(
            word_state=result.next,
            interval_days=result.interval_days,
            prefs=prefs,
            ewma_state=ewma_state,
            adjustment=adjustment,
        )

    def calibrate_from_session(
        self,
        output: Union[GenerateItemsOutput, Sequence[ItemLike]],
        ratings: Mapping[str, Union[Rating, str]],
        prefs: UserPrefs,
    ) -> SessionCalibration:
        """Compare the generator's novelty estimate with the words rated ``unknown``."""
        estimated = check_budget(output, prefs.unknown_budget).estimated_count
        observed = sum(1 for rating in ratings.values() if Rating(rating) is Rating.UNKNOWN)
        calibration = calibrate_budget_estimation(estimated, observed, prefs.unknown_budget, self.ewma_params)
        return SessionCalibration(
            prefs=prefs.with_changes(unknown_budget=calibration.adjusted_budget),
            calibration=calibration,
            estimated_new_terms=estimated,
            observed_new_terms=observed,
        )

    @staticmethod
    def count_reviews(states: Mapping[str, Optional[WordState]], now: datetime) -> ReviewCounts:
        today = sum(1 for state in states.values() if scheduler.is_due_today(state or WordState(), now))
        return ReviewCounts(today_count=today, total_count=len(states))

    @staticmethod
    def states_from_rows(rows: Iterable[Mapping]) -> Dict[str, WordState]:
        """Build the ``word -> state`` map from stored rows carrying a ``word`` key."""
        return {row["word"]: WordState.from_dict(row) for row in rows}
