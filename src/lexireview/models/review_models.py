"""Models for per-word review state and per-user review preferences."""
from dataclasses import dataclass, asdict, replace
from enum import Enum
from typing import Any, Dict, Optional


class Rating(str, Enum):
    """How the user rated a word during review."""
    AGAIN = "again"
    HARD = "hard"
    GOOD = "good"
    EASY = "easy"
    UNKNOWN = "unknown"  # User did not know the word at all


class DifficultyFeedback(str, Enum):
    """How the user felt about the difficulty of a generated sentence."""
    TOO_EASY = "too_easy"
    OK = "ok"
    TOO_HARD = "too_hard"


class CEFRLevel(str, Enum):
    """Common European Framework of Reference levels, easiest first."""
    A1 = "A1"
    A2 = "A2"
    B1 = "B1"
    B2 = "B2"
    C1 = "C1"
    C2 = "C2"


class GenerationStyle(str, Enum):
    """Register of the generated sentences."""
    NEUTRAL = "neutral"
    NEWS = "news"
    DIALOG = "dialog"
    ACADEMIC = "academic"


CEFR_LEVELS = [level.value for level in CEFRLevel]
GENERATION_STYLES = [style.value for style in GenerationStyle]


@dataclass(frozen=True)
class WordState:
    """Review state of a single word for a single user.

    Timestamps are ISO-8601 strings, as they are stored by the persistence
    layer. A state without ``next_due_at`` is a new word.
    """
    familiarity: int = 0
    difficulty: float = 2.5
    successes: int = 0
    lapses: int = 0
    last_seen_at: Optional[str] = None
    next_due_at: Optional[str] = None

    @property
    def is_new(self) -> bool:
        return not self.next_due_at

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "WordState":
        """Build a state from a stored row, treating missing counters as zero."""
        difficulty = payload.get("difficulty")
        return cls(
            familiarity=payload.get("familiarity") or 0,
            difficulty=2.5 if difficulty is None else difficulty,
            successes=payload.get("successes") or 0,
            lapses=payload.get("lapses") or 0,
            last_seen_at=payload.get("last_seen_at"),
            next_due_at=payload.get("next_due_at"),
        )


@dataclass(frozen=True)
class UserPrefs:
    """Adaptive generation parameters of a user."""
    level_cefr: str = CEFRLevel.B1.value
    difficulty_bias: float = 0.0
    allow_incidental: bool = True
    unknown_budget: int = 2
    style: str = GenerationStyle.NEUTRAL.value

    def with_changes(self, **changes: Any) -> "UserPrefs":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "UserPrefs":
        defaults = cls()
        return cls(
            level_cefr=payload.get("level_cefr", defaults.level_cefr),
            difficulty_bias=payload.get("difficulty_bias", defaults.difficulty_bias),
            allow_incidental=payload.get("allow_incidental", defaults.allow_incidental),
            unknown_budget=payload.get("unknown_budget", defaults.unknown_budget),
            style=payload.get("style", defaults.style),
        )
