"""Schemas for generation requests and generator output."""
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

CEFR = Literal["A1", "A2", "B1", "B2", "C1", "C2"]
Style = Literal["neutral", "news", "dialog", "academic"]

MIN_SENTENCE_TOKENS = 12
DEFAULT_SENTENCE_LENGTH_RANGE = (12, 22)
DEFAULT_MAX_TARGETS_PER_SENTENCE = 4
MAX_TARGETS = 8
MAX_ITEMS = 3


class TargetSpan(BaseModel):
    """Character span of a target word occurrence, ``end`` inclusive."""
    word: str = Field(min_length=1)
    begin: int = Field(ge=0)
    end: int = Field(ge=0)


class NewTerm(BaseModel):
    surface: str = Field(min_length=1)
    cefr: CEFR
    gloss: str


class SelfEvaluation(BaseModel):
    """The generator's own view of the difficulty of an item."""
    predicted_cefr: CEFR
    estimated_new_terms_count: int = Field(ge=0)
    new_terms: Optional[List[NewTerm]] = None
    reason: Optional[str] = None


class GeneratedItem(BaseModel):
    sid: str = Field(min_length=1)
    text: str = Field(min_length=1)
    targets: List[TargetSpan] = Field(min_length=1)
    self_eval: SelfEvaluation


class GenerateItemsOutput(BaseModel):
    items: List[GeneratedItem] = Field(min_length=1, max_length=MAX_ITEMS)


class PromptProfile(BaseModel):
    level_cefr: CEFR
    difficulty_bias: float = Field(default=0.0, ge=-1.5, le=1.5)
    allow_incidental: bool = True
    unknown_budget: int = Field(default=2, ge=0, le=3)
    style: Style = "neutral"


class PromptConstraints(BaseModel):
    sentence_length_range: Tuple[int, int] = DEFAULT_SENTENCE_LENGTH_RANGE
    max_targets_per_sentence: int = Field(
        default=DEFAULT_MAX_TARGETS_PER_SENTENCE, ge=1, le=MAX_TARGETS
    )

    @field_validator("sentence_length_range")
    @classmethod
    def _check_range(cls, value: Tuple[int, int]) -> Tuple[int, int]:
        low, high = value
        if low < MIN_SENTENCE_TOKENS:
            raise ValueError(f"minimum sentence length must be at least {MIN_SENTENCE_TOKENS}")
        if high < low:
            raise ValueError("maximum sentence length must not be below the minimum")
        return value


class PromptParams(BaseModel):
    """Everything a prompt is built from."""
    targets: List[str] = Field(min_length=1, max_length=MAX_TARGETS)
    profile: PromptProfile
    constraints: PromptConstraints = Field(default_factory=PromptConstraints)

    @field_validator("targets")
    @classmethod
    def _check_targets(cls, value: List[str]) -> List[str]:
        if any(not word.strip() for word in value):
            raise ValueError("target words must be non-empty")
        return value
