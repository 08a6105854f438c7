"""Configuration settings for the review engine."""
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

from lexireview.models.review_models import CEFR_LEVELS, GENERATION_STYLES, UserPrefs
from lexireview.services.difficulty import EWMAParams, create_ewma_params
from lexireview.services.llm_client import LLMConfig, validate_llm_config

# Load environment variables from .env file
env_file = ".env.test" if os.getenv("ENV") == "test" else ".env"
load_dotenv(env_file)

DEFAULT_API_URL = "https://aihubmix.com/v1"
DEFAULT_MODEL = "gemini-2.5-flash-lite-preview-06-17"


def _getenv_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def get_api_key() -> str:
    """Get the generator API key, falling back to the aihubmix variable."""
    return os.getenv("LLM_API_KEY") or os.getenv("AIHUBMIX_API_KEY", "")


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = os.getenv("LOG_LEVEL", "INFO")
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    dir: Optional[str] = os.getenv("LOG_DIR", None)
    rotation: str = os.getenv("LOG_ROTATION", "midnight")
    interval: int = int(os.getenv("LOG_INTERVAL", "1"))
    backup_count: int = int(os.getenv("LOG_BACKUP_COUNT", "7"))


@dataclass
class LLMSettings:
    """Generator endpoint settings."""
    api_url: str = os.getenv("LLM_API_URL", DEFAULT_API_URL)
    api_key: str = field(default_factory=get_api_key)
    model: str = os.getenv("LLM_MODEL", DEFAULT_MODEL)
    timeout: float = float(os.getenv("LLM_TIMEOUT", "30"))
    max_retries: int = int(os.getenv("LLM_MAX_RETRIES", "3"))
    max_tokens: int = int(os.getenv("LLM_MAX_TOKENS", "1000"))
    temperature: float = float(os.getenv("LLM_TEMPERATURE", "0.7"))

    def to_config(self) -> LLMConfig:
        return LLMConfig(
            api_url=self.api_url,
            api_key=self.api_key,
            model=self.model,
            timeout=self.timeout,
            max_retries=self.max_retries,
        )


@dataclass
class GenerationSettings:
    """Retry backoff settings."""
    base_delay: float = float(os.getenv("GENERATION_BASE_DELAY", "1.0"))  # seconds
    max_delay: float = float(os.getenv("GENERATION_MAX_DELAY", "10.0"))  # seconds


@dataclass
class DifficultySettings:
    """Difficulty controller settings."""
    alpha: float = float(os.getenv("EWMA_ALPHA", "0.3"))
    high_threshold: float = float(os.getenv("EWMA_HIGH_THRESHOLD", "0.5"))
    low_threshold: float = float(os.getenv("EWMA_LOW_THRESHOLD", "0.5"))
    bias_step: float = float(os.getenv("BIAS_STEP", "0.25"))
    budget_step: int = int(os.getenv("BUDGET_STEP", "1"))

    def to_params(self) -> EWMAParams:
        return create_ewma_params(
            alpha=self.alpha,
            high_threshold=self.high_threshold,
            low_threshold=self.low_threshold,
            bias_step=self.bias_step,
            budget_step=self.budget_step,
        )


def get_sentence_length_range() -> Tuple[int, int]:
    """Get the sentence length range from environment variables."""
    return (
        int(os.getenv("SENTENCE_MIN_TOKENS", "12")),
        int(os.getenv("SENTENCE_MAX_TOKENS", "22")),
    )


@dataclass
class ReviewSettings:
    """Review session settings."""
    candidate_limit: int = int(os.getenv("CANDIDATE_LIMIT", "8"))
    not_due_cap: int = int(os.getenv("NOT_DUE_CAP", "2"))
    level_cefr: str = os.getenv("DEFAULT_LEVEL", "B1")
    difficulty_bias: float = float(os.getenv("DEFAULT_DIFFICULTY_BIAS", "0.0"))
    allow_incidental: bool = _getenv_bool("DEFAULT_ALLOW_INCIDENTAL", "true")
    unknown_budget: int = int(os.getenv("DEFAULT_UNKNOWN_BUDGET", "2"))
    style: str = os.getenv("DEFAULT_STYLE", "neutral")
    sentence_length_range: Tuple[int, int] = field(default_factory=get_sentence_length_range)
    max_targets_per_sentence: int = int(os.getenv("MAX_TARGETS_PER_SENTENCE", "4"))

    def default_prefs(self) -> UserPrefs:
        return UserPrefs(
            level_cefr=self.level_cefr,
            difficulty_bias=self.difficulty_bias,
            allow_incidental=self.allow_incidental,
            unknown_budget=self.unknown_budget,
            style=self.style,
        )


@dataclass
class MonitoringSettings:
    """Prometheus metrics settings."""
    enabled: bool = _getenv_bool("METRICS_ENABLED")
    port: int = int(os.getenv("METRICS_PORT", "9090"))


def get_logging_settings() -> LoggingSettings:
    """Get logging settings."""
    return LoggingSettings()


def get_llm_settings() -> LLMSettings:
    """Get generator settings."""
    return LLMSettings()


def get_generation_settings() -> GenerationSettings:
    """Get generation settings."""
    return GenerationSettings()


def get_difficulty_settings() -> DifficultySettings:
    """Get difficulty settings."""
    return DifficultySettings()


def get_review_settings() -> ReviewSettings:
    """Get review settings."""
    return ReviewSettings()


def get_monitoring_settings() -> MonitoringSettings:
    """Get monitoring settings."""
    return MonitoringSettings()


@dataclass
class Settings:
    """Main settings class that combines all configuration settings."""
    logging: LoggingSettings = field(default_factory=get_logging_settings)
    llm: LLMSettings = field(default_factory=get_llm_settings)
    generation: GenerationSettings = field(default_factory=get_generation_settings)
    difficulty: DifficultySettings = field(default_factory=get_difficulty_settings)
    review: ReviewSettings = field(default_factory=get_review_settings)
    monitoring: MonitoringSettings = field(default_factory=get_monitoring_settings)

    def validate(self) -> None:
        """Validate settings and raise ValueError if invalid.

        The generator connection is not checked here: it is only needed when
        generating and is validated by ``validate_llm``.
        """
        if self.generation.base_delay <= 0 or self.generation.max_delay < self.generation.base_delay:
            raise ValueError("GENERATION_BASE_DELAY must be positive and not above GENERATION_MAX_DELAY")

        # Raises ValueError itself
        self.difficulty.to_params()

        if self.review.candidate_limit < 1:
            raise ValueError("CANDIDATE_LIMIT must be positive")

        if self.review.not_due_cap < 0:
            raise ValueError("NOT_DUE_CAP cannot be negative")

        if self.review.level_cefr not in CEFR_LEVELS:
            raise ValueError(f"DEFAULT_LEVEL must be one of {', '.join(CEFR_LEVELS)}")

        if self.review.style not in GENERATION_STYLES:
            raise ValueError(f"DEFAULT_STYLE must be one of {', '.join(GENERATION_STYLES)}")

        low, high = self.review.sentence_length_range
        if low < 12 or high < low:
            raise ValueError("SENTENCE_MIN_TOKENS must be at least 12 and not above SENTENCE_MAX_TOKENS")

        if not 1 <= self.review.max_targets_per_sentence <= 8:
            raise ValueError("MAX_TARGETS_PER_SENTENCE must be between 1 and 8")

        if not 0 <= self.review.unknown_budget <= 3:
            raise ValueError("DEFAULT_UNKNOWN_BUDGET must be between 0 and 3")

    def validate_llm(self) -> None:
        """Raise ValueError if the generator connection settings are unusable."""
        errors = validate_llm_config(self.llm.to_config())
        if errors:
            raise ValueError(f"Invalid generator settings: {'; '.join(errors)}")


# Create global settings instance
settings = Settings()
settings.validate()
