"""Tests for configuration settings."""
import pytest

from lexireview.config import (
    DEFAULT_API_URL,
    DifficultySettings,
    LLMSettings,
    ReviewSettings,
    Settings,
    settings,
)
from lexireview.models.review_models import UserPrefs


def test_settings_defaults() -> None:
    """Test default settings values."""
    assert settings.llm.api_url == DEFAULT_API_URL
    assert settings.llm.timeout == 30.0
    assert settings.llm.max_retries == 3
    assert settings.generation.base_delay == 1.0
    assert settings.generation.max_delay == 10.0
    assert settings.review.candidate_limit == 8
    assert settings.review.sentence_length_range == (12, 22)
    assert settings.review.default_prefs() == UserPrefs()
    assert settings.monitoring.enabled is False


def test_api_key_fallback(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that the aihubmix key is used when no generic key is set."""
    monkeypatch.delenv("LLM_API_KEY", raising=False)
    monkeypatch.setenv("AIHUBMIX_API_KEY", "fallback-key")
    assert LLMSettings().api_key == "fallback-key"

    monkeypatch.setenv("LLM_API_KEY", "primary-key")
    assert LLMSettings().api_key == "primary-key"


def test_llm_settings_to_config() -> None:
    """Test the explicit configuration value handed to the core."""
    config = LLMSettings(api_key="key", model="test-model", timeout=12.5, max_retries=1).to_config()

    assert config.api_key == "key"
    assert config.model == "test-model"
    assert config.timeout == 12.5
    assert config.max_retries == 1


def test_validate_llm() -> None:
    """Test that missing generator settings are reported."""
    with pytest.raises(ValueError, match="api_key"):
        Settings(llm=LLMSettings(api_key="")).validate_llm()

    Settings(llm=LLMSettings(api_key="key")).validate_llm()


def test_difficulty_settings_to_params() -> None:
    """Test building controller parameters from settings."""
    params = DifficultySettings(alpha=0.5, bias_step=0.5).to_params()
    assert params.alpha == 0.5
    assert params.bias_step == 0.5

    with pytest.raises(ValueError):
        DifficultySettings(alpha=1.5).to_params()


@pytest.mark.parametrize(
    "review",
    [
        ReviewSettings(candidate_limit=0),
        ReviewSettings(level_cefr="Z1"),
        ReviewSettings(style="poetry"),
        ReviewSettings(sentence_length_range=(8, 20)),
        ReviewSettings(sentence_length_range=(20, 14)),
        ReviewSettings(max_targets_per_sentence=9),
        ReviewSettings(unknown_budget=5),
    ],
)
def test_validate_rejects_review_settings(review: ReviewSettings) -> None:
    """Test that invalid review settings raise ValueError."""
    with pytest.raises(ValueError):
        Settings(review=review).validate()


def test_validate_rejects_difficulty_settings() -> None:
    """Test that invalid controller settings raise ValueError."""
    with pytest.raises(ValueError, match="alpha"):
        Settings(difficulty=DifficultySettings(alpha=0)).validate()
