"""Tests for prompt building."""
import json
from dataclasses import replace

import pytest
from pydantic import ValidationError

from lexireview.models.review_models import UserPrefs
from lexireview.services.prompt_builder import (
    DEFAULT_TEMPLATE,
    PROMPT_VERSION,
    build_prompt,
    create_prompt_params,
    get_default_prompt_template,
    get_prompt_hash,
    render_template,
    validate_prompt_params,
)


@pytest.fixture
def params_dict() -> dict:
    """Raw generation parameters as a caller would send them."""
    return {
        "targets": ["happy", "success"],
        "profile": {
            "level_cefr": "B1",
            "difficulty_bias": 0.0,
            "allow_incidental": True,
            "unknown_budget": 2,
            "style": "neutral",
        },
        "constraints": {"sentence_length_range": [12, 22], "max_targets_per_sentence": 4},
    }


def test_build_prompt_is_deterministic(params_dict: dict) -> None:
    """Test that identical params give byte-identical prompts."""
    assert build_prompt(params_dict) == build_prompt(json.loads(json.dumps(params_dict)))


def test_build_prompt_changes_with_any_field(params_dict: dict) -> None:
    """Test that changing a single field changes the prompt."""
    baseline = build_prompt(params_dict)

    params_dict["profile"]["style"] = "news"
    assert build_prompt(params_dict) != baseline


def test_build_prompt_sections(params_dict: dict) -> None:
    """Test the section layout and injected values."""
    prompt = build_prompt(params_dict)

    assert prompt.startswith("# SYSTEM")
    assert prompt.index("# SYSTEM") < prompt.index("# DEVELOPER") < prompt.index("# USER")
    assert 'Targets: ["happy", "success"]' in prompt
    assert "Overall difficulty ~= B1" in prompt
    assert "between 12 and 22 whitespace-separated tokens" in prompt
    assert "ONLY if true is true" in prompt
    assert "{{" not in prompt
    assert "# EXAMPLES" not in prompt


def test_build_prompt_with_examples(params_dict: dict) -> None:
    """Test that the few-shot block is added on request."""
    prompt = build_prompt(params_dict, include_examples=True)

    assert "# EXAMPLES" in prompt
    assert prompt.index("# EXAMPLES") < prompt.index("# USER")


def test_targets_are_json_escaped(params_dict: dict) -> None:
    """Test that quotes in target words cannot break the structured values."""
    params_dict["targets"] = ['say "hi"', "success"]
    prompt = build_prompt(params_dict)

    assert json.dumps(['say "hi"', "success"]) in prompt


def test_substituted_values_are_not_rescanned(params_dict: dict) -> None:
    """Test that placeholders inside target words stay literal."""
    params_dict["targets"] = ["{{profile.style}}"]
    prompt = build_prompt(params_dict)

    assert '["{{profile.style}}"]' in prompt


def test_render_template() -> None:
    """Test plain and JSON placeholders."""
    context = {"a": {"flag": False, "words": ["x", "y"]}, "n": 3}

    assert render_template("{{a.flag}} {{ n }}", context) == "false 3"
    assert render_template("{{ a.words | json }}", context) == '["x", "y"]'
    assert render_template("{{a.words.1}}", context) == "y"


@pytest.mark.parametrize(
    "path, value",
    [
        (("targets",), []),
        (("targets",), [f"w{i}" for i in range(9)]),
        (("targets",), ["  "]),
        (("profile", "level_cefr"), "D1"),
        (("profile", "difficulty_bias"), 1.6),
        (("profile", "unknown_budget"), 4),
        (("profile", "style"), "poetry"),
        (("constraints", "sentence_length_range"), [10, 20]),
        (("constraints", "sentence_length_range"), [15, 12]),
        (("constraints", "max_targets_per_sentence"), 9),
        (("constraints", "max_targets_per_sentence"), 0),
    ],
)
def test_validate_prompt_params_rejects(params_dict: dict, path: tuple, value) -> None:
    """Test that every schema rule is enforced."""
    node = params_dict
    for key in path[:-1]:
        node = node[key]
    node[path[-1]] = value

    with pytest.raises(ValidationError):
        validate_prompt_params(params_dict)


def test_validate_prompt_params_accepts(params_dict: dict) -> None:
    """Test that valid params pass unchanged."""
    params = validate_prompt_params(params_dict)

    assert params.targets == ["happy", "success"]
    assert params.constraints.sentence_length_range == (12, 22)


def test_create_prompt_params_defaults() -> None:
    """Test that missing profile and constraints get defaults."""
    params = create_prompt_params(["happy"])

    assert params.profile.level_cefr == "B1"
    assert params.profile.unknown_budget == 2
    assert params.constraints.sentence_length_range == (12, 22)
    assert params.constraints.max_targets_per_sentence == 4


def test_create_prompt_params_from_prefs() -> None:
    """Test building params from stored preferences."""
    prefs = UserPrefs(level_cefr="C1", style="academic", allow_incidental=False)
    params = create_prompt_params(["happy"], prefs, {"sentence_length_range": (14, 30)})

    assert params.profile.level_cefr == "C1"
    assert params.profile.style == "academic"
    assert params.profile.allow_incidental is False
    assert params.constraints.sentence_length_range == (14, 30)


def test_prompt_hash() -> None:
    """Test that the template fingerprint is stable and revision-sensitive."""
    template = get_default_prompt_template()
    changed = replace(template, user=template.user + "\nBe brief.")

    assert get_prompt_hash(template) == get_prompt_hash(DEFAULT_TEMPLATE)
    assert get_prompt_hash(template) == PROMPT_VERSION
    assert len(PROMPT_VERSION) == 16
    assert get_prompt_hash(changed) != PROMPT_VERSION


def test_prompt_hash_ignores_params(params_dict: dict) -> None:
    """Test that the fingerprint depends on the template, not the filled prompt."""
    before = get_prompt_hash(DEFAULT_TEMPLATE)
    build_prompt(params_dict)
    assert get_prompt_hash(DEFAULT_TEMPLATE) == before
