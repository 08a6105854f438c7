"""Tests for generator output parsing and validation."""
import json

import pytest

from lexireview.models.generation_models import GenerateItemsOutput
from lexireview.services.response_validator import (
    check_budget,
    format_parse_errors,
    parse_generate_items,
    validate_generated_items,
    validate_target_positions,
)

TEXT = "I feel happy when I achieve success."


def make_item(
    text: str = TEXT,
    targets: list = None,
    predicted_cefr: str = "B1",
    new_terms: list = None,
    sid: str = "s1",
) -> dict:
    """Build a generated item as the generator would return it."""
    if targets is None:
        targets = [
            {"word": "happy", "begin": 7, "end": 11},
            {"word": "success", "begin": 28, "end": 34},
        ]
    if new_terms is None:
        new_terms = [{"surface": "achieve", "cefr": "B1", "gloss": "to succeed in doing"}]
    return {
        "sid": sid,
        "text": text,
        "targets": targets,
        "self_eval": {
            "predicted_cefr": predicted_cefr,
            "estimated_new_terms_count": len(new_terms),
            "new_terms": new_terms,
        },
    }


def test_parse_valid_output() -> None:
    """Test parsing a well-formed response."""
    result = parse_generate_items(json.dumps({"items": [make_item()]}))

    assert result.success
    assert result.errors == []
    assert result.validation_errors == []
    assert result.data.items[0].targets[1].word == "success"


def test_parse_invalid_json() -> None:
    """Test that broken JSON yields exactly one parse error."""
    result = parse_generate_items("{ invalid json")

    assert not result.success
    assert len(result.errors) == 1
    assert result.errors[0].message == "JSON parse failed"
    assert result.errors[0].details
    assert result.validation_errors == []


@pytest.mark.parametrize("raw", [None, "", "   "])
def test_parse_empty_output(raw) -> None:
    """Test that empty responses are parse failures."""
    result = parse_generate_items(raw)

    assert not result.success
    assert result.errors[0].message == "JSON parse failed"


def test_parse_code_fenced_output() -> None:
    """Test that markdown code fences around the JSON are tolerated."""
    raw = "```json\n" + json.dumps({"items": [make_item()]}) + "\n```"
    assert parse_generate_items(raw).success


def test_parse_json_with_surrounding_text() -> None:
    """Test extraction of a JSON object from chatty output."""
    raw = "Here you go: " + json.dumps({"items": [make_item(text="Braces } inside { text, I feel happy")]}) + " Enjoy!"
    result = parse_generate_items(raw)

    assert result.success
    assert result.data.items[0].text.startswith("Braces }")


def test_parse_reports_every_schema_violation() -> None:
    """Test that all violated fields are reported, not just the first."""
    item = make_item(predicted_cefr="Z9")
    del item["sid"]
    item["targets"][0]["begin"] = -1
    result = parse_generate_items(json.dumps({"items": [item]}))

    assert not result.success
    assert result.errors[0].message == "Schema validation failed"
    fields = {error.field for error in result.validation_errors}
    assert "items.0.sid" in fields
    assert "items.0.self_eval.predicted_cefr" in fields
    assert "items.0.targets.0.begin" in fields


@pytest.mark.parametrize("count", [0, 4])
def test_parse_rejects_item_count(count: int) -> None:
    """Test that between one and three items are required."""
    result = parse_generate_items(json.dumps({"items": [make_item(sid=f"s{i}") for i in range(count)]}))

    assert not result.success
    assert [error.field for error in result.validation_errors] == ["items"]


def test_parse_rejects_non_object() -> None:
    """Test a JSON value that is not an object."""
    result = parse_generate_items("[1, 2, 3]")

    assert not result.success
    assert result.validation_errors[0].field == "(root)"


def test_format_parse_errors() -> None:
    """Test the log rendering of parse failures."""
    item = make_item()
    del item["text"]
    text = format_parse_errors(parse_generate_items(json.dumps({"items": [item]})))

    assert "Schema validation failed" in text
    assert "items.0.text" in text


def test_validate_correct_items() -> None:
    """Test that correct spans and full coverage validate."""
    report = validate_generated_items([make_item()], ["happy", "success"])

    assert report.is_valid
    assert report.coverage == 1.0
    assert report.errors == []
    assert report.missing_targets == []


def test_validate_accepts_parsed_models() -> None:
    """Test validation of schema models instead of plain dicts."""
    output = GenerateItemsOutput.model_validate({"items": [make_item()]})
    assert validate_generated_items(output.items, ["happy", "success"]).is_valid


def test_validate_short_sentence_is_a_warning() -> None:
    """Test that a short sentence is flagged without failing the batch."""
    report = validate_generated_items([make_item()], ["happy", "success"], (12, 22))

    assert report.is_valid
    assert len(report.warnings) == 1
    assert "short" in report.warnings[0]


def test_validate_long_sentence_is_an_error() -> None:
    """Test that sentences above the maximum length fail."""
    text = TEXT + " It was a long and tiring day but in the end it was all worth it for me."
    report = validate_generated_items([make_item(text=text)], ["happy", "success"], (12, 22))

    assert not report.is_valid
    assert "too long" in report.errors[0]


def test_validate_wrong_position() -> None:
    """Test that a span pointing at the wrong substring fails."""
    item = make_item(targets=[
        {"word": "happy", "begin": 0, "end": 4},
        {"word": "success", "begin": 28, "end": 34},
    ])
    report = validate_generated_items([item], ["happy", "success"])

    assert not report.is_valid
    assert len(report.errors) == 1
    assert "position" in report.errors[0]
    assert "happy" in report.errors[0]


def test_validate_position_outside_text() -> None:
    """Test that a span beyond the text fails."""
    item = make_item(targets=[
        {"word": "happy", "begin": 7, "end": 11},
        {"word": "success", "begin": 30, "end": 36},
    ])
    report = validate_generated_items([item], ["happy", "success"])

    assert not report.is_valid
    assert "outside the text" in report.errors[0]


def test_validate_missing_target() -> None:
    """Test that missing target words are listed individually."""
    report = validate_generated_items([make_item()], ["happy", "success", "courage", "wisdom"])

    assert not report.is_valid
    assert report.coverage == 0.5
    assert report.missing_targets == ["courage", "wisdom"]
    assert sum("missing target word" in error for error in report.errors) == 2


def test_validate_coverage_across_items() -> None:
    """Test that coverage is computed over all items together."""
    first = make_item(text="Everyone in the room was happy", targets=[{"word": "happy", "begin": 25, "end": 29}])
    second = make_item(text="Her success surprised nobody", targets=[{"word": "success", "begin": 4, "end": 10}],
                       sid="s2")
    report = validate_generated_items([first, second], ["Happy", "SUCCESS"])

    assert report.is_valid
    assert report.coverage == 1.0


def test_validate_self_eval_mismatch() -> None:
    """Test that a new-term count disagreeing with the list fails."""
    item = make_item()
    item["self_eval"]["estimated_new_terms_count"] = 3
    report = validate_generated_items([item], ["happy", "success"])

    assert not report.is_valid
    assert "new_terms count mismatch" in report.errors[0]


def test_validate_invalid_predicted_cefr() -> None:
    """Test that an unknown predicted level fails."""
    report = validate_generated_items([make_item(predicted_cefr="X1")], ["happy", "success"])

    assert not report.is_valid
    assert "predicted_cefr" in report.errors[0]


def test_validate_no_items() -> None:
    """Test that an empty batch fails."""
    report = validate_generated_items([], ["happy"])

    assert not report.is_valid
    assert report.coverage == 0.0


def test_validate_target_positions() -> None:
    """Test the standalone span check."""
    assert validate_target_positions(TEXT, [{"word": "happy", "begin": 7, "end": 11}]) == []
    assert validate_target_positions(TEXT, [{"word": "HAPPY", "begin": 6, "end": 12}]) == []
    errors = validate_target_positions(TEXT, [{"word": "happy", "begin": 12, "end": 7}])
    assert len(errors) == 1


def test_check_budget() -> None:
    """Test the advisory budget check."""
    items = [make_item(), make_item(sid="s2", new_terms=[])]

    within = check_budget(items, 1)
    assert within.is_within_budget
    assert within.estimated_count == 1
    assert within.confidence == "medium"

    assert not check_budget(items, 0).is_within_budget


def test_check_budget_accepts_output_model() -> None:
    """Test the budget check on a parsed output."""
    output = GenerateItemsOutput.model_validate({"items": [make_item(), make_item(sid="s2")]})
    assert check_budget(output, 2).estimated_count == 2


def test_parse_deeply_nested_json() -> None:
    """Test that nesting beyond the recursion limit is a parse failure."""
    result = parse_generate_items("[" * 100000 + "]" * 100000)

    assert not result.success
    assert len(result.errors) == 1
    assert result.errors[0].message == "JSON parse failed"
    assert result.validation_errors == []
