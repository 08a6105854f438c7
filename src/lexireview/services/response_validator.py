"""Parsing and validation of generator output.

Parsing turns raw text into a ``GenerateItemsOutput`` or a structured failure.
Validation then checks the business rules that a schema cannot express:
target coverage, span positions, sentence length and self-evaluation
consistency. Neither stage raises on bad generator output.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ValidationError

from lexireview.models.generation_models import (
    DEFAULT_SENTENCE_LENGTH_RANGE,
    GeneratedItem,
    GenerateItemsOutput,
)
from lexireview.models.review_models import CEFR_LEVELS

logger = logging.getLogger(__name__)

JSON_PARSE_FAILED = "JSON parse failed"
SCHEMA_VALIDATION_FAILED = "Schema validation failed"


@dataclass
class ParseError:
    message: str
    details: Optional[str] = None
    received: Optional[str] = None


@dataclass
class FieldError:
    field: str
    message: str
    value: Any = None


@dataclass
class ParseResult:
    success: bool
    data: Optional[GenerateItemsOutput] = None
    errors: List[ParseError] = field(default_factory=list)
    validation_errors: List[FieldError] = field(default_factory=list)


@dataclass
class ValidationReport:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    coverage: float = 0.0
    missing_targets: List[str] = field(default_factory=list)


@dataclass
class BudgetCheck:
    is_within_budget: bool
    estimated_count: int
    # self-reported by the generator, never independently verified
    confidence: str = "medium"


def _strip_code_fences(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        newline = text.find("\n")
        inner = text[newline + 1:] if newline != -1 else text[3:]
        end = inner.rfind("```")
        if end != -1:
            inner = inner[:end]
        return inner.strip()
    return text


def _extract_balanced_json(text: str) -> Optional[str]:
    """Return the first balanced JSON object in ``text``, ignoring braces inside strings."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escape = False
    for index in range(start, len(text)):
        char = text[index]
        if escape:
            escape = False
            continue
        if char == "\\" and in_string:
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None


def _loads(raw: str) -> Any:
    text = _strip_code_fences(raw)
    try:
        return json.loads(text)
    except json.JSONDecodeError as first_error:
        candidate = _extract_balanced_json(text)
        if candidate is None or candidate == text:
            raise first_error
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            raise first_error from None


def _preview(value: Any, limit: int = 100) -> str:
    text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
    return text if len(text) <= limit else text[:limit] + "..."


def parse_generate_items(raw: Optional[str]) -> ParseResult:
    """Decode raw generator text and check it against the output schema."""
    if raw is None:
        raw = ""
    try:
        payload = _loads(raw)
    except (ValueError, RecursionError) as exc:
        # deeply nested arrays exhaust the recursion limit while decoding
        logger.debug(f"Generator output is not JSON: {exc}")
        return ParseResult(
            success=False,
            errors=[ParseError(message=JSON_PARSE_FAILED, details=str(exc), received=_preview(raw))],
        )

    try:
        data = GenerateItemsOutput.model_validate(payload)
    except ValidationError as exc:
        field_errors = [
            FieldError(
                field=".".join(str(part) for part in error["loc"]) or "(root)",
                message=error["msg"],
                value=error.get("input"),
            )
            for error in exc.errors()
        ]
        logger.debug(f"Generator output failed schema validation with {len(field_errors)} errors")
        return ParseResult(
            success=False,
            errors=[ParseError(
                message=SCHEMA_VALIDATION_FAILED,
                details=f"{len(field_errors)} field(s) invalid",
                received=_preview(payload),
            )],
            validation_errors=field_errors,
        )

    return ParseResult(success=True, data=data)


def format_parse_errors(result: ParseResult) -> str:
    lines = []
    if result.errors:
        lines.append("Parse errors:")
        for error in result.errors:
            lines.append(f"  - {error.message}")
            if error.details:
                lines.append(f"    details: {error.details}")
    if result.validation_errors:
        lines.append("Validation errors:")
        for error in result.validation_errors:
            lines.append(f"  - {error.field}: {error.message}")
    return "\n".join(lines)


ItemLike = Union[GeneratedItem, Mapping[str, Any]]


def _as_dict(item: ItemLike) -> Dict[str, Any]:
    if isinstance(item, BaseModel):
        return item.model_dump()
    return dict(item) if isinstance(item, Mapping) else {}


def _label(index: int, item: Dict[str, Any]) -> str:
    sid = item.get("sid")
    return f"item {index + 1} ({sid})" if sid else f"item {index + 1}"


def _span_error(text: str, span: Mapping[str, Any]) -> Optional[str]:
    """Explain what is wrong with one target span, or return None."""
    word = span.get("word")
    begin = span.get("begin")
    end = span.get("end")
    if not isinstance(word, str) or not word:
        return "target span has no word"
    if not isinstance(begin, int) or not isinstance(end, int) or not 0 <= begin <= end < len(text):
        return f"invalid target position for \"{word}\": [{begin}, {end}] is outside the text"
    located = text[begin:end + 1]
    if word.lower() not in located.lower():
        return f"wrong target position for \"{word}\": [{begin}, {end}] covers \"{located}\""
    return None


def validate_target_positions(text: str, spans: Sequence[Mapping[str, Any]]) -> List[str]:
    """Check that every span lies within ``text`` and covers its word."""
    errors = []
    for span in spans:
        if isinstance(span, BaseModel):
            span = span.model_dump()
        error = _span_error(text, span)
        if error:
            errors.append(error)
    return errors


def _check_self_eval(self_eval: Any) -> List[str]:
    if not isinstance(self_eval, Mapping):
        return ["self_eval is missing"]
    errors = []
    predicted = self_eval.get("predicted_cefr")
    if predicted not in CEFR_LEVELS:
        errors.append(f"invalid predicted_cefr: {predicted!r}")
    count = self_eval.get("estimated_new_terms_count")
    if not isinstance(count, int) or count < 0:
        errors.append(f"estimated_new_terms_count must be a non-negative integer, got {count!r}")
        return errors
    new_terms = self_eval.get("new_terms")
    if new_terms is not None and len(new_terms) != count:
        errors.append(
            f"new_terms count mismatch: estimated {count}, listed {len(new_terms)}"
        )
    return errors


def validate_generated_items(
    items: Sequence[ItemLike],
    target_words: Sequence[str],
    sentence_length_range: Tuple[int, int] = DEFAULT_SENTENCE_LENGTH_RANGE,
) -> ValidationReport:
    """Check generated items against the business rules.

    Sentences longer than the range are errors. Shorter ones only produce a
    warning, since a short but otherwise correct sentence is still usable.
    """
    errors: List[str] = []
    warnings: List[str] = []
    dicts = [_as_dict(item) for item in items]
    if not dicts:
        errors.append("no items were generated")

    combined = " ".join(str(item.get("text") or "") for item in dicts).lower()
    missing = [word for word in target_words if word.lower() not in combined]
    for word in missing:
        errors.append(f"missing target word: \"{word}\"")
    coverage = (len(target_words) - len(missing)) / len(target_words) if target_words else 1.0

    min_tokens, max_tokens = sentence_length_range
    for index, item in enumerate(dicts):
        label = _label(index, item)
        text = item.get("text")
        if not isinstance(text, str) or not text.strip():
            errors.append(f"{label}: text is empty")
            continue

        for span_error in validate_target_positions(text, item.get("targets") or []):
            errors.append(f"{label}: {span_error}")

        token_count = len(text.split())
        if token_count > max_tokens:
            errors.append(f"{label}: sentence too long ({token_count} tokens, max {max_tokens})")
        elif token_count < min_tokens:
            warnings.append(f"{label}: sentence is short ({token_count} tokens, min {min_tokens})")

        for eval_error in _check_self_eval(item.get("self_eval")):
            errors.append(f"{label}: {eval_error}")

    if errors:
        logger.debug(f"Generated items failed validation: {errors}")
    return ValidationReport(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        coverage=coverage,
        missing_targets=missing,
    )


def check_budget(
    output: Union[GenerateItemsOutput, Sequence[ItemLike]],
    unknown_budget: int,
) -> BudgetCheck:
    """Compare the self-reported count of new terms with the user's budget."""
    items = output.items if isinstance(output, GenerateItemsOutput) else output
    estimated = 0
    for item in items:
        self_eval = _as_dict(item).get("self_eval") or {}
        count = self_eval.get("estimated_new_terms_count") or 0
        estimated += count if isinstance(count, int) and count > 0 else 0
    return BudgetCheck(is_within_budget=estimated <= unknown_budget, estimated_count=estimated)
