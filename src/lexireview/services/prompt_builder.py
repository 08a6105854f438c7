"""Prompt construction for review sentence generation."""
import hashlib
import json
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from lexireview.models.generation_models import PromptParams
from lexireview.models.review_models import UserPrefs

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"{{\s*([a-zA-Z_][\w.]*)\s*(?:\|\s*(json))?\s*}}")


@dataclass(frozen=True)
class PromptExample:
    input: str
    output: str


@dataclass(frozen=True)
class PromptTemplate:
    system: str
    developer: str
    user: str
    examples: List[PromptExample] = field(default_factory=list)


SYSTEM_TEMPLATE = """# SYSTEM
You are an English sentence generator for vocabulary review.
You must produce short, natural English text that includes ALL target words.
You must control difficulty by CEFR level and limit the number of potentially new terms.
Return STRICT JSON ONLY that matches the provided schema. DO NOT include any extra commentary."""

DEVELOPER_TEMPLATE = """# DEVELOPER
Goals:
- Include every target word in contextually correct usage.
- Overall difficulty ~= {{profile.level_cefr}} (consider difficulty bias {{profile.difficulty_bias}} as a soft signal).
- Allow incidental learning ONLY if {{profile.allow_incidental}} is true, with at most {{profile.unknown_budget}} potentially-new terms.
- Respect style: {{profile.style}}.
- Respect length: between {{constraints.sentence_length_range.0}} and {{constraints.sentence_length_range.1}} whitespace-separated tokens per sentence; at most {{constraints.max_targets_per_sentence}} targets per sentence.
- Avoid sensitive topics: politics, explicit sexual content, hate, self-harm, illegal acts, personal data.

Definitions:
- "Potentially-new terms" are words likely above {{profile.level_cefr}}. Self-estimate them and list them in new_terms[] with a brief gloss. estimated_new_terms_count must equal the length of new_terms.
- For each target occurrence, return its character span [begin, end] in the final `text`: begin is the index of the first character and end the index of the last character (inclusive, zero-based).

Output Contract:
Return JSON with 1 to 3 items:
{
  "items": [
    {
      "sid": "string",
      "text": "string",
      "targets": [{"word": "string", "begin": number, "end": number}],
      "self_eval": {
        "predicted_cefr": "A1|A2|B1|B2|C1|C2",
        "estimated_new_terms_count": number,
        "new_terms": [{"surface": "string", "cefr": "A1|A2|B1|B2|C1|C2", "gloss": "short plain-English meaning"}],
        "reason": "short justification"
      }
    }
  ]
}

Hard Requirements:
- Include ALL targets: {{targets | json}}.
- Use each target in a natural, common sense; avoid obscure idioms or rare collocations.
- Keep overall style: {{profile.style}}.

Style guide (not to copy verbatim):
- neutral: everyday neutral tone, clear and concise.
- news: informative, objective.
- dialog: simple two-person exchange, clearly marked turns.
- academic: formal but plain; avoid heavy jargon."""

USER_TEMPLATE = """# USER
Targets: {{targets | json}}

Profile:
{{profile | json}}

Constraints:
{{constraints | json}}

Return STRICT JSON ONLY."""

EXAMPLE_OUTPUT = {
    "items": [
        {
            "sid": "s1",
            "text": "I feel happy when I achieve success in my work after many long weeks of effort.",
            "targets": [
                {"word": "happy", "begin": 7, "end": 11},
                {"word": "success", "begin": 28, "end": 34},
            ],
            "self_eval": {
                "predicted_cefr": "B1",
                "estimated_new_terms_count": 1,
                "new_terms": [
                    {"surface": "achieve", "cefr": "B1", "gloss": "to succeed in doing something"}
                ],
                "reason": "Natural sentence with both targets at B1 level",
            },
        }
    ]
}

DEFAULT_TEMPLATE = PromptTemplate(
    system=SYSTEM_TEMPLATE,
    developer=DEVELOPER_TEMPLATE,
    user=USER_TEMPLATE,
    examples=[
        PromptExample(
            input=(
                'Targets: ["happy", "success"]\n'
                'Profile: {"level_cefr": "B1", "difficulty_bias": 0.0, "allow_incidental": true, '
                '"unknown_budget": 2, "style": "neutral"}\n'
                'Constraints: {"sentence_length_range": [12, 22], "max_targets_per_sentence": 4}'
            ),
            output=json.dumps(EXAMPLE_OUTPUT, indent=2),
        )
    ],
)


def get_default_prompt_template() -> PromptTemplate:
    return DEFAULT_TEMPLATE


def get_prompt_hash(template: PromptTemplate) -> str:
    """Stable fingerprint of a template, used to tag outputs with the prompt revision."""
    content = json.dumps(asdict(template), sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


PROMPT_VERSION = get_prompt_hash(DEFAULT_TEMPLATE)


def validate_prompt_params(params: Union[PromptParams, Mapping[str, Any]]) -> PromptParams:
    """Check params against the schema. Raises pydantic.ValidationError."""
    if isinstance(params, PromptParams):
        return PromptParams.model_validate(params.model_dump())
    return PromptParams.model_validate(params)


def create_prompt_params(
    targets: Sequence[str],
    profile: Union[UserPrefs, Mapping[str, Any], None] = None,
    constraints: Optional[Mapping[str, Any]] = None,
) -> PromptParams:
    """Fill in defaults for anything the caller leaves out, then validate."""
    if isinstance(profile, UserPrefs):
        profile = profile.to_dict()
    merged_profile = {
        "level_cefr": "B1",
        "difficulty_bias": 0.0,
        "allow_incidental": True,
        "unknown_budget": 2,
        "style": "neutral",
        **(profile or {}),
    }
    return validate_prompt_params(
        {"targets": list(targets), "profile": merged_profile, "constraints": dict(constraints or {})}
    )


def _render_value(value: Any, as_json: bool) -> str:
    if as_json or not isinstance(value, (str, int, float, bool)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _lookup(context: Dict[str, Any], dotted: str) -> Any:
    value: Any = context
    for part in dotted.split("."):
        if isinstance(value, (list, tuple)) and part.isdigit():
            value = value[int(part)]
        elif isinstance(value, dict):
            value = value[part]
        else:
            raise KeyError(dotted)
    return value


def render_template(text: str, context: Dict[str, Any]) -> str:
    """Substitute every ``{{ name }}`` / ``{{ name | json }}`` placeholder in one pass.

    Substituted values are never rescanned, so target words that happen to
    contain braces cannot inject placeholders.
    """
    def substitute(match: "re.Match[str]") -> str:
        return _render_value(_lookup(context, match.group(1)), match.group(2) == "json")

    return PLACEHOLDER_RE.sub(substitute, text)


def _render_examples(examples: Sequence[PromptExample]) -> str:
    blocks = ["# EXAMPLES"]
    for example in examples:
        blocks.append(f"Input:\n{example.input}\n\nOutput:\n{example.output}")
    return "\n\n".join(blocks)


def build_prompt(
    params: Union[PromptParams, Mapping[str, Any]],
    template: PromptTemplate = DEFAULT_TEMPLATE,
    include_examples: bool = False,
) -> str:
    """Build the full system/developer/user prompt. Identical params give identical bytes."""
    params = validate_prompt_params(params)
    context = params.model_dump(mode="json")
    sections = [template.system, template.developer]
    if include_examples and template.examples:
        sections.append(_render_examples(template.examples))
    sections.append(template.user)
    prompt = render_template("\n\n".join(sections), context)
    logger.debug(f"Built prompt of {len(prompt)} characters for targets {params.targets}")
    return prompt
