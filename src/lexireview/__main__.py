"""Command line entry point: generate review sentences for target words."""
import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from lexireview.config import settings
from lexireview.logging_config import setup_logging
from lexireview.models.review_models import CEFR_LEVELS, GENERATION_STYLES
from lexireview.monitoring import start_monitoring
from lexireview.services.generation_service import GenerationResult, GenerationService, RetryPolicy
from lexireview.services.llm_client import CallOptions, OpenAICompatibleTransport
from lexireview.services.review_service import ReviewService

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lexireview", description="Vocabulary review sentence generator")
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate = subparsers.add_parser("generate", help="Generate review sentences for target words")
    generate.add_argument("words", nargs="+", metavar="WORD", help="Target words (at most 8)")
    generate.add_argument("--level", choices=CEFR_LEVELS, default=settings.review.level_cefr)
    generate.add_argument("--style", choices=GENERATION_STYLES, default=settings.review.style)
    generate.add_argument("--budget", type=int, default=settings.review.unknown_budget,
                          help="Number of unknown words allowed besides the targets (0-3)")
    generate.add_argument("--bias", type=float, default=settings.review.difficulty_bias)
    generate.add_argument("--retries", type=int, default=settings.llm.max_retries)
    generate.add_argument("--log-level", default=None)
    return parser


async def generate(args: argparse.Namespace) -> GenerationResult:
    """Run one generation call against the configured endpoint."""
    prefs = settings.review.default_prefs().with_changes(
        level_cefr=args.level,
        style=args.style,
        unknown_budget=args.budget,
        difficulty_bias=args.bias,
    )
    review_service = ReviewService(
        candidate_limit=settings.review.candidate_limit,
        not_due_cap=settings.review.not_due_cap,
        sentence_length_range=settings.review.sentence_length_range,
        max_targets_per_sentence=settings.review.max_targets_per_sentence,
        ewma_params=settings.difficulty.to_params(),
    )
    params = review_service.build_generation_params(args.words, prefs)

    config = settings.llm.to_config()
    async with OpenAICompatibleTransport(config) as transport:
        service = GenerationService(
            transport,
            config=config,
            retry_policy=RetryPolicy(
                max_retries=args.retries,
                base_delay=settings.generation.base_delay,
                max_delay=settings.generation.max_delay,
            ),
            call_options=CallOptions(
                max_tokens=settings.llm.max_tokens,
                temperature=settings.llm.temperature,
            ),
        )
        return await service.generate_items(params, max_retries=args.retries)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging("Starting lexireview ...", args.log_level)

    try:
        settings.validate_llm()
    except ValueError as e:
        logger.error(str(e))
        return 1

    if settings.monitoring.enabled:
        start_monitoring(settings.monitoring.port)
        logger.info(f"Metrics served on port {settings.monitoring.port}")

    try:
        result = asyncio.run(generate(args))
    except ValueError as e:
        # Raised while building params from command line values
        logger.error(f"Invalid request: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
        return 1

    if not result.success:
        logger.error(f"Generation failed ({result.error_type.value}): {result.error}")
        return 1

    output = {
        "items": [item.model_dump() for item in result.items],
        "retry_count": result.retry_count,
        "total_tokens": result.total_tokens,
        "prompt_version": result.metadata.prompt_version,
        "warnings": result.metadata.warnings,
    }
    print(json.dumps(output, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
