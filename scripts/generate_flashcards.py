#!/usr/bin/env python3
"""
Generate flashcard proposals from a text file through the LLM gateway.

Reads gateway settings from LLM_GATEWAY_* environment variables (or .env) and
prints the proposals as JSON. ``--mock`` runs the local splitter instead of
calling the provider, so no API key is needed.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import Optional
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from shared.config import get_gateway_settings  # noqa: E402
from shared.errors import GatewayError  # noqa: E402
from shared.logging import configure_logging  # noqa: E402
from shared.metrics import MetricsCollector, get_metrics_collector  # noqa: E402
from service_llm_gateway.app.adapters.openrouter_client import create_gateway_client  # noqa: E402
from service_llm_gateway.app.generation.flashcards import generate_flashcards_from_text  # noqa: E402


async def generate(
    *,
    source_text: str,
    model: Optional[str],
    user_id: Optional[str],
    mock: bool,
    preset: Optional[str],
    metrics: Optional[MetricsCollector] = None,
) -> dict:
    """Run one generation and return a JSON-serializable summary."""
    client = None
    if not mock:
        settings = get_gateway_settings()
        if preset:
            settings = settings.model_copy(update={"rate_limit_preset": preset})
        client = create_gateway_client(settings, metrics=metrics)

    result = await generate_flashcards_from_text(
        client,
        source_text,
        model=model,
        user_id=user_id,
        mock=mock,
    )

    return {
        "model": result.model,
        "source_text_hash": result.source_text_hash,
        "generation_duration_ms": result.generation_duration_ms,
        "proposals": [proposal.model_dump() for proposal in result.proposals],
    }


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate flashcard proposals from source text.")
    parser.add_argument("source", type=Path, help="Path to a UTF-8 text file (1000-10000 characters)")
    parser.add_argument("--model", default=None, help="Provider model identifier (defaults to the configured model)")
    parser.add_argument("--user", default=None, help="User identifier (for observability)")
    parser.add_argument("--preset", choices=["conservative", "aggressive", "development"], default=None,
                        help="Rate limiter preset override")
    parser.add_argument("--mock", action="store_true", help="Do not call the provider; split the text locally")
    parser.add_argument("--log-level", default=os.getenv("LLM_GATEWAY_LOG_LEVEL", "info").lower(),
                        choices=["debug", "info", "warn", "warning", "error", "critical"], help="Log level")
    parser.add_argument("--metrics-port", type=int, default=None,
                        help="Expose Prometheus metrics on this port while the run is in progress")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    configure_logging("llm_gateway", log_level=args.log_level, json_output=False)

    metrics = get_metrics_collector(args.metrics_port) if args.metrics_port else None

    try:
        source_text = args.source.read_text(encoding="utf-8")
        summary = asyncio.run(
            generate(
                source_text=source_text,
                model=args.model,
                user_id=args.user,
                mock=args.mock,
                preset=args.preset,
                metrics=metrics,
            )
        )
    except KeyboardInterrupt:
        return 130
    except GatewayError as exc:
        print(f"[flashcards] {exc.code}: {exc.message}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"[flashcards] cannot read {args.source}: {exc}", file=sys.stderr)
        return 1

    if args.mock:
        print("[flashcards] MOCK RUN - provider was not called", file=sys.stderr)

    print(json.dumps(summary, indent=2, ensure_ascii=False))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2, ensure_ascii=False))

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
