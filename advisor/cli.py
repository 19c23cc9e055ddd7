"""Run one advisory request from the command line.

    python -m advisor.cli "Analyze the SaaS market for small businesses in the US"
    python -m advisor.cli "..." --stream --context '{"budget": "50k"}'
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from .config import Config
from .errors import AdvisorError, ValidationError
from .models import EventStatus
from .orchestrator import Orchestrator
from .utils.logger import configure_logging

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="advisor",
        description="Multi-agent business advisory orchestrator",
    )
    parser.add_argument("message", help="Business request in natural language")
    parser.add_argument(
        "--context",
        default=None,
        help="Extra structured context as a JSON object",
    )
    parser.add_argument(
        "--config",
        default="config.json",
        help="Path to the JSON config file (default: config.json)",
    )
    parser.add_argument(
        "--stream",
        action="store_true",
        help="Print progress events as JSON lines instead of only the final answer",
    )
    return parser


def _print_error(error: AdvisorError):
    print(json.dumps(error.to_dict()), file=sys.stderr)


async def run(args: argparse.Namespace) -> int:
    try:
        context = json.loads(args.context) if args.context else None
    except json.JSONDecodeError as e:
        _print_error(ValidationError(f"--context is not valid JSON: {e}"))
        return EXIT_INVALID
    if context is not None and not isinstance(context, dict):
        _print_error(ValidationError("--context must be a JSON object"))
        return EXIT_INVALID

    config = Config.load(args.config)
    configure_logging(config.log_level)

    try:
        orchestrator = Orchestrator(config)
    except AdvisorError as e:
        _print_error(e)
        return EXIT_FAILED

    async with orchestrator:
        if args.stream:
            code = EXIT_OK
            async for event in orchestrator.stream(args.message, context):
                print(json.dumps(event.to_dict()), flush=True)
                if event.status == EventStatus.ERROR:
                    code = EXIT_INVALID if event.data.get("code") == ValidationError.code else EXIT_FAILED
            return code

        try:
            result = await orchestrator.process_request(args.message, context)
        except ValidationError as e:
            _print_error(e)
            return EXIT_INVALID
        except AdvisorError as e:
            _print_error(e)
            return EXIT_FAILED

    print(result.text)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
