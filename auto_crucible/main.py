import argparse
import asyncio
import json
import sys

import structlog
from prometheus_client import start_http_server

from auto_crucible.config.settings import Settings
from auto_crucible.engine import CrucibleEngine
from auto_crucible.exceptions import ConfigurationError
from auto_crucible.logging_setup import init_from_settings
from auto_crucible.models import Candidate, Mode, Request

logger = structlog.get_logger()


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="auto-crucible", description="Adaptive triage + validation engine")
    sub = p.add_subparsers(dest="command", required=True)

    t = sub.add_parser("triage", help="Triage and, if warranted, validate TEXT")
    t.add_argument("text", help="Request text")
    t.add_argument("--mode", choices=[m.value for m in Mode], default=None,
                   help="Operating mode (defaults to CRUCIBLE_DEFAULT_MODE)")
    t.add_argument("--tag", action="append", default=[], help="Declared tag; repeatable")

    s = sub.add_parser("score", help="Score TEXT as a candidate on every dimension")
    s.add_argument("text", help="Candidate content")
    s.add_argument("--requirement", action="append", default=[], help="Required term; repeatable")

    sub.add_parser("calibration", help="Print the current calibration state")
    return p


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def main(argv=None):
    args = _build_parser().parse_args(argv)

    try:
        settings = Settings()  # instantiation triggers validators
        init_from_settings(settings)
        engine = CrucibleEngine(settings)
    except ConfigurationError as e:
        sys.stderr.write(f"\nConfiguration error: {e}\n")
        sys.exit(2)
    except ValueError as e:
        sys.stderr.write(f"\nInvalid settings: {e}\n")
        sys.exit(2)

    if settings.PROMETHEUS_PORT:
        start_http_server(settings.PROMETHEUS_PORT)
        logger.info("prometheus_started", port=settings.PROMETHEUS_PORT)

    if args.command == "triage":
        request = Request(payload=args.text, declared_context={"tags": args.tag} if args.tag else None)
        try:
            result = asyncio.run(engine.evaluate(request, mode=args.mode))
        except KeyboardInterrupt:
            sys.stderr.write("\nInterrupted by user.\n")
            sys.exit(1)
        _emit(result.to_dict())
    elif args.command == "score":
        context = {"requirements": args.requirement}
        scores = engine.dimension_scorer.score(Candidate(content=args.text), context)
        _emit({name: score.model_dump() for name, score in scores.items()})
    elif args.command == "calibration":
        _emit(engine.calibration_snapshot().model_dump(mode="json"))


if __name__ == "__main__":
    main()
