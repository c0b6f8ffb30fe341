# File: parkflow/main.py
"""
Command-line entry point for the Parking Session Engine

Subcommands:
1. fee     - price a stay from entry/exit times and a rules file
2. replay  - feed a JSON-lines command file through an engine
3. init-db - create the database tables (and optionally seed them)

Results are written to stdout as JSON; logs go to stderr and, when
configured, to a log file.
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from .application.dtos import FeeQueryDTO
from .infrastructure.config import Settings, load_settings, load_seed_data, read_yaml
from .infrastructure.factories import EngineFactory, apply_seed
from .infrastructure.repositories import RepositoryFactory


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Setup application logging configuration"""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    return logging.getLogger(__name__)


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, default=str, ensure_ascii=False))


def run_fee(args: argparse.Namespace, settings: Settings) -> int:
    query = {'entryAt': args.entry, 'exitAt': args.exit}
    if args.rules:
        query['rules'] = read_yaml(args.rules)
    if args.discounts:
        document = read_yaml(args.discounts)
        query['discounts'] = document.get('discounts', [])

    dto = FeeQueryDTO.model_validate(query)
    breakdown = EngineFactory.create_fee_service(settings).compute_fee(
        dto.entry_at,
        dto.exit_at,
        dto.rules.to_domain(),
        [rule.to_domain() for rule in dto.discounts],
    )
    _print_json(breakdown.to_dict())
    return 0


def run_replay(args: argparse.Namespace, settings: Settings) -> int:
    logger = logging.getLogger("replay")
    if args.in_memory:
        settings = settings.model_copy(update={'database_url': 'memory'})
    seed = load_seed_data(args.seed) if args.seed else None
    engine = EngineFactory.create_engine(settings, seed=seed, deliver_in_background=False)

    failures = 0
    try:
        with open(args.commands, 'r', encoding='utf-8') as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line or line.startswith('#'):
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning(f"Line {line_no} is not valid JSON: {e}")
                    result = {'success': False, 'error': f"invalid JSON: {e}"}
                else:
                    result = engine.processor.handle(message)
                if not result['success']:
                    failures += 1
                _print_json({'line': line_no, **result})
    finally:
        engine.close()

    logger.info(f"Replay finished with {failures} failed command(s)")
    return 1 if failures else 0


def run_init_db(args: argparse.Namespace, settings: Settings) -> int:
    uow_factory = RepositoryFactory.create_sqlalchemy_uow_factory(settings.database_url)
    if args.seed:
        apply_seed(uow_factory, load_seed_data(args.seed), ZoneInfo(settings.timezone))
    logging.getLogger("init-db").info(f"Database ready at {settings.database_url}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="parkflow",
        description="Parking session lifecycle and fee engine"
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML configuration file (settings section); PARKFLOW_* variables override it",
    )
    parser.add_argument("--log-level", default=None, help="Override the configured log level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    fee = subparsers.add_parser("fee", help="Compute a fee breakdown")
    fee.add_argument("--entry", required=True, help="Entry time (ISO 8601)")
    fee.add_argument("--exit", required=True, help="Exit time (ISO 8601)")
    fee.add_argument("--rules", default=None, help="Rate rules YAML (default tariff when omitted)")
    fee.add_argument("--discounts", default=None, help="YAML file with a 'discounts' list")
    fee.set_defaults(handler=run_fee)

    replay = subparsers.add_parser("replay", help="Run a JSON-lines command file")
    replay.add_argument("commands", help="File with one {type, data} command per line")
    replay.add_argument("--seed", default=None, help="Seed YAML with rate plans, discounts, memberships, barriers")
    replay.add_argument("--in-memory", action="store_true", help="Use an in-memory store instead of the database")
    replay.set_defaults(handler=run_replay)

    init_db = subparsers.add_parser("init-db", help="Create database tables")
    init_db.add_argument("--seed", default=None, help="Seed YAML to load after creating tables")
    init_db.set_defaults(handler=run_init_db)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)
    setup_logging(args.log_level or settings.log_level, settings.log_file)
    return args.handler(args, settings)


if __name__ == "__main__":
    sys.exit(main())
