from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from scrape_pipeline.config_models import ScraperConfig, load_and_validate_config
from scrape_pipeline.core.assembler import assemble
from scrape_pipeline.core.connections import ConnectionRegistry
from scrape_pipeline.core.errors import PipelineError
from scrape_pipeline.core.models import PipelineResult, Record
from scrape_pipeline.core.registry import create_default_registry
from scrape_pipeline.utils.logging import get_logger, setup_logging

DEFAULT_CONNECTIONS_PATH = "configs/outputs.yaml"

log = get_logger("scrape_pipeline.main")


def load_records(path: str) -> List[Record]:
    """
    Load records from a JSON Lines file or a JSON file.

    A JSON file may hold an array of objects or an object with an "items" array.
    """
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        if p.suffix.lower() == ".jsonl":
            return [json.loads(line) for line in f if line.strip()]
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("items", [])
    if not isinstance(data, list):
        raise ValueError(f"Expected a list of records in {path}")
    return data


def load_connections(path: Optional[str]) -> ConnectionRegistry:
    """Load connection profiles; the default path is optional, an explicit one is not."""
    if path:
        return ConnectionRegistry.from_yaml(path)
    if Path(DEFAULT_CONNECTIONS_PATH).exists():
        return ConnectionRegistry.from_yaml(DEFAULT_CONNECTIONS_PATH)
    return ConnectionRegistry()


async def run_export(config: ScraperConfig, records: List[Record], connections: ConnectionRegistry) -> PipelineResult:
    """Assemble the configured outputs and push records through them."""
    pipeline = assemble(config, connections=connections)
    async with pipeline:
        result = await pipeline.process(records)
        await pipeline.flush()
    return result


def report(config: ScraperConfig, records: List[Record], result: PipelineResult) -> None:
    if records and not result.output_results:
        log.warning("No enabled outputs for '%s'; nothing was written", config.name)
    elif result.total_errors > 0:
        log.warning(
            "Export finished with errors: scraper=%s processed=%d errors=%d",
            config.name,
            result.total_processed,
            result.total_errors,
        )
    else:
        log.info("Export finished: scraper=%s processed=%d", config.name, result.total_processed)

    print("DONE:", json.dumps(result.as_dict(), ensure_ascii=False))


def cmd_run(args: argparse.Namespace) -> int:
    try:
        config = load_and_validate_config(args.config, args.configs_dir)
        connections = load_connections(args.connections)
        records = load_records(args.records)
    except (OSError, ValueError) as e:
        log.error("Cannot start export: %s", e)
        return 1

    log.info("Loaded %d records for '%s' from %s", len(records), config.name, args.records)
    try:
        result = asyncio.run(run_export(config, records, connections))
    except (PipelineError, OSError) as e:
        log.error("Export failed: %s", e)
        return 1

    report(config, records, result)
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        config = load_and_validate_config(args.config, args.configs_dir)
    except (OSError, ValueError) as e:
        print(f"✗ Configuration error: {e}")
        return 1

    registry = create_default_registry()
    unknown = [o.type for o in config.enabled_outputs() if o.type not in registry]
    if unknown:
        print(f"✗ Unknown output types: {', '.join(unknown)}")
        return 1

    print(f"✓ Configuration for '{config.name}' is valid")
    for output in config.outputs:
        state = "enabled" if output.enabled else "disabled"
        print(f"  - {output.type} ({state})")
    return 0


def cmd_outputs(args: argparse.Namespace) -> int:
    print("Available output types:")
    for name in sorted(create_default_registry().keys()):
        print(f"  - {name}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="scrape-pipeline", description="Write scraped records to configured outputs")
    parser.add_argument("--logging-config", default="configs/logging.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Write a records file through a scraper's outputs")
    run.add_argument("config", help="Scraper config (YAML or JSON)")
    run.add_argument("records", help="Records file (.jsonl or .json)")
    run.add_argument("--connections", default=None, help=f"Connection profiles (default: {DEFAULT_CONNECTIONS_PATH})")
    run.add_argument("--configs-dir", default=None, help="Directory of base configs for 'extends'")
    run.set_defaults(func=cmd_run)

    validate = sub.add_parser("validate", help="Validate a scraper config")
    validate.add_argument("config")
    validate.add_argument("--configs-dir", default=None)
    validate.set_defaults(func=cmd_validate)

    outputs = sub.add_parser("outputs", help="List available output types")
    outputs.set_defaults(func=cmd_outputs)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the scrape pipeline CLI."""
    args = build_parser().parse_args(argv)
    setup_logging(args.logging_config, level=logging.DEBUG if args.verbose else None)
    raise SystemExit(args.func(args))


if __name__ == "__main__":
    main(sys.argv[1:])
