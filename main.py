"""
CLI entry point for binflow.

Usage:
    python main.py validate [--config config/config.yaml]
    python main.py simulate --items 5000 --groups 4 [--config ...]
"""

import argparse
import json
import logging
import random
import sys
from pathlib import Path

from binflow.binning import (
    BinningConfig,
    BinningEngine,
    BinPolicy,
    BundleAttributesProcessor,
    validate_binning_config,
)
from binflow.config import get_settings
from binflow.exceptions import ConfigurationError
from binflow.flow import REL_FAILURE, REL_SUCCESS, FlowItem, ItemQueue, SessionFactory


def _load_settings(args):
    yaml_path = Path(args.config) if args.config else None
    settings = get_settings(yaml_path=yaml_path, _force_reload=True)
    logging.basicConfig(level=settings.logging.level, format=settings.logging.format)
    return settings


def cmd_validate(args):
    """Validate the binning section of the configuration."""
    settings = _load_settings(args)
    problems = validate_binning_config(BinningConfig.from_settings(settings.binning))
    if not problems:
        print("Binning configuration is valid")
        return
    for problem in problems:
        print(f"  - {problem}")
    sys.exit(1)


def cmd_simulate(args):
    """Feed a synthetic item stream through the engine."""
    settings = _load_settings(args)
    try:
        policy = BinPolicy.from_settings(settings.binning)
    except ConfigurationError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    rng = random.Random(args.seed)
    source = ItemQueue(
        FlowItem(
            size=rng.randint(args.min_item_size, args.max_item_size),
            attributes={"group": f"group-{rng.randrange(args.groups)}"},
        )
        for _ in range(args.items)
    )
    factory = SessionFactory(source)
    engine = BinningEngine(
        processor=BundleAttributesProcessor(),
        group_key=lambda item: item.attributes["group"],
        session_factory=factory,
        policy=policy,
        chunk_size=settings.binning.chunk_size,
    )

    print(f"Simulating {args.items} items across {args.groups} groups...\n")
    activations = 0
    while activations < args.max_activations:
        result = engine.on_trigger()
        activations += 1
        if result.should_yield and source.size() == 0:
            break

    stats = engine.stats()
    stats["activations"] = activations
    stats["success_items"] = factory.sink(REL_SUCCESS).size()
    stats["failure_items"] = factory.sink(REL_FAILURE).size()
    stats["pending_items"] = source.size()
    print(json.dumps(stats, indent=2))

    engine.reset_state()


def main():
    parser = argparse.ArgumentParser(
        description="binflow - bounded multi-criteria item binning"
    )
    parser.add_argument("--config", default=None, help="Path to config YAML")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # validate
    subparsers.add_parser("validate", help="Validate binning configuration")

    # simulate
    p_sim = subparsers.add_parser("simulate", help="Run a synthetic stream")
    p_sim.add_argument("--items", type=int, default=1000)
    p_sim.add_argument("--groups", type=int, default=4)
    p_sim.add_argument("--min-item-size", type=int, default=1)
    p_sim.add_argument("--max-item-size", type=int, default=4096)
    p_sim.add_argument("--max-activations", type=int, default=10000)
    p_sim.add_argument("--seed", type=int, default=None)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "validate": cmd_validate,
        "simulate": cmd_simulate,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
