"""Command-line interface for cellrep."""

from __future__ import annotations

import argparse
import logging

from . import ingest, workflow
from .utils import load_config, setup_logging


def _run_ingest(config: dict) -> None:
    ingest.ingest_contigs(config)


def _run_cluster(config: dict) -> None:
    workflow.run_clustering(config)


def _run_permute(config: dict) -> None:
    tests = workflow.run_permutations(config)
    for name, result in tests.items():
        print(f"== {name} ==")
        print(result)


def _run_report(config: dict) -> None:
    result = workflow.run_report(config)
    logging.info("Report available at %s", result.report_path)


def _run_pipeline(config: dict, log_dir: str) -> None:
    workflow.run_pipeline(config, log_dir=log_dir)


def main() -> None:
    parser = argparse.ArgumentParser(description="cellrep command-line interface")
    parser.add_argument("command", choices=[
        "ingest",
        "cluster",
        "permute",
        "report",
        "pipeline",
    ])
    parser.add_argument("--config", default="config/cellrep.yaml", help="Config file path")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--log-dir", default="logs", help="Directory for the pipeline log file")
    parser.add_argument("--seed", type=int, help="Override the random seed from the config")

    args = parser.parse_args()

    setup_logging(args.log_level)
    config = load_config(args.config)
    if args.seed is not None:
        config["seed"] = args.seed

    if args.command == "ingest":
        _run_ingest(config)
    elif args.command == "cluster":
        _run_cluster(config)
    elif args.command == "permute":
        _run_permute(config)
    elif args.command == "report":
        _run_report(config)
    elif args.command == "pipeline":
        _run_pipeline(config, args.log_dir)
    else:  # pragma: no cover - safeguard
        raise ValueError(f"Unknown command: {args.command}")


if __name__ == "__main__":
    main()
