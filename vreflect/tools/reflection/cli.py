#!/usr/bin/env python3
"""Command-line interface for running the reflection loop."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from vreflect.libs.config_loader import load_configs, load_default_configs
from .audit import AuditTrail
from .engine import ReflectionEngine, load_run
from .errors import ReflectionError
from .evaluator import ReflectionEvaluator
from .settings import load_settings, require_credentials
from .staleness import StalenessTracker
from .summary import build_grade_summary, save_grade_summary, summarize_reviews

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
LOG = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Grade and iteratively correct a translation with an LLM',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with config/default.yaml and config/local.yaml
  reflect-run

  # Run against a project in another directory, with an extra config layered on top
  reflect-run --project-dir ~/projects/my-translation --config my-overrides.yaml

  # Only run the engine on the existing checkpoint, then write a report
  reflect-run --skip-ingest --summary grades.yaml --summarize-reviews
        """
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        action='append',
        default=None,
        help='YAML config file; repeat to layer several (default: config/default.yaml + config/local.yaml)'
    )
    parser.add_argument(
        '--project-dir', '-p',
        type=Path,
        default=None,
        help='Project directory that relative paths in the config are resolved against'
    )
    parser.add_argument(
        '--skip-ingest',
        action='store_true',
        help="Don't re-ingest changed source, target and comment files before running"
    )
    parser.add_argument(
        '--summary', '-s',
        type=Path,
        default=None,
        help='Write a YAML grade summary to this path after the run'
    )
    parser.add_argument(
        '--summarize-reviews',
        action='store_true',
        help='Condense each verse\'s reviews into one review in the report language (uses the LLM)'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the reflect-run command."""
    args = build_parser().parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        if args.config:
            configs = load_configs(*[str(p) for p in args.config])
        else:
            configs = load_default_configs()
        settings = load_settings(configs)
        if args.project_dir:
            settings = settings.model_copy(update={"project_dir": str(args.project_dir)})
        require_credentials(configs)
    except (ReflectionError, ValueError, TypeError) as e:
        LOG.error(f"Configuration error: {e}")
        sys.exit(1)

    try:
        if not args.skip_ingest:
            ingested = StalenessTracker(settings).refresh()
            LOG.info(f"Ingested {len(ingested)} changed files")
        run = load_run(settings)
    except (ReflectionError, OSError, ValueError) as e:
        LOG.error(f"Failed to load run: {e}")
        sys.exit(1)

    LOG.info(f"Using the model {run.settings.model}")
    if run.settings.reflection_model:
        LOG.info(f"Using the model {run.settings.reflection_model} for reflection.")

    evaluator = ReflectionEvaluator(configs, run.settings)
    audit_trail = None
    if run.settings.average_grade_csv_log:
        audit_trail = AuditTrail(run.settings.resolve_path(run.settings.average_grade_csv_log))

    engine = ReflectionEngine.from_run(run, evaluator, audit_trail=audit_trail, show_progress=True)
    engine.run()

    if args.summary:
        rows = build_grade_summary(run.segments, run.settings)
        if args.summarize_reviews:
            asyncio.run(summarize_reviews(rows, evaluator, run.settings))
        save_grade_summary(rows, args.summary, run.segments, run.settings)

    LOG.info(f"Reflection finished; checkpoint at {run.checkpoint_path}")


if __name__ == "__main__":
    main()
