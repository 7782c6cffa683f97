##########################################################################################
#
# Script name: main.py
#
# Description: CLI entrypoint that runs image discovery over a batch of article descriptors.
#
##########################################################################################

import argparse
import logging
import os
import sys
from datetime import date
from pathlib import Path

from .config import EXTERNAL_API, PipelineConfig
from .errors import StoreError
from .loaders import load_descriptors, load_pipeline_config
from .models import BatchReport
from .pipeline import ImagePipeline
from .utils import utc_now


# ****************************************************************************************
# Global data and configuration
# ****************************************************************************************

log = logging.getLogger(os.path.basename(sys.argv[0]))
log.setLevel(logging.DEBUG)
log.propagate = False
formatter = logging.Formatter(
    '%(asctime)-15s [%(funcName)25s:%(lineno)-5s] %(levelname)-8s %(message)s'
)

root_log = logging.getLogger()
root_log.setLevel(logging.DEBUG)


# ****************************************************************************************
# Functions
# ****************************************************************************************


def _attach_file_handler(path: str) -> None:
    fh = logging.FileHandler(path, mode='w')
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)
    if not any(isinstance(handler, logging.FileHandler) for handler in log.handlers):
        log.addHandler(fh)
    if not any(isinstance(handler, logging.FileHandler) for handler in root_log.handlers):
        root_log.addHandler(fh)


def build_config(args: argparse.Namespace) -> PipelineConfig:
    config = load_pipeline_config(args.config)
    if args.output_dir:
        config.output_root = Path(args.output_dir)
    if args.concurrency is not None:
        config.concurrency = args.concurrency
    if args.target is not None:
        config.target_images_per_article = args.target
    if args.deadline is not None:
        config.deadline = args.deadline
    if args.no_download:
        config.download_images = False
    if args.external_api:
        config.use_external_api = True
        config.enabled_strategies.add(EXTERNAL_API)
    config.validate()
    return config


def log_report(report: BatchReport) -> None:
    log.info('Attempted: %d | Succeeded: %d | Failed: %d', report.attempted, report.succeeded, report.failed)
    log.info('Success rate: %.1f%% in %.2fs', report.success_rate, report.elapsed_seconds)
    for name, count in sorted(report.per_strategy_success_counts.items()):
        log.info('  %-18s %d article(s)', name, count)
    for outcome in report.outcomes:
        if not outcome.succeeded:
            log.info('  FAILED %s at %s: %s', outcome.url, outcome.stage.value, outcome.reason)


def discover_images(descriptors_path: str, config: PipelineConfig) -> BatchReport:
    descriptors = load_descriptors(descriptors_path)
    pipeline = ImagePipeline(config)
    report = pipeline.run_batch(descriptors)
    try:
        summary_path = pipeline.context.store.write_batch_summary(report, utc_now().date().isoformat())
        log.debug('Batch summary written to %s', summary_path)
    except StoreError as exc:
        log.warning('Could not write batch summary: %s', exc)
    return report


# ****************************************************************************************
# Handle the arguments
# ****************************************************************************************


def handle_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Discover, classify and store images for news articles.')
    parser.add_argument('--descriptors', required=True, help='YAML or JSON list of article descriptors.')
    parser.add_argument('--config', default=None, help='Optional pipeline config YAML.')
    parser.add_argument('--output-dir', default=None, help='Directory for the metadata ledger and images.')
    parser.add_argument('--concurrency', type=int, default=None, help='Number of articles processed in parallel.')
    parser.add_argument('--target', type=int, default=None, help='Target images per article.')
    parser.add_argument('--deadline', type=float, default=None, help='Batch deadline in seconds.')
    parser.add_argument('--no-download', action='store_true', help='Record metadata without downloading images.')
    parser.add_argument(
        '--external-api',
        action='store_true',
        help='Also query Google image search (needs GOOGLE_API_KEY and GOOGLE_CSE_ID).',
    )
    parser.add_argument('--log-file', default='news_image_discovery.log', help='Debug log file path.')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output to stdout.')
    parser.add_argument('-q', '--quiet', action='store_true', help='Minimal stdout.')
    args = parser.parse_args(argv)

    _attach_file_handler(args.log_file)

    # Configure stdout logging based on arguments
    ch = logging.StreamHandler(sys.stdout)
    if args.verbose:
        ch.setLevel(logging.DEBUG)
    elif args.quiet:
        ch.setLevel(logging.ERROR)
    else:
        ch.setLevel(logging.INFO)
    ch.setFormatter(formatter)
    log.addHandler(ch)
    root_log.addHandler(ch)

    log.debug('Checking script requirements...')
    if not args.verbose and not args.quiet:
        log.debug('No output level specified. Defaulting to INFO.')

    log.info('++++++++++++++++++++++++++++++++++++++++++++++')
    log.info('+  %s', os.path.basename(sys.argv[0]))
    log.info('+  Python Version: %s', sys.version.split()[0])
    log.info('+  Today is: %s', date.today())
    log.info('+  Descriptors: %s', args.descriptors)
    log.info('++++++++++++++++++++++++++++++++++++++++++++++')
    return args


# ****************************************************************************************
# Main
# ****************************************************************************************


def main(argv: list[str] | None = None) -> None:
    args = handle_args(argv)
    config = build_config(args)
    report = discover_images(args.descriptors, config)
    log_report(report)
    log.info('Metadata written under %s', config.output_root)


if __name__ == '__main__':
    main()
