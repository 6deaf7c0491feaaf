#!/usr/bin/env python3
"""
Registry cleaner entry point.

Deletes image manifests from every child repository of the configured base
repository, except images in use by cluster workloads, images protected by the
exception file and the newest tags of each repository.

Usage:
    registry-cleaner              # delete
    registry-cleaner --dry-run    # report what would be deleted
"""

import argparse
import sys
from typing import List, Optional

from registry_cleaner.cleaner import Cleaner
from registry_cleaner.cluster_images import create_image_lister
from registry_cleaner.config_manager import ConfigManager, ConfigValidationError
from registry_cleaner.deletion_scheduler import DeletionScheduler
from registry_cleaner.error_utils import ActionableError
from registry_cleaner.exception_sets import build_exception_sets
from registry_cleaner.logging_utils import get_logger, log_exception, setup_logging
from registry_cleaner.registry_client import GcrClient, RegistryError
from registry_cleaner.report_utils import render_status_table, save_json

logger = get_logger(__name__)


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Delete old image manifests from the child repositories of a container registry"
    )
    parser.add_argument("--dry-run", action="store_true", help="perform a dry run for testing")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main function. Returns the process exit code."""
    args = parse_arguments(argv)

    try:
        config_manager = ConfigManager()
    except ConfigValidationError as e:
        logger.error(str(e))
        return 1
    setup_logging(config_manager.get_log_level())

    base_repository = config_manager.get_base_repository()
    try:
        lister = create_image_lister(config_manager)
        exceptions = build_exception_sets(base_repository, lister, config_manager.get_exception_file())

        registry = GcrClient(config_manager)
        scheduler = DeletionScheduler(registry.delete_reference, config_manager.get_concurrency())
        cleaner = Cleaner(registry, base_repository, config_manager.get_keep_amount(), exceptions, scheduler)
        result = cleaner.clean(dry_run=args.dry_run)
    except (ActionableError, RegistryError) as e:
        log_exception(logger, f"Failed to clean {base_repository}: {e}", e)
        return 1

    if result.statuses:
        header = "DRY RUN RESULTS:" if args.dry_run else "REGISTRY CLEANER RESULTS:"
        logger.info("\n" + header + "\n" + "\n".join(result.status_lines()))
        if args.dry_run:
            print(render_status_table(result.statuses))

    if config_manager.save_run_report():
        try:
            save_json(config_manager.get_run_report_path(), result.to_dict(), timestamp=True)
        except OSError as e:
            logger.warning(f"Could not save run report: {e}")

    if result.error is not None:
        logger.error(f"Failed to clean: {result.error}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
