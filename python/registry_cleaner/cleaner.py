"""
Run coordinator: cleans every child repository of the base repository.

Child repositories are processed one after the other. For each one the tag
listing is fetched once, the retention decision computed from that snapshot
and the deletable manifests handed to the deletion scheduler. A failure in one
child repository is recorded and the run moves on to the next; all failures
are reported together at the end of the run.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from registry_cleaner.deletion_scheduler import DeletionScheduler
from registry_cleaner.error_utils import root_cause_message
from registry_cleaner.exception_sets import ExceptionSets
from registry_cleaner.logging_utils import get_logger
from registry_cleaner.report_utils import format_size
from registry_cleaner.retention import evaluate_repository

logger = get_logger(__name__)


class CleanupError(Exception):
    """Aggregated error of a cleanup run"""

    def __init__(self, messages: List[str]):
        self.messages = list(messages)
        if len(self.messages) == 1:
            text = self.messages[0]
        else:
            text = f"{len(self.messages)} errors occurred: {', '.join(self.messages)}"
        super().__init__(text)


@dataclass
class RepositoryStatus:
    """Outcome of one successfully processed child repository"""
    repository: str
    deleted: int
    kept: int
    remaining_size: int
    dry_run: bool = False

    def __str__(self) -> str:
        size = format_size(self.remaining_size)
        if self.dry_run:
            return (f"{self.repository}: {self.deleted} manifests would be deleted, "
                    f"{self.kept} manifests would be kept, would be remaining size {size}")
        return (f"{self.repository}: {self.deleted} manifests deleted, "
                f"{self.kept} manifests kept, remaining size {size}")


@dataclass
class RunResult:
    """Status lines and collected errors of a run"""
    dry_run: bool = False
    statuses: List[RepositoryStatus] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def error(self) -> Optional[CleanupError]:
        return CleanupError(self.errors) if self.errors else None

    def status_lines(self) -> List[str]:
        return [str(status) for status in self.statuses]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": "dry-run" if self.dry_run else "delete",
            "status": self.status_lines(),
            "repositories": [
                {
                    "repository": s.repository,
                    "deleted": s.deleted,
                    "kept": s.kept,
                    "remaining_size_bytes": s.remaining_size,
                }
                for s in self.statuses
            ],
            "errors": list(self.errors),
        }


class Cleaner:
    """Cleans the child repositories of a base repository."""

    def __init__(self, registry, base_repository: str, keep_amount: int,
                 exceptions: ExceptionSets, scheduler: DeletionScheduler):
        """
        Args:
            registry: Object providing list_children, list_tags_and_manifests and delete_reference
            base_repository: Fully qualified base repository (host/project[/path])
            keep_amount: Number of highest ordered tags kept per repository
            exceptions: Exception sets built for this run
            scheduler: Scheduler executing the deletions
        """
        self.registry = registry
        self.base_repository = base_repository
        self.keep_amount = keep_amount
        self.exceptions = exceptions
        self.scheduler = scheduler

    def clean(self, dry_run: bool = False) -> RunResult:
        """Clean every child repository.

        Raises:
            Exception: if the base repository cannot be listed (nothing is deleted)
        """
        children = self.registry.list_children(self.base_repository)

        if dry_run:
            logger.info(
                f"Performing dry run simulating clean for {self.base_repository}, "
                f"with at least {self.keep_amount} tags unflagged per repo"
            )
        else:
            logger.info(f"Deleting refs for {self.base_repository}, keeping at least {self.keep_amount} tags per repo")

        result = RunResult(dry_run=dry_run)
        for child in children:
            repository = f"{self.base_repository}/{child}"
            try:
                self._clean_repository(repository, result, dry_run)
            except Exception as e:
                logger.error(f"Failed to process child repo {repository}: {e}")
                result.errors.append(f"Failed to process child repo {repository}: {root_cause_message(e)}")

        return result

    def _clean_repository(self, repository: str, result: RunResult, dry_run: bool) -> None:
        listing = self.registry.list_tags_and_manifests(repository)

        if self.exceptions.is_repo_excepted(repository):
            action = "flagging" if dry_run else "deleting"
            logger.info(f"Only {action} untagged manifests for exception repo: {repository}")

        decision = evaluate_repository(repository, listing, self.keep_amount, self.exceptions)
        outcome = self.scheduler.run(decision, dry_run=dry_run)

        if outcome.failed:
            result.errors.extend(outcome.error_messages())
            return

        result.statuses.append(RepositoryStatus(
            repository=repository,
            deleted=outcome.deleted,
            kept=decision.manifest_count - outcome.deleted,
            remaining_size=decision.retained_size,
            dry_run=dry_run,
        ))
