"""
Concurrent deletion of the deletable manifests of one repository.

For each manifest its tag references are deleted first, synchronously, and the
digest deletion is then submitted to a bounded thread pool. Once any deletion
has failed no new deletion is started; deletions already running finish
normally. Failures are grouped by their underlying cause so that a cause
shared by many objects is reported once.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, List

from registry_cleaner.error_utils import root_cause_message
from registry_cleaner.logging_utils import get_logger
from registry_cleaner.registry_client import ManifestInfo
from registry_cleaner.retention import RetentionDecision

logger = get_logger(__name__)


@dataclass
class DeletionResult:
    """Counters and distinct errors of one repository's deletion cycle"""
    repository: str
    dry_run: bool = False
    deleted: int = 0
    skipped: int = 0
    errors: Dict[str, Exception] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    def error_messages(self) -> List[str]:
        return [str(error) for error in self.errors.values()]


class DeletionScheduler:
    """Runs deletions against a delete-by-reference callable with bounded concurrency."""

    def __init__(self, delete_reference: Callable[[str], None], concurrency: int):
        """
        Args:
            delete_reference: Callable deleting 'repo:tag' or 'repo@digest', raising on failure
            concurrency: Maximum number of digest deletions in flight
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.delete_reference = delete_reference
        self.concurrency = concurrency

    def run(self, decision: RetentionDecision, dry_run: bool = False) -> DeletionResult:
        """Delete every manifest in decision.deletable, or only tally them in a dry run.

        Blocks until all submitted deletions have finished.
        """
        if dry_run:
            return self._dry_run(decision)

        repository = decision.repository
        result = DeletionResult(repository=repository)
        errors_lock = Lock()
        counter_lock = Lock()

        def has_errors() -> bool:
            with errors_lock:
                return bool(result.errors)

        def record_error(error: Exception) -> None:
            cause = root_cause_message(error)
            with errors_lock:
                if cause in result.errors:
                    return
                result.errors[cause] = error
            logger.error(f"{repository}: {error}")

        def count(attr: str) -> None:
            with counter_lock:
                setattr(result, attr, getattr(result, attr) + 1)

        def delete_digest(reference: str) -> None:
            # Previous failures (bad credentials, rate limiting) stop new work
            if has_errors():
                count("skipped")
                return
            try:
                self.delete_reference(reference)
            except Exception as e:
                record_error(e)
                return
            count("deleted")

        def untag(manifest: ManifestInfo) -> bool:
            for tag in manifest.tags:
                if has_errors():
                    return False
                try:
                    self.delete_reference(f"{repository}:{tag}")
                except Exception as e:
                    record_error(e)
                    return False
            return True

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="delete") as pool:
            for digest, manifest in decision.deletable.items():
                if has_errors() or not untag(manifest):
                    count("skipped")
                    continue
                pool.submit(delete_digest, f"{repository}@{digest}")

        if result.skipped:
            logger.warning(f"{repository}: skipped {result.skipped} manifests after deletion errors")
        return result

    def _dry_run(self, decision: RetentionDecision) -> DeletionResult:
        for digest, manifest in decision.deletable.items():
            logger.info(
                f"{decision.repository} would delete manifest {digest}: "
                f"tags={list(manifest.tags)} size={manifest.size}"
            )
        return DeletionResult(repository=decision.repository, dry_run=True, deleted=len(decision.deletable))
