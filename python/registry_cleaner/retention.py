"""
Retention decisions for a single child repository.

Tags are ordered by ascending tag name (not by creation time). The highest
ordered keep_amount tags are kept, plus every tag protected by an exception
or in use. A protected tag inside the kept range does not use up a slot: the
boundary moves down so one more lower ordered tag is kept. In a repository
listed as a repository exception every tag is kept.

A manifest referenced by digest from a running workload is always kept.
Any other manifest is deleted only if it is untagged or none of its tags is
kept.
"""

from dataclasses import dataclass, field
from typing import Dict, Sequence, Set

from registry_cleaner.exception_sets import ExceptionSets
from registry_cleaner.registry_client import ManifestInfo, TagListing


@dataclass
class RetentionDecision:
    """Outcome of evaluating one repository"""
    repository: str
    keep: Set[str] = field(default_factory=set)
    deletable: Dict[str, ManifestInfo] = field(default_factory=dict)
    retained_size: int = 0
    manifest_count: int = 0

    @property
    def retained_count(self) -> int:
        return self.manifest_count - len(self.deletable)


def build_keep_set(repository: str, tags: Sequence[str], keep_amount: int, exceptions: ExceptionSets) -> Set[str]:
    """Return the fully qualified repo:tag names kept in repository.

    Args:
        repository: Fully qualified repository (base/child)
        tags: Tag names of the repository
        keep_amount: Number of highest ordered tags to keep
        exceptions: Exception sets of the run
    """
    ordered = sorted(tags)
    keep = {f"{repository}:{tag}" for tag in ordered if exceptions.protects(repository, tag)}

    if exceptions.is_repo_excepted(repository):
        control = 0
    else:
        control = max(len(ordered) - keep_amount, 0)

    index = len(ordered) - 1
    while index >= control:
        tag = ordered[index]
        if exceptions.protects(repository, tag):
            control = max(control - 1, 0)
        keep.add(f"{repository}:{tag}")
        index -= 1

    return keep


def should_delete(repository: str, manifest: ManifestInfo, keep: Set[str]) -> bool:
    """True if the manifest is untagged or none of its tags is kept."""
    if manifest.untagged:
        return True
    return not any(f"{repository}:{tag}" in keep for tag in manifest.tags)


def evaluate_repository(repository: str, listing: TagListing, keep_amount: int,
                        exceptions: ExceptionSets) -> RetentionDecision:
    """Compute the deletable manifests of one repository from a listing snapshot."""
    keep = build_keep_set(repository, listing.tags, keep_amount, exceptions)
    decision = RetentionDecision(repository=repository, keep=keep, manifest_count=len(listing.manifests))

    for digest, manifest in listing.manifests.items():
        if not exceptions.pins(repository, digest) and should_delete(repository, manifest, keep):
            decision.deletable[digest] = manifest
        else:
            decision.retained_size += manifest.size

    return decision

