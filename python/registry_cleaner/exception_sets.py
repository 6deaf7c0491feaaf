"""
Exception set builder.

Merges the three protection sources of a cleanup run into immutable lookup
sets: images in use by cluster workloads, the static JSON exception file
and the global tag exceptions it contains.

Exception file format (every key optional):

    {
        "repo": ["child-a"],                 # -> base/child-a
        "tag": ["child-b:v1.2"],             # -> base/child-b:v1.2
        "globalTag": ["latest"]              # kept in every repository
    }

A missing file means "no file exceptions". A file that exists but is not
valid JSON of that shape aborts the run.
"""

import json
import os
from dataclasses import dataclass
from typing import Dict, FrozenSet, List

from registry_cleaner.cluster_images import ClusterImageLister, normalize_image_reference
from registry_cleaner.error_utils import create_exception_file_error, create_kubernetes_error
from registry_cleaner.logging_utils import get_logger

logger = get_logger(__name__)

EXCEPTION_FILE_KEYS = ("repo", "tag", "globalTag")


@dataclass(frozen=True)
class ExceptionSets:
    """Protection lists for one run. Built once before any deletion, never mutated."""
    repos: FrozenSet[str] = frozenset()
    tags: FrozenSet[str] = frozenset()
    global_tags: FrozenSet[str] = frozenset()
    in_use: FrozenSet[str] = frozenset()

    def is_repo_excepted(self, repository: str) -> bool:
        return repository in self.repos

    def pins(self, repository: str, digest: str) -> bool:
        """True if a workload references repository@digest directly."""
        return f"{repository}@{digest}" in self.in_use

    def protects(self, repository: str, tag: str) -> bool:
        """True if repository:tag is a tag exception, a global tag exception or in use."""
        qualified = f"{repository}:{tag}"
        return tag in self.global_tags or qualified in self.tags or qualified in self.in_use


def load_exception_file(path: str) -> Dict[str, List[str]]:
    """Read and validate the JSON exception file.

    Returns:
        Dict with 'repo', 'tag' and 'globalTag' lists (empty when the file is missing)

    Raises:
        ActionableError: if the file cannot be read or does not have the expected shape
    """
    result: Dict[str, List[str]] = {key: [] for key in EXCEPTION_FILE_KEYS}

    if not os.path.exists(path):
        logger.warning(f"Exception file {path} not found, continuing without file exceptions")
        return result

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise create_exception_file_error(path, f"not valid JSON ({e})") from e
    except OSError as e:
        raise create_exception_file_error(path, f"cannot be read ({e})") from e

    if not isinstance(data, dict):
        raise create_exception_file_error(path, f"top level must be an object, got {type(data).__name__}")

    for key, value in data.items():
        if key not in EXCEPTION_FILE_KEYS:
            logger.warning(f"Ignoring unknown key '{key}' in exception file {path}")
            continue
        if value is None:
            continue
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise create_exception_file_error(path, f"'{key}' must be a list of strings")
        result[key] = [item.strip() for item in value if item.strip()]

    return result


def build_exception_sets(base_repository: str, lister: ClusterImageLister, exception_file: str) -> ExceptionSets:
    """Build the exception sets for a run.

    Args:
        base_repository: Base repository the file entries are qualified against
        lister: Source of images in use across clusters
        exception_file: Path to the JSON exception file

    Raises:
        ActionableError: if the in-use query fails or the exception file is malformed
    """
    try:
        raw_images = lister.list_in_use_images()
    except Exception as e:
        raise create_kubernetes_error("retrieve in-use images across clusters", e) from e

    in_use = frozenset(normalize_image_reference(image) for image in raw_images if image and image.strip())
    logger.info(f"Found {len(in_use)} distinct images in use across clusters")

    file_exceptions = load_exception_file(exception_file)
    sets = ExceptionSets(
        repos=frozenset(f"{base_repository}/{name}" for name in file_exceptions["repo"]),
        tags=frozenset(f"{base_repository}/{name}" for name in file_exceptions["tag"]),
        global_tags=frozenset(file_exceptions["globalTag"]),
        in_use=in_use,
    )
    logger.info(
        f"Loaded {len(sets.repos)} repository, {len(sets.tags)} tag and "
        f"{len(sets.global_tags)} global tag exceptions from {exception_file}"
    )
    return sets
