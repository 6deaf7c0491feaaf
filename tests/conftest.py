"""
Pytest configuration file.

Sets up the Python path so test files can import from the python/ directory,
and provides in-memory stand-ins for the registry and the cluster image query.
"""
import sys
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import pytest

# Add python directory to path for all tests
_python_dir = Path(__file__).parent.parent / 'python'
_python_dir_abs = str(_python_dir.absolute())
if _python_dir_abs not in sys.path:
    sys.path.insert(0, _python_dir_abs)

from registry_cleaner.cluster_images import ClusterImageLister  # noqa: E402
from registry_cleaner.registry_client import (  # noqa: E402
    ManifestInfo,
    RegistryAPIError,
    RegistryError,
    TagListing,
)

BASE = "gcr.io/test-project/images"


def make_listing(manifests: Dict[str, Iterable[str]], sizes: Optional[Dict[str, int]] = None) -> TagListing:
    """Build a TagListing from {digest: tags}."""
    sizes = sizes or {}
    infos = {
        digest: ManifestInfo(digest=digest, tags=tuple(tags), size=sizes.get(digest, 100))
        for digest, tags in manifests.items()
    }
    tags = sorted(tag for info in infos.values() for tag in info.tags)
    return TagListing(tags=tags, manifests=infos)


def permission_denied(reference: str) -> RegistryError:
    cause = RegistryAPIError(403, "DENIED", "permission denied")
    try:
        raise RegistryError(f"Failed to delete {reference}: {cause}") from cause
    except RegistryError as e:
        return e


class StaticImageLister(ClusterImageLister):
    """In-memory image lister"""

    def __init__(self, images: Iterable[str] = (), error: Optional[Exception] = None):
        self.images = set(images)
        self.error = error

    def list_in_use_images(self) -> Set[str]:
        if self.error is not None:
            raise self.error
        return set(self.images)


class FakeRegistry:
    """In-memory registry recording deletion calls"""

    def __init__(self, base: str = BASE, listings: Optional[Dict[str, TagListing]] = None):
        self.base = base
        self.listings = dict(listings or {})
        self.list_errors: Dict[str, Exception] = {}
        self.delete_errors: Dict[str, Exception] = {}
        self.base_error: Optional[Exception] = None
        self.deleted: List[str] = []
        self._lock = threading.Lock()

    def list_children(self, base_repository: str) -> List[str]:
        if self.base_error is not None:
            raise self.base_error
        assert base_repository == self.base
        return list(self.listings)

    def list_tags_and_manifests(self, repository: str) -> TagListing:
        child = repository[len(self.base) + 1:]
        if child in self.list_errors:
            raise self.list_errors[child]
        return self.listings[child]

    def delete_reference(self, reference: str) -> None:
        with self._lock:
            self.deleted.append(reference)
        if reference in self.delete_errors:
            raise self.delete_errors[reference]


@pytest.fixture
def fake_registry():
    return FakeRegistry()
