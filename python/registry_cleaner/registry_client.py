"""
Registry client for Google Container Registry style registries.

This module talks to the Docker Registry HTTP API v2 with requests, using the
extended tags/list response that GCR returns (child repositories plus a
manifest map with tags, size and timestamps), and deletes manifests and tag
references by reference. Bearer tokens are obtained through the standard
WWW-Authenticate challenge and cached per repository scope.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin

import requests

from registry_cleaner.error_utils import (
    ActionableError,
    create_rate_limit_error,
    create_registry_auth_error,
    create_registry_connection_error,
    root_cause_message,
)
from registry_cleaner.logging_utils import get_logger
from registry_cleaner.retry_utils import RetryPolicy, retry_with_backoff

logger = get_logger(__name__)


class RegistryError(Exception):
    """Raised when a registry call fails. The underlying cause is chained via __cause__."""


class RegistryAPIError(Exception):
    """An error response from the registry.

    The message carries no object URL, so identical failures on different
    objects compare equal.
    """

    def __init__(self, status_code: int, code: str = "", message: str = ""):
        self.status_code = status_code
        self.code = code
        self.message = message
        detail = ": ".join(p for p in (code, message) if p)
        super().__init__(f"HTTP {status_code}" + (f" {detail}" if detail else ""))


@dataclass(frozen=True)
class ManifestInfo:
    """A manifest in a repository listing"""
    digest: str
    tags: Tuple[str, ...] = ()
    size: int = 0
    created: Optional[datetime] = None
    uploaded: Optional[datetime] = None

    @property
    def untagged(self) -> bool:
        return not self.tags


@dataclass
class TagListing:
    """Snapshot of one repository: tag names (ascending), manifests by digest, child repositories"""
    tags: List[str] = field(default_factory=list)
    manifests: Dict[str, ManifestInfo] = field(default_factory=dict)
    children: List[str] = field(default_factory=list)


def split_repository(repository: str) -> Tuple[str, str]:
    """Split 'host/path/to/repo' into ('host', 'path/to/repo')"""
    host, _, path = repository.partition("/")
    if not host or not path:
        raise ValueError(f"Repository '{repository}' must be of the form host/path")
    return host, path


def parse_reference(reference: str) -> Tuple[str, str]:
    """Split 'repo:tag' or 'repo@digest' into (repo, tag-or-digest)"""
    if "@" in reference:
        repository, _, ref = reference.partition("@")
        return repository, ref
    slash = reference.rfind("/")
    colon = reference.rfind(":")
    if colon > slash:
        return reference[:colon], reference[colon + 1:]
    raise ValueError(f"Reference '{reference}' has neither a tag nor a digest")


def parse_www_authenticate(header: Optional[str]) -> Optional[Dict[str, str]]:
    """Parse a Bearer WWW-Authenticate header into its realm/service/scope parameters.

    Example:
        'Bearer realm="https://gcr.io/v2/token",service="gcr.io"'
        -> {"realm": "https://gcr.io/v2/token", "service": "gcr.io"}
    """
    if not header or not header.lower().startswith("bearer "):
        return None
    params = dict(re.findall(r'(\w+)="([^"]*)"', header[7:]))
    if "realm" not in params:
        logger.warning("WWW-Authenticate missing 'realm' parameter")
        return None
    return params


def _parse_millis(value) -> Optional[datetime]:
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    if millis <= 0:
        return None
    return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)


class GcrClient:
    """Registry listing and deletion over the Docker Registry HTTP API v2."""

    def __init__(self, config_manager, session: Optional[requests.Session] = None):
        """Initialize GcrClient.

        Args:
            config_manager: ConfigManager instance for credentials, timeouts and retry settings
            session: Optional requests session (a new one is created when omitted)
        """
        self.config_manager = config_manager
        self.session = session or requests.Session()
        self.username = config_manager.get_registry_username()
        self.password = config_manager.get_registry_password()
        self.timeout = config_manager.get_request_timeout()
        self._retry = retry_with_backoff(RetryPolicy.from_config(config_manager))

        self._tokens: Dict[Tuple[str, str], str] = {}
        self._tokens_lock = Lock()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _fetch_token(self, host: str, challenge: Dict[str, str], scope: str) -> str:
        params = {"scope": scope}
        if challenge.get("service"):
            params["service"] = challenge["service"]
        auth = (self.username, self.password) if self.password else None

        try:
            response = self.session.get(challenge["realm"], params=params, auth=auth, timeout=self.timeout)
        except requests.RequestException as e:
            raise create_registry_connection_error(host, e) from e

        if response.status_code in (401, 403):
            raise create_registry_auth_error(host, RegistryAPIError(response.status_code, message=response.text[:200]))
        if response.status_code != 200:
            raise RegistryAPIError(response.status_code, message=f"token request failed: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError as e:
            raise create_registry_auth_error(host, e) from e
        token = body.get("token") or body.get("access_token")
        if not token:
            raise create_registry_auth_error(host, ValueError("token endpoint returned no token"))
        return token

    def _request(self, method: str, url: str, host: str, path: str, scope_action: str) -> requests.Response:
        """Send a request, answering a single bearer challenge if the registry issues one."""
        scope = f"repository:{path}:{scope_action}"
        key = (host, scope)

        with self._tokens_lock:
            token = self._tokens.get(key)

        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout)
            if response.status_code == 401:
                challenge = parse_www_authenticate(response.headers.get("WWW-Authenticate"))
                if challenge is None:
                    return response
                token = self._fetch_token(host, challenge, scope)
                with self._tokens_lock:
                    self._tokens[key] = token
                response = self.session.request(
                    method, url, headers={"Authorization": f"Bearer {token}"}, timeout=self.timeout
                )
        except requests.RequestException as e:
            raise create_registry_connection_error(host, e) from e
        return response

    @staticmethod
    def _api_error(response: requests.Response, operation: str) -> Exception:
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after = float(retry_after) if retry_after else None
            except ValueError:
                retry_after = None
            return create_rate_limit_error(operation, retry_after=retry_after)

        code, message = "", ""
        try:
            errors = response.json().get("errors") or []
            if errors:
                code = errors[0].get("code", "")
                message = errors[0].get("message", "")
        except ValueError:
            message = response.text[:200].strip()
        return RegistryAPIError(response.status_code, code, message)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def _list(self, repository: str) -> TagListing:
        host, path = split_repository(repository)
        url = f"https://{host}/v2/{path}/tags/list"
        listing = TagListing()
        tags = set()

        while url:
            try:
                response = self._request("GET", url, host, path, "pull")
            except (ActionableError, RegistryAPIError) as e:
                raise RegistryError(f"Failed to list {repository}: {root_cause_message(e)}") from e
            if response.status_code != 200:
                cause = self._api_error(response, "list tags")
                raise RegistryError(f"Failed to list {repository}: {root_cause_message(cause)}") from cause

            try:
                body = response.json()
            except ValueError as e:
                raise RegistryError(f"Failed to list {repository}: invalid JSON response") from e
            listing.children.extend(body.get("child") or [])
            tags.update(body.get("tags") or [])
            for digest, info in (body.get("manifest") or {}).items():
                try:
                    size = int(info.get("imageSizeBytes") or 0)
                except (TypeError, ValueError):
                    size = 0
                listing.manifests[digest] = ManifestInfo(
                    digest=digest,
                    tags=tuple(info.get("tag") or ()),
                    size=size,
                    created=_parse_millis(info.get("timeCreatedMs")),
                    uploaded=_parse_millis(info.get("timeUploadedMs")),
                )

            next_link = response.links.get("next", {}).get("url")
            url = urljoin(url, next_link) if next_link else None

        listing.tags = sorted(tags)
        return listing

    def list_children(self, base_repository: str) -> List[str]:
        """List child repository names directly below base_repository."""
        listing = self._retry(self._list)(base_repository)
        return listing.children

    def list_tags_and_manifests(self, repository: str) -> TagListing:
        """List tags (sorted ascending by name) and manifests of a repository."""
        listing = self._retry(self._list)(repository)
        logger.debug(f"{repository}: {len(listing.tags)} tags, {len(listing.manifests)} manifests")
        return listing

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_reference(self, reference: str) -> None:
        """Delete a tag reference (repo:tag) or a manifest (repo@digest).

        Deleting a tag only removes the tag; the manifest it pointed to stays
        until it is deleted by digest.

        Raises:
            RegistryError: chained to the underlying registry or connection error
        """
        try:
            repository, ref = parse_reference(reference)
            host, path = split_repository(repository)
        except ValueError as e:
            raise RegistryError(f"Failed to parse reference {reference}: {e}") from e

        url = f"https://{host}/v2/{path}/manifests/{ref}"
        try:
            response = self._request("DELETE", url, host, path, "*")
        except (ActionableError, RegistryAPIError) as e:
            raise RegistryError(f"Failed to delete {reference}: {root_cause_message(e)}") from e

        if response.status_code not in (200, 202):
            cause = self._api_error(response, "delete")
            raise RegistryError(f"Failed to delete {reference}: {root_cause_message(cause)}") from cause
        logger.debug(f"Deleted {reference}")
