"""Unit tests for registry_cleaner/registry_client.py"""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
import requests

from registry_cleaner.error_utils import ActionableError, ErrorCategory, root_cause_message
from registry_cleaner.registry_client import (
    GcrClient,
    RegistryAPIError,
    RegistryError,
    parse_reference,
    parse_www_authenticate,
    split_repository,
)

REPO = "gcr.io/test-project/images/app"
TAGS_URL = "https://gcr.io/v2/test-project/images/app/tags/list"
CHALLENGE = 'Bearer realm="https://gcr.io/v2/token",service="gcr.io"'


def response(status=200, body=None, links=None, headers=None, text=""):
    r = MagicMock()
    r.status_code = status
    r.json.return_value = body if body is not None else {}
    r.links = links or {}
    r.headers = headers or {}
    r.text = text
    return r


@pytest.fixture
def mock_config():
    """Create a mock ConfigManager"""
    config = MagicMock()
    config.get_registry_username.return_value = "_json_key"
    config.get_registry_password.return_value = "secret"
    config.get_request_timeout.return_value = 30
    config.get_max_retries.return_value = 2
    config.get_retry_initial_delay.return_value = 0.01
    config.get_retry_max_delay.return_value = 0.1
    config.get_retry_exponential_base.return_value = 2.0
    config.get_retry_jitter.return_value = False
    return config


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def registry(mock_config, session):
    return GcrClient(mock_config, session=session)


@pytest.fixture
def no_sleep(mocker):
    return mocker.patch("registry_cleaner.retry_utils.time.sleep")


class TestHelpers:
    """Tests for reference and header parsing"""

    def test_split_repository(self):
        assert split_repository(REPO) == ("gcr.io", "test-project/images/app")

    def test_split_repository_requires_path(self):
        with pytest.raises(ValueError):
            split_repository("gcr.io")

    @pytest.mark.parametrize("reference,expected", [
        (f"{REPO}:v1", (REPO, "v1")),
        (f"{REPO}@sha256:abc", (REPO, "sha256:abc")),
        ("localhost:5000/app:v1", ("localhost:5000/app", "v1")),
    ])
    def test_parse_reference(self, reference, expected):
        assert parse_reference(reference) == expected

    def test_parse_reference_without_tag(self):
        with pytest.raises(ValueError):
            parse_reference("localhost:5000/app")

    def test_parse_www_authenticate(self):
        assert parse_www_authenticate(CHALLENGE) == {"realm": "https://gcr.io/v2/token", "service": "gcr.io"}

    def test_parse_www_authenticate_rejects_basic(self):
        assert parse_www_authenticate('Basic realm="x"') is None
        assert parse_www_authenticate(None) is None


class TestListing:
    """Tests for GcrClient listing"""

    def test_list_tags_and_manifests(self, registry, session):
        session.request.return_value = response(body={
            "child": [],
            "tags": ["v2", "v1"],
            "manifest": {
                "sha256:a": {
                    "imageSizeBytes": "1500",
                    "tag": ["v1"],
                    "timeCreatedMs": "1700000000000",
                    "timeUploadedMs": "0",
                },
                "sha256:b": {"imageSizeBytes": "10", "tag": []},
            },
        })

        listing = registry.list_tags_and_manifests(REPO)

        session.request.assert_called_once_with("GET", TAGS_URL, headers={}, timeout=30)
        assert listing.tags == ["v1", "v2"]
        manifest = listing.manifests["sha256:a"]
        assert manifest.tags == ("v1",)
        assert manifest.size == 1500
        assert isinstance(manifest.created, datetime)
        assert manifest.uploaded is None
        assert listing.manifests["sha256:b"].untagged

    def test_list_children(self, registry, session):
        session.request.return_value = response(body={"child": ["app", "web"], "tags": []})

        assert registry.list_children("gcr.io/test-project/images") == ["app", "web"]

    def test_follows_pagination(self, registry, session):
        session.request.side_effect = [
            response(
                body={"tags": ["v1"], "manifest": {"sha256:a": {"tag": ["v1"]}}},
                links={"next": {"url": "/v2/test-project/images/app/tags/list?n=1&last=v1"}},
            ),
            response(body={"tags": ["v2"], "manifest": {"sha256:b": {"tag": ["v2"]}}}),
        ]

        listing = registry.list_tags_and_manifests(REPO)

        assert session.request.call_args_list[1][0][1] == TAGS_URL + "?n=1&last=v1"
        assert listing.tags == ["v1", "v2"]
        assert set(listing.manifests) == {"sha256:a", "sha256:b"}

    def test_retries_server_errors(self, registry, session, no_sleep):
        session.request.side_effect = [
            response(status=503, body={"errors": []}),
            response(body={"tags": ["v1"]}),
        ]

        listing = registry.list_tags_and_manifests(REPO)

        assert listing.tags == ["v1"]
        assert session.request.call_count == 2
        no_sleep.assert_called_once()

    def test_does_not_retry_not_found(self, registry, session, no_sleep):
        session.request.return_value = response(
            status=404, body={"errors": [{"code": "NAME_UNKNOWN", "message": "repository unknown"}]}
        )

        with pytest.raises(RegistryError) as exc_info:
            registry.list_tags_and_manifests(REPO)

        assert str(exc_info.value) == f"Failed to list {REPO}: HTTP 404 NAME_UNKNOWN: repository unknown"
        assert session.request.call_count == 1
        no_sleep.assert_not_called()

    def test_non_json_response_is_registry_error(self, registry, session, no_sleep):
        """A proxy answering 200 with an HTML page surfaces as a listing failure"""
        page = response(text="<html>login</html>")
        page.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
        session.request.return_value = page

        with pytest.raises(RegistryError) as exc_info:
            registry.list_children("gcr.io/test-project/images")

        assert str(exc_info.value) == "Failed to list gcr.io/test-project/images: invalid JSON response"
        assert isinstance(exc_info.value.__cause__, ValueError)

    def test_connection_errors_retried_then_raised(self, registry, session, no_sleep):
        session.request.side_effect = requests.ConnectionError("connection refused")

        with pytest.raises(RegistryError) as exc_info:
            registry.list_tags_and_manifests(REPO)

        assert isinstance(exc_info.value.__cause__, ActionableError)
        assert exc_info.value.__cause__.category == ErrorCategory.CONNECTION
        assert session.request.call_count == 3


class TestAuthentication:
    """Tests for the bearer token flow"""

    def test_fetches_token_on_challenge_and_caches_it(self, registry, session):
        session.request.side_effect = [
            response(status=401, headers={"WWW-Authenticate": CHALLENGE}),
            response(body={"tags": ["v1"]}),
            response(body={"tags": ["v1"]}),
        ]
        session.get.return_value = response(body={"token": "abc"})

        registry.list_tags_and_manifests(REPO)
        registry.list_tags_and_manifests(REPO)

        session.get.assert_called_once_with(
            "https://gcr.io/v2/token",
            params={"scope": "repository:test-project/images/app:pull", "service": "gcr.io"},
            auth=("_json_key", "secret"),
            timeout=30,
        )
        retried = session.request.call_args_list[1]
        assert retried[1]["headers"] == {"Authorization": "Bearer abc"}
        cached = session.request.call_args_list[2]
        assert cached[1]["headers"] == {"Authorization": "Bearer abc"}

    def test_token_rejected_is_authentication_error(self, registry, session):
        session.request.return_value = response(status=401, headers={"WWW-Authenticate": CHALLENGE})
        session.get.return_value = response(status=403, text="denied")

        with pytest.raises(RegistryError) as exc_info:
            registry.delete_reference(f"{REPO}:v1")

        assert isinstance(exc_info.value.__cause__, ActionableError)
        assert exc_info.value.__cause__.category == ErrorCategory.AUTHENTICATION

    def test_non_json_token_response(self, registry, session):
        session.request.return_value = response(status=401, headers={"WWW-Authenticate": CHALLENGE})
        token_page = response(text="<html></html>")
        token_page.json.side_effect = ValueError("Expecting value")
        session.get.return_value = token_page

        with pytest.raises(RegistryError) as exc_info:
            registry.delete_reference(f"{REPO}:v1")

        assert exc_info.value.__cause__.category == ErrorCategory.AUTHENTICATION

    def test_anonymous_token_request_without_password(self, mock_config, session):
        mock_config.get_registry_password.return_value = None
        registry = GcrClient(mock_config, session=session)
        session.request.side_effect = [
            response(status=401, headers={"WWW-Authenticate": CHALLENGE}),
            response(body={"tags": []}),
        ]
        session.get.return_value = response(body={"access_token": "anon"})

        registry.list_tags_and_manifests(REPO)

        assert session.get.call_args[1]["auth"] is None


class TestDeletion:
    """Tests for GcrClient.delete_reference"""

    def test_delete_tag(self, registry, session):
        session.request.return_value = response(status=202)

        registry.delete_reference(f"{REPO}:v1")

        session.request.assert_called_once_with(
            "DELETE", "https://gcr.io/v2/test-project/images/app/manifests/v1", headers={}, timeout=30
        )

    def test_delete_digest(self, registry, session):
        session.request.return_value = response(status=202)

        registry.delete_reference(f"{REPO}@sha256:abc")

        assert session.request.call_args[0] == (
            "DELETE", "https://gcr.io/v2/test-project/images/app/manifests/sha256:abc"
        )

    def test_delete_scope_requests_all_actions(self, registry, session):
        session.request.side_effect = [
            response(status=401, headers={"WWW-Authenticate": CHALLENGE}),
            response(status=202),
        ]
        session.get.return_value = response(body={"token": "abc"})

        registry.delete_reference(f"{REPO}:v1")

        assert session.get.call_args[1]["params"]["scope"] == "repository:test-project/images/app:*"

    def test_permission_denied_cause_identical_across_objects(self, registry, session):
        session.request.return_value = response(
            status=403, body={"errors": [{"code": "DENIED", "message": "permission denied"}]}
        )

        errors = []
        for reference in (f"{REPO}@sha256:a", f"{REPO}@sha256:b"):
            with pytest.raises(RegistryError) as exc_info:
                registry.delete_reference(reference)
            errors.append(exc_info.value)

        assert str(errors[0]) == f"Failed to delete {REPO}@sha256:a: HTTP 403 DENIED: permission denied"
        assert isinstance(errors[0].__cause__, RegistryAPIError)
        assert root_cause_message(errors[0]) == root_cause_message(errors[1]) == "HTTP 403 DENIED: permission denied"

    def test_rate_limited(self, registry, session):
        session.request.return_value = response(status=429, headers={"Retry-After": "2"})

        with pytest.raises(RegistryError) as exc_info:
            registry.delete_reference(f"{REPO}:v1")

        cause = exc_info.value.__cause__
        assert isinstance(cause, ActionableError)
        assert cause.details["retry_after"] == 2.0

    def test_deletion_is_not_retried(self, registry, session, no_sleep):
        session.request.return_value = response(status=503, body={"errors": []})

        with pytest.raises(RegistryError):
            registry.delete_reference(f"{REPO}:v1")

        assert session.request.call_count == 1

    def test_invalid_reference(self, registry, session):
        with pytest.raises(RegistryError):
            registry.delete_reference("gcr.io/app")
        session.request.assert_not_called()
