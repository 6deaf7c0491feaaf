"""
Error message utilities for providing actionable guidance to users.

This module provides functions to create helpful error messages with
suggested fixes and troubleshooting steps for the failures that abort a
cleanup run: registry access, cluster access and configuration problems.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    PERMISSION = "permission"
    RESOURCE = "resource"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ActionableError(Exception):
    """Exception with actionable guidance for users"""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        """Initialize actionable error

        Args:
            message: Primary error message
            category: Error category for classification
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [self.message]

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("\nAdditional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


def _cause_details(error: Exception, **extra: Any) -> Dict[str, Any]:
    details = dict(extra)
    details["error_type"] = type(error).__name__
    details["error_message"] = str(error)
    return details


def create_registry_connection_error(registry: str, error: Exception) -> ActionableError:
    """Create actionable error for a registry that cannot be reached"""
    text = str(error).lower()
    suggestions = [f"Verify the registry host is correct: {registry}"]
    if "timeout" in text or "timed out" in text:
        suggestions += [
            "The registry may be under heavy load, try again later",
            "Raise registry.request_timeout in config.yaml",
        ]
    if "name resolution" in text or "dns" in text:
        suggestions.append(f"Check that {registry} resolves from this host")
    suggestions.append("Verify outbound HTTPS to the registry is allowed")

    return ActionableError(
        f"Failed to connect to container registry at {registry}",
        ErrorCategory.CONNECTION,
        suggestions,
        _cause_details(error, registry=registry),
    )


def create_registry_auth_error(registry: str, error: Exception) -> ActionableError:
    """Create actionable error for rejected registry credentials"""
    return ActionableError(
        f"Failed to authenticate with container registry at {registry}",
        ErrorCategory.AUTHENTICATION,
        [
            "Verify GOOGLE_APPLICATION_CREDENTIALS points to a valid service account key",
            "Or set REGISTRY_USERNAME / REGISTRY_PASSWORD explicitly",
            "Check that the service account may read and delete images in the base repository",
        ],
        _cause_details(error, registry=registry),
    )


def create_kubernetes_error(operation: str, error: Exception) -> ActionableError:
    """Create actionable error for a failed in-use image query"""
    text = str(error).lower()
    forbidden = "403" in text or "forbidden" in text

    suggestions = [
        "Run 'kubectl cluster-info --context <ctx>' for every context in the kubeconfig",
        "Remove unreachable contexts or list the reachable ones under cluster.contexts in config.yaml",
    ]
    if forbidden:
        suggestions.insert(0, "Grant list on pods, jobs and cronjobs in all namespaces to this identity")

    return ActionableError(
        f"Kubernetes operation failed: {operation}",
        ErrorCategory.PERMISSION if forbidden else ErrorCategory.RESOURCE,
        suggestions,
        _cause_details(error, operation=operation),
    )


def create_exception_file_error(path: str, reason: str) -> ActionableError:
    """Create actionable error for an unreadable or malformed exception file"""
    return ActionableError(
        f"Exception file {path} is invalid: {reason}",
        ErrorCategory.CONFIGURATION,
        [
            "The file must be a JSON object with optional 'repo', 'tag' and 'globalTag' lists of strings",
            "Remove the file (or point CLEANER_EXCEPTION_FILE elsewhere) to run without file exceptions",
        ],
        {"path": path, "reason": reason},
    )


def create_rate_limit_error(operation: str, retry_after: Optional[float] = None) -> ActionableError:
    """Create actionable error for a 429 response"""
    suggestions = ["Lower deletion.concurrency (or CLEANER_CONCURRENCY)"]
    if retry_after:
        suggestions.append(f"The registry asked to wait {retry_after:.1f} seconds")

    return ActionableError(
        f"Rate limit exceeded for operation: {operation}",
        ErrorCategory.NETWORK,
        suggestions,
        {"operation": operation, "retry_after": retry_after},
    )


def root_cause_message(error: Exception) -> str:
    """Short message of the underlying cause of an error.

    Follows one level of exception chaining. Used to group repeated failures
    that share a cause.
    """
    cause = error.__cause__ or error
    if isinstance(cause, ActionableError):
        return cause.message
    return str(cause)
