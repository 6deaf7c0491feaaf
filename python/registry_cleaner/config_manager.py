#!/usr/bin/env python3
"""
Configuration Manager for the registry cleaner

This module handles loading and managing configuration from config.yaml
and environment variables. A single ConfigManager is built by the entry
point and handed to every component that needs configuration.
"""

import logging
import os
import re
from typing import Any, Dict, List, Optional

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""


VALID_IMAGE_LISTERS = ("kubernetes", "kubectl")


class ConfigManager:
    """Manages configuration for the registry cleaner"""

    def __init__(self, config_file: str = None, validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to config.yaml or CONFIG_FILE env var)
            validate: If True, validate configuration on initialization
        """
        # Allow override via environment variable for containerized deployments
        if config_file is None:
            config_file = os.environ.get("CONFIG_FILE", "config.yaml")
        self.config_file = config_file
        self.config = self._load_config()

        if validate:
            self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        default_config = {
            "registry": {
                "base_repository": "",
                "username": "_json_key",
                "password": "",
                "request_timeout": 30,
            },
            "retention": {"keep_amount": 5, "exception_file": "/config/exceptions.json"},
            "deletion": {"concurrency": None},
            "cluster": {"image_lister": "kubernetes", "contexts": [], "timeout": 300},
            "retry": {
                "max_retries": 3,
                "initial_delay": 1.0,
                "max_delay": 60.0,
                "exponential_base": 2.0,
                "jitter": True,
            },
            "reports": {"output_dir": "reports", "save_run_report": True, "run_report": "cleanup-run.json"},
            "logging": {"level": "INFO"},
        }

        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r") as f:
                    user_config = yaml.safe_load(f) or {}
                return self._merge_config(default_config, user_config)
            else:
                logging.warning(f"Config file {self.config_file} not found, using defaults")
                return default_config
        except Exception as e:
            logging.error(f"Error loading config file: {e}")
            return default_config

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def _get_int(self, section: str, key: str, env_var: Optional[str] = None) -> int:
        value = os.environ.get(env_var) if env_var else None
        if not value:
            value = self.config.get(section, {}).get(key)
        try:
            return int(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{key} must be an integer, got: {value} (type: {type(value).__name__})"
            )

    def _get_float(self, section: str, key: str) -> float:
        value = self.config.get(section, {}).get(key)
        try:
            return float(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{key} must be a number, got: {value} (type: {type(value).__name__})"
            )

    # Registry configuration
    def get_base_repository(self) -> str:
        """Get the base repository (host/project[/path]) whose children are cleaned"""
        value = os.environ.get("GCR_BASE_REPO") or self.config["registry"]["base_repository"] or ""
        return value.strip().rstrip("/")

    def get_registry_username(self) -> str:
        """Get registry username. Defaults to _json_key for service account key authentication."""
        return os.environ.get("REGISTRY_USERNAME") or self.config["registry"]["username"]

    def get_registry_password(self) -> Optional[str]:
        """Get registry password.

        Priority order:
        1. REGISTRY_PASSWORD environment variable
        2. registry.password in config.yaml
        3. Contents of the service account key file named by GOOGLE_APPLICATION_CREDENTIALS
        """
        password = os.environ.get("REGISTRY_PASSWORD") or self.config["registry"].get("password")
        if password:
            return password

        key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
        if key_path:
            try:
                with open(key_path, "r") as f:
                    return f.read()
            except OSError as e:
                logging.warning(f"Could not read credentials file {key_path}: {e}")
        return None

    def get_request_timeout(self) -> int:
        """Get HTTP timeout for registry calls, with type coercion"""
        return self._get_int("registry", "request_timeout")

    # Retention configuration
    def get_keep_amount(self) -> int:
        """Get the number of most recent tags kept per repository"""
        return self._get_int("retention", "keep_amount", "CLEANER_KEEP_AMOUNT")

    def get_exception_file(self) -> str:
        """Get path of the JSON exception file"""
        return os.environ.get("CLEANER_EXCEPTION_FILE") or self.config["retention"]["exception_file"]

    # Deletion configuration
    def get_concurrency(self) -> int:
        """Get number of concurrent deletions. Defaults to the number of available CPUs."""
        configured = os.environ.get("CLEANER_CONCURRENCY") or self.config.get("deletion", {}).get("concurrency")
        if configured in (None, ""):
            return os.cpu_count() or 1
        try:
            return int(configured)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"deletion.concurrency must be an integer, got: {configured} (type: {type(configured).__name__})"
            )

    # Cluster configuration
    def get_image_lister(self) -> str:
        """Get which in-use image lister to use (kubernetes or kubectl)"""
        return (os.environ.get("CLEANER_IMAGE_LISTER") or self.config["cluster"]["image_lister"]).lower()

    def get_kube_contexts(self) -> List[str]:
        """Get kubeconfig contexts to query. Empty means every context."""
        return list(self.config.get("cluster", {}).get("contexts") or [])

    def get_cluster_timeout(self) -> int:
        """Get timeout for kubectl calls, with type coercion"""
        return self._get_int("cluster", "timeout")

    # Retry configuration
    def get_max_retries(self) -> int:
        return self._get_int("retry", "max_retries")

    def get_retry_initial_delay(self) -> float:
        return self._get_float("retry", "initial_delay")

    def get_retry_max_delay(self) -> float:
        return self._get_float("retry", "max_delay")

    def get_retry_exponential_base(self) -> float:
        return self._get_float("retry", "exponential_base")

    def get_retry_jitter(self) -> bool:
        """Get whether to use jitter in retry delays from config"""
        return bool(self.config.get("retry", {}).get("jitter", True))

    # Reports and logging
    def get_output_dir(self) -> str:
        """Get output directory for run reports"""
        return os.environ.get("CLEANER_OUTPUT_DIR") or self.config["reports"]["output_dir"]

    def save_run_report(self) -> bool:
        return bool(self.config["reports"].get("save_run_report", True))

    def get_run_report_path(self) -> str:
        """Get path of the JSON run report inside the output directory"""
        return os.path.join(self.get_output_dir(), self.config["reports"]["run_report"])

    def get_log_level(self) -> str:
        return (os.environ.get("LOG_LEVEL") or self.config.get("logging", {}).get("level") or "INFO").upper()

    # Validation
    def _is_valid_base_repository(self, repository: str) -> bool:
        """A base repository is a registry host followed by at least one path component"""
        parts = repository.split("/")
        if len(parts) < 2 or not all(parts):
            return False
        host_valid = re.fullmatch(r"[a-zA-Z0-9.-]+(:\d+)?", parts[0]) is not None
        path_valid = all(re.fullmatch(r"[a-z0-9]+(?:[._-][a-z0-9]+)*", p) for p in parts[1:])
        return host_valid and path_valid

    def validate_config(self) -> None:
        """Validate configuration values

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        errors = []
        warnings = []

        base = self.get_base_repository()
        if not base:
            errors.append("Base repository is required (set GCR_BASE_REPO or registry.base_repository)")
        elif not self._is_valid_base_repository(base):
            errors.append(f"Base repository '{base}' is invalid (expected format: host/project[/path])")

        try:
            keep = self.get_keep_amount()
            if keep < 0:
                errors.append(f"keep_amount must be zero or positive, got: {keep}")
            elif keep == 0:
                warnings.append("keep_amount is 0, only exception and in-use tags will be kept")
        except ConfigValidationError as e:
            errors.append(str(e))

        try:
            concurrency = self.get_concurrency()
            if concurrency < 1:
                errors.append(f"concurrency must be a positive integer, got: {concurrency}")
            elif concurrency > 64:
                warnings.append(f"concurrency is very high ({concurrency}), this may trigger registry rate limits")
        except ConfigValidationError as e:
            errors.append(str(e))

        lister = self.get_image_lister()
        if lister not in VALID_IMAGE_LISTERS:
            errors.append(f"image_lister must be one of {', '.join(VALID_IMAGE_LISTERS)}, got: {lister}")

        for getter in (self.get_request_timeout, self.get_max_retries, self.get_retry_initial_delay,
                       self.get_retry_max_delay, self.get_retry_exponential_base):
            try:
                if getter() < 0:
                    errors.append(f"{getter.__name__[4:]} must not be negative")
            except ConfigValidationError as e:
                errors.append(str(e))

        for warning in warnings:
            logging.warning(f"Config warning: {warning}")

        if errors:
            raise ConfigValidationError("Configuration validation failed:\n  - " + "\n  - ".join(errors))
