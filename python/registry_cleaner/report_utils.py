"""
Utility functions for run reports.

This module provides functions to:
- Format byte sizes for status lines
- Render the dry-run summary table
- Save timestamped JSON run reports
"""
import json
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from tabulate import tabulate

from registry_cleaner.logging_utils import get_logger

logger = get_logger(__name__)


# ============================================================================
# Formatting Utilities
# ============================================================================

def format_size(num: int) -> str:
    """Format bytes into a human-readable size using decimal (1000) units.

    Returns:
        Formatted string like "512 B", "1.5 kB", "2.0 GB"
    """
    unit = 1000
    if num < unit:
        return f"{num} B"
    div, exp = unit, 0
    n = num // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{num / div:.1f} {'kMGTPE'[exp]}B"


def render_status_table(statuses: Iterable[Any]) -> str:
    """Render repository statuses as a grid table for dry-run output."""
    rows = [
        [s.repository, s.deleted, s.kept, format_size(s.remaining_size)]
        for s in statuses
    ]
    headers = ["Repository", "Would delete", "Would keep", "Remaining size"]
    return tabulate(rows, headers=headers, tablefmt="grid")


# ============================================================================
# Timestamp Utilities
# ============================================================================

def get_timestamp_suffix() -> str:
    """
    Generate a timestamp suffix for report filenames.

    Returns:
        String in format: YYYY-MM-DD-HH-MM-SS
    """
    return datetime.now().strftime("%Y-%m-%d-%H-%M-%S")


def add_timestamp_to_path(path: str, timestamp: Optional[str] = None) -> str:
    """
    Add a timestamp to a file path before the extension.

    Args:
        path: Original file path (e.g., 'reports/cleanup-run.json')
        timestamp: Optional timestamp string (defaults to current time)

    Returns:
        Path with timestamp inserted (e.g., 'reports/cleanup-run-2026-01-15-14-30-00.json')
    """
    if timestamp is None:
        timestamp = get_timestamp_suffix()

    p = Path(path)
    return str(p.parent / f"{p.stem}-{timestamp}{p.suffix}")


# ============================================================================
# Report Saving Functions
# ============================================================================

def _jsonable(data: Any) -> Any:
    """Recursively convert datetimes, sets and tuples to JSON friendly values."""
    if isinstance(data, (datetime, date)):
        return data.isoformat()
    if isinstance(data, (set, frozenset)):
        return [_jsonable(item) for item in sorted(data)]
    if isinstance(data, (list, tuple)):
        return [_jsonable(item) for item in data]
    if isinstance(data, dict):
        return {str(k): _jsonable(v) for k, v in data.items()}
    return data


def save_json(path: str, data: Any, timestamp: bool = False) -> str:
    """
    Write JSON data to a file with indentation.

    Args:
        path: Path to save the JSON file
        data: Data to save
        timestamp: If True, add timestamp to filename (default: False)

    Returns:
        Path to the saved file
    """
    if timestamp:
        path = add_timestamp_to_path(path)

    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(_jsonable(data), f, indent=2)

    logger.info(f"Saved report to {path}")
    return path
