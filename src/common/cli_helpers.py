"""Common CLI helper utilities."""

from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from common.datetime import parse_datetime


def setup_logging(level: str = "INFO") -> None:
    """Configure standard logging format for CLI tools."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


def parse_timestamp(value: str, field_name: str = "timestamp") -> datetime:
    """Parse an ISO-8601 timestamp for argparse arguments.

    Args:
        value: Timestamp string, e.g. 2024-01-01T12:00:00Z.
        field_name: Name of the field for error messages.

    Returns:
        Timezone-aware datetime (naive input is taken as UTC).

    Raises:
        argparse.ArgumentTypeError: If the value is not a valid timestamp.
    """
    try:
        return parse_datetime(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{field_name} must be an ISO-8601 timestamp") from exc


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    """Add the --config and --log-level options shared by every CLI."""
    parser.add_argument(
        "--config",
        default=None,
        help="Config name under configs/ or a path to a YAML file (default: $NEWS_THREAD_CONFIG or prod)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )


def save_jsonl_local(
    records: list[dict[str, Any]],
    prefix: str,
    timestamp: datetime,
    output_dir: str = "output",
) -> Path:
    """Save records to a local JSONL file.

    Args:
        records: List of dictionaries to save.
        prefix: Filename prefix (e.g., "match_results").
        timestamp: Timestamp to include in filename.
        output_dir: Directory to save to (default: "output").

    Returns:
        Path to the created file.
    """
    output_path = Path(output_dir)
    output_path.mkdir(exist_ok=True)
    filename = f"{prefix}_{timestamp.strftime('%Y_%m_%d_%H_%M')}.jsonl"
    filepath = output_path / filename
    with filepath.open("w") as f:
        for record in records:
            f.write(json.dumps(record, default=str, ensure_ascii=False) + "\n")
    return filepath
