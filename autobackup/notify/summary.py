"""
Per-database backup summaries for GitHub Actions.

Writes a markdown table to $GITHUB_STEP_SUMMARY and key=value outputs to
$GITHUB_OUTPUT. Both are no-ops outside of Actions.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class BackupSummary:
    database_type: str
    database_name: str
    backup_key: str = ''
    backup_size: int = 0
    compressed: bool = False
    encrypted: bool = False
    duration: float = 0.0
    success: bool = False
    error: Optional[BaseException] = None
    deleted_backups: int = 0


def format_bytes(size: int) -> str:
    """Format a byte count with binary units, e.g. 1.5 MB."""
    unit = 1024
    if size < unit:
        return f"{size} B"

    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit

    return f"{size / div:.1f} {'KMGTPE'[exp]}B"


def _check(value: bool) -> str:
    return ':white_check_mark:' if value else ':x:'


def build_summary_markdown(summary: BackupSummary) -> str:
    lines = ["## Database Backup Summary", ""]

    if summary.success:
        lines.append("**Status:** :white_check_mark: Success")
    else:
        lines.append("**Status:** :x: Failed")

    lines += [
        "",
        "| Property | Value |",
        "|----------|-------|",
        f"| Database Type | {summary.database_type} |",
        f"| Database Name | {summary.database_name} |",
    ]

    if summary.success:
        lines += [
            f"| Backup Key | `{summary.backup_key}` |",
            f"| Backup Size | {format_bytes(summary.backup_size)} |",
            f"| Compressed | {_check(summary.compressed)} |",
            f"| Encrypted | {_check(summary.encrypted)} |",
            f"| Duration | {summary.duration:.3f}s |",
        ]
        if summary.deleted_backups > 0:
            lines.append(f"| Old Backups Deleted | {summary.deleted_backups} |")
    else:
        # Table cells cannot contain raw newlines or pipes
        error_text = str(summary.error).replace('|', '\\|').replace('\n', ' ')
        lines.append(f"| Error | {error_text} |")

    lines.append("")
    return '\n'.join(lines) + '\n'


def write_github_summary(summary: BackupSummary) -> bool:
    """
    Append the summary to $GITHUB_STEP_SUMMARY.

    Returns:
        True if written, False when not running in GitHub Actions

    Raises:
        OSError: If the summary file cannot be written
    """
    summary_file = os.environ.get('GITHUB_STEP_SUMMARY')
    if not summary_file:
        return False

    with open(summary_file, 'a', encoding='utf-8') as f:
        f.write(build_summary_markdown(summary))
    return True


def set_github_output(name: str, value) -> bool:
    """
    Append name=value to $GITHUB_OUTPUT.

    Returns:
        True if written, False when not running in GitHub Actions
    """
    output_file = os.environ.get('GITHUB_OUTPUT')
    if not output_file:
        return False

    with open(output_file, 'a', encoding='utf-8') as f:
        f.write(f"{name}={value}\n")
    return True
