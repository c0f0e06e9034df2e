"""
Webhook notifications for backup outcomes.

Posts one JSON document per database.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict

import requests

from autobackup import __version__
from .summary import BackupSummary


logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a webhook cannot be delivered."""
    pass


def build_webhook_payload(summary: BackupSummary) -> Dict[str, Any]:
    payload = {
        'status': 'success' if summary.success else 'failure',
        'database_type': summary.database_type,
        'database_name': summary.database_name,
        'compressed': summary.compressed,
        'encrypted': summary.encrypted,
        'duration': f"{summary.duration:.3f}s",
        'timestamp': datetime.now(timezone.utc).isoformat(),
    }

    if summary.success:
        payload['backup_key'] = summary.backup_key
        payload['backup_size'] = summary.backup_size
        if summary.deleted_backups:
            payload['deleted_backups'] = summary.deleted_backups
    elif summary.error is not None:
        payload['error'] = str(summary.error)

    # GitHub Actions context, when available
    repository = os.environ.get('GITHUB_REPOSITORY')
    run_id = os.environ.get('GITHUB_RUN_ID')
    server_url = os.environ.get('GITHUB_SERVER_URL')

    if repository:
        payload['repository'] = repository
    if run_id:
        payload['run_id'] = run_id
        if server_url and repository:
            payload['run_url'] = f"{server_url}/{repository}/actions/runs/{run_id}"

    return payload


class WebhookNotifier:
    """Sends backup summaries to a webhook URL."""

    def __init__(self, url: str, timeout: float = 30.0):
        self.url = url
        self.timeout = timeout

    def notify(self, summary: BackupSummary):
        """
        POST the summary as JSON.

        Raises:
            NotificationError: If the request fails or returns a non-2xx status
        """
        if not self.url:
            return

        try:
            response = requests.post(
                self.url,
                json=build_webhook_payload(summary),
                headers={'User-Agent': f"auto-db-backups/{__version__}"},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise NotificationError(f"failed to send webhook: {e}")

        if not 200 <= response.status_code < 300:
            raise NotificationError(f"webhook returned non-success status: {response.status_code}")

        logger.debug(f"Webhook delivered ({response.status_code})")
