"""
Notifications for backup outcomes.

- GitHub Actions step summary and outputs
- Webhook JSON posts
"""

from .summary import BackupSummary, write_github_summary, set_github_output
from .webhook import WebhookNotifier, NotificationError

__all__ = [
    'BackupSummary',
    'write_github_summary',
    'set_github_output',
    'WebhookNotifier',
    'NotificationError'
]
