"""
Backup executor - orchestrates the backup workflow for each database.

Workflow per database:
1. Create transform stages (validates the encryption key before any I/O)
2. Start the database export
3. Stream export -> [compress] -> [encrypt] into a temporary file
4. Close the pipeline to surface a failed export
5. Upload the artifact
6. Enforce the retention policy (failures are warnings)
7. Cleanup temporary files

Databases are processed one after another. A failed database does not stop
the others, but makes the run as a whole fail.
"""

import os
import time
import shutil
import logging
import tempfile
from datetime import datetime, timezone
from typing import List, Optional

from autobackup.config import Config, DatabaseConfig
from autobackup.errors import ExportError, StorageError
from autobackup.notify import BackupSummary, NotificationError, WebhookNotifier, set_github_output, write_github_summary
from .compression import generate_backup_filename
from .context import CancelContext
from .pipeline import Pipeline, create_stages
from .retention import RetentionManager, RetentionPolicy
from .sources import create_exporter
from .storage import create_storage


logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Runs the complete backup workflow for one database.
    """

    def __init__(
        self,
        config: Config,
        database: DatabaseConfig,
        storage=None,
        context: Optional[CancelContext] = None
    ):
        """
        Args:
            config: Run configuration
            database: Database to back up
            storage: Storage handler (default: created from config)
            context: Cancellation context for the run
        """
        self.config = config
        self.database = database
        self.storage = storage
        self.context = context or CancelContext()
        self.temp_dir = None
        self.artifact_path = None
        self.logs = []

    def execute(self, now: Optional[datetime] = None) -> BackupSummary:
        """
        Execute the backup.

        Errors are recorded on the returned summary rather than raised.

        Args:
            now: Timestamp for the artifact name (default: current UTC time)

        Returns:
            BackupSummary with the outcome
        """
        summary = BackupSummary(
            database_type=self.database.type.value,
            database_name=self.database.name,
            compressed=self.config.compression,
            encrypted=self.config.has_encryption
        )
        started = time.monotonic()

        self._log(f"Starting backup of {self.database.type.value} database: {self.database.name}")

        try:
            self._execute_workflow(summary, now)
            summary.success = True
            self._log(f"Backup completed successfully: {summary.backup_key}")

        except Exception as e:
            summary.success = False
            summary.error = e
            self._log(f"Backup failed: {e}", logging.ERROR)

        finally:
            summary.duration = time.monotonic() - started
            self._cleanup()

        return summary

    def _execute_workflow(self, summary: BackupSummary, now: Optional[datetime] = None):
        """Execute the main backup workflow steps."""
        stages = create_stages(self.config.compression, self.config.encryption_key or None)

        if self.storage is None:
            self.storage = create_storage(self.config)

        exporter = create_exporter(self.database, temp_root=self.config.temp_dir)

        self.temp_dir = tempfile.mkdtemp(prefix='autobackup_', dir=self.config.temp_dir)
        self._log(f"Temporary directory: {self.temp_dir}")

        # Export and transform
        self._log("Exporting database")
        source = exporter.export(self.context)
        pipeline = Pipeline(source, stages, self.context)
        if pipeline.stage_names:
            self._log(f"Applying stages: {', '.join(pipeline.stage_names)}")

        filename = generate_backup_filename(
            self.database.type.value,
            self.database.name,
            exporter.extension,
            now
        ) + pipeline.extension
        self.artifact_path = os.path.join(self.temp_dir, filename)

        size = self._write_artifact(pipeline)

        # Export exit status is only known now
        pipeline.close()
        self._log(f"Artifact created: {filename} ({size / 1024 / 1024:.2f} MB)")

        # Upload
        key = self.database.backup_prefix + filename
        self._log(f"Uploading to {key}")
        with open(self.artifact_path, 'rb') as f:
            self.storage.upload(key, f, size, cancellation_check=self.context.raise_if_cancelled)

        summary.backup_key = key
        summary.backup_size = size
        self._log(f"Uploaded {key} ({size} bytes)")

        if self.config.has_retention:
            summary.deleted_backups = self._enforce_retention()

    def _write_artifact(self, pipeline: Pipeline) -> int:
        """
        Read the pipeline to EOF into the artifact file.

        On failure the pipeline is aborted and closed. A failed export takes
        precedence over the stage error it caused.
        """
        try:
            with open(self.artifact_path, 'wb') as f:
                return pipeline.copy_to(f)
        except Exception as e:
            pipeline.abort()
            try:
                pipeline.close()
            except ExportError as export_error:
                raise export_error from e
            except Exception as close_error:
                logger.debug(f"Error closing pipeline after failure: {close_error}")
            raise

    def _enforce_retention(self) -> int:
        """
        Apply the retention policy for this database's prefix.

        Returns:
            Number of backups deleted
        """
        policy = RetentionPolicy(
            max_age_days=self.config.retention_days,
            max_count=self.config.retention_count
        )
        manager = RetentionManager(self.storage)

        try:
            result = manager.enforce(policy, self.database.backup_prefix)
        except StorageError as e:
            self._log(f"Warning: retention policy failed: {e}", logging.WARNING)
            return 0
        finally:
            self.logs.extend(manager.logs)

        if result.errors:
            self._log(f"Warning: {len(result.errors)} old backup(s) could not be deleted", logging.WARNING)
        if result.deleted_count:
            self._log(f"Deleted {result.deleted_count} old backup(s)")

        return result.deleted_count

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}", logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the application log
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, f"[{self.database.name}] {message}")


def send_notifications(config: Config, summary: BackupSummary):
    """
    Write the step summary and send the webhook for one database.

    Failures are logged as warnings.
    """
    try:
        write_github_summary(summary)
    except OSError as e:
        logger.warning(f"Failed to write GitHub summary: {e}")

    if not config.webhook_url:
        return

    should_notify = (
        (summary.success and config.notify_on_success)
        or (not summary.success and config.notify_on_failure)
    )
    if not should_notify:
        return

    try:
        WebhookNotifier(config.webhook_url).notify(summary)
    except NotificationError as e:
        logger.warning(f"Failed to send notification for {summary.database_name}: {e}")


def run_backups(
    config: Config,
    storage=None,
    context: Optional[CancelContext] = None
) -> List[BackupSummary]:
    """
    Back up every configured database, one at a time.

    Args:
        config: Run configuration
        storage: Storage handler shared by all databases (default: from config)
        context: Cancellation context

    Returns:
        One BackupSummary per database that was attempted
    """
    context = context or CancelContext()
    started = time.monotonic()
    total = len(config.databases)
    summaries = []

    logger.info(f"Starting backup for {total} database(s)")

    for i, database in enumerate(config.databases, start=1):
        if context.is_cancelled:
            logger.warning(f"Cancelled, skipping remaining {total - i + 1} database(s)")
            break

        logger.info(f"[{i}/{total}] Backing up {database.type.value} database: {database.name}")

        executor = BackupExecutor(config, database, storage, context)
        summary = executor.execute()
        summaries.append(summary)

        # Share the storage handler created by the first executor
        if storage is None and executor.storage is not None:
            storage = executor.storage

        if summary.success:
            logger.info(
                f"[{i}/{total}] SUCCESS: {database.name} -> {summary.backup_key} ({summary.backup_size} bytes)"
            )
        else:
            logger.error(f"[{i}/{total}] FAILED: {database.name} - {summary.error}")

        send_notifications(config, summary)

    _set_outputs(summaries)

    succeeded = [s for s in summaries if s.success]
    logger.info(
        f"Completed: {len(succeeded)} successful, {len(summaries) - len(succeeded)} failed "
        f"(total time: {time.monotonic() - started:.0f}s)"
    )

    return summaries


def _set_outputs(summaries: List[BackupSummary]):
    """Set GitHub Action outputs for the first successful backup."""
    succeeded = [s for s in summaries if s.success]
    if not succeeded:
        return

    try:
        set_github_output('backup_key', succeeded[0].backup_key)
        set_github_output('backup_size', succeeded[0].backup_size)
        set_github_output('backup_count', len(succeeded))
    except OSError as e:
        logger.warning(f"Failed to set GitHub outputs: {e}")
