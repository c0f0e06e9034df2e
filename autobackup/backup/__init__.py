"""
Backup module for autobackup.

This module handles the core backup functionality including:
- Database export (pg_dump, mysqldump, mongodump)
- Streaming transforms (gzip compression, AES-256-GCM encryption)
- Storage (S3-compatible and local)
- Execution orchestration
- Retention policy enforcement
"""

from .context import CancelContext
from .executor import BackupExecutor, run_backups
from .sources import PostgresExporter, MySQLExporter, MongoDBExporter, create_exporter
from .compression import GzipCompressor, generate_backup_filename
from .pipeline import Pipeline, build_pipeline, create_stages
from .storage import S3Storage, LocalStorage, BackupObject, create_storage
from .retention import RetentionManager, RetentionPolicy, determine_backups_to_delete

__all__ = [
    'CancelContext',
    'BackupExecutor',
    'run_backups',
    'PostgresExporter',
    'MySQLExporter',
    'MongoDBExporter',
    'create_exporter',
    'GzipCompressor',
    'generate_backup_filename',
    'Pipeline',
    'build_pipeline',
    'create_stages',
    'S3Storage',
    'LocalStorage',
    'BackupObject',
    'create_storage',
    'RetentionManager',
    'RetentionPolicy',
    'determine_backups_to_delete'
]
