"""
Configuration loaded from environment variables.

Every setting can also be given with the GitHub Actions 'INPUT_' prefix,
e.g. INPUT_R2_BUCKET_NAME. Plain variables take precedence.
"""

import os
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Tuple
from urllib.parse import unquote, urlparse

from autobackup.errors import ConfigurationError
from autobackup.utils.crypto import decode_key


class DatabaseType(str, Enum):
    POSTGRES = 'postgres'
    MYSQL = 'mysql'
    MONGODB = 'mongodb'


DATABASE_TYPE_ALIASES = {
    'postgres': DatabaseType.POSTGRES,
    'postgresql': DatabaseType.POSTGRES,
    'mysql': DatabaseType.MYSQL,
    'mariadb': DatabaseType.MYSQL,
    'mongodb': DatabaseType.MONGODB,
    'mongo': DatabaseType.MONGODB,
}

DEFAULT_PORTS = {
    DatabaseType.POSTGRES: 5432,
    DatabaseType.MYSQL: 3306,
    DatabaseType.MONGODB: 27017,
}


@dataclass(frozen=True)
class DatabaseConfig:
    """Settings for one database to back up."""
    type: DatabaseType
    name: str
    host: str = ''
    port: int = 0
    user: str = ''
    password: str = field(default='', repr=False)
    connection_string: str = field(default='', repr=False)
    backup_prefix: str = ''


@dataclass(frozen=True)
class Config:
    """Settings shared by every database in one run."""
    databases: Tuple[DatabaseConfig, ...]

    # Object storage (R2 or any S3-compatible endpoint)
    r2_account_id: str = ''
    r2_access_key_id: str = field(default='', repr=False)
    r2_secret_access_key: str = field(default='', repr=False)
    r2_bucket_name: str = ''
    s3_endpoint_url: str = ''
    s3_region: str = 'auto'

    # Store in a local directory instead of object storage
    local_backup_dir: str = ''

    # Pipeline
    compression: bool = True
    encryption_key: bytes = field(default=b'', repr=False)

    # Retention (0 disables each knob)
    retention_days: int = 0
    retention_count: int = 0

    # Notifications
    webhook_url: str = ''
    notify_on_success: bool = True
    notify_on_failure: bool = True

    # Runtime
    log_level: str = 'INFO'
    log_file: str = ''
    temp_dir: Optional[str] = None

    @property
    def has_encryption(self) -> bool:
        return len(self.encryption_key) > 0

    @property
    def has_retention(self) -> bool:
        return self.retention_days > 0 or self.retention_count > 0

    @property
    def endpoint_url(self) -> str:
        """S3 endpoint, defaulting to the account's R2 endpoint."""
        if self.s3_endpoint_url:
            return self.s3_endpoint_url
        if self.r2_account_id:
            return f"https://{self.r2_account_id}.r2.cloudflarestorage.com"
        return ''


def get_input(name: str, environ: Optional[Mapping[str, str]] = None) -> str:
    """
    Read a setting from the environment.

    Args:
        name: Setting name, e.g. 'r2_bucket_name'
        environ: Environment mapping (default: os.environ)

    Returns:
        Stripped value, or '' if unset
    """
    if environ is None:
        environ = os.environ

    env_name = name.upper().replace('-', '_')
    value = environ.get(env_name, '').strip()
    if value:
        return value
    return environ.get(f"INPUT_{env_name}", '').strip()


def get_input_int(name: str, default: int, environ: Optional[Mapping[str, str]] = None) -> int:
    value = get_input(name, environ)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(name, f"must be an integer, got '{value}'")


def get_input_bool(name: str, default: bool, environ: Optional[Mapping[str, str]] = None) -> bool:
    value = get_input(name, environ).lower()
    if not value:
        return default
    return value in ('true', 'yes', '1')


def parse_database_type(value: str, field_name: str = 'database_type') -> DatabaseType:
    """
    Resolve a database type name or alias.

    Raises:
        ConfigurationError: If the type is not supported
    """
    db_type = DATABASE_TYPE_ALIASES.get(value.strip().lower())
    if db_type is None:
        raise ConfigurationError(field_name, f"unsupported database type: {value}")
    return db_type


def parse_connection_string(connection: str, db_type: DatabaseType) -> dict:
    """
    Extract host, port, user, password and database name from a URL.

    Returns:
        Dict with 'host', 'port', 'user', 'password' and 'name' keys
    """
    try:
        url = urlparse(connection)
        port = url.port
    except ValueError as e:
        raise ConfigurationError('databases_json', f"invalid connection string: {e}")

    return {
        'host': url.hostname or '',
        'port': port or DEFAULT_PORTS[db_type],
        'user': unquote(url.username) if url.username else '',
        'password': unquote(url.password) if url.password else '',
        'name': url.path.lstrip('/'),
    }


def load_databases(
    databases_json: str,
    default_type: DatabaseType
) -> Tuple[DatabaseConfig, ...]:
    """
    Parse the DATABASES_JSON list.

    Each entry is {"connection": ..., "name": ..., "prefix": ..., "type": ...}
    where only "connection" is required.

    Raises:
        ConfigurationError: If the JSON or any entry is invalid
    """
    if not databases_json:
        raise ConfigurationError('databases_json', "DATABASES_JSON is required")

    try:
        entries = json.loads(databases_json)
    except json.JSONDecodeError as e:
        raise ConfigurationError('databases_json', f"invalid JSON: {e}")

    if not isinstance(entries, list) or not entries:
        raise ConfigurationError('databases_json', "must contain at least one database")

    databases = []
    for i, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict) or not entry.get('connection'):
            raise ConfigurationError('databases_json', f"database {i}: connection is required")

        db_type = default_type
        if entry.get('type'):
            db_type = parse_database_type(entry['type'], 'databases_json')

        parsed = parse_connection_string(entry['connection'], db_type)
        name = entry.get('name') or parsed['name']
        if not name:
            raise ConfigurationError(
                'databases_json',
                f"database {i}: name could not be determined from connection string"
            )

        # MySQL needs discrete host arguments, mysqldump has no URL form
        if db_type == DatabaseType.MYSQL and not parsed['host']:
            raise ConfigurationError(
                'databases_json',
                f"database {i}: host could not be parsed from connection string"
            )

        prefix = entry.get('prefix') or f"backups/{name}/"
        if not prefix.endswith('/'):
            prefix += '/'

        databases.append(DatabaseConfig(
            type=db_type,
            name=name,
            host=parsed['host'],
            port=parsed['port'],
            user=parsed['user'],
            password=parsed['password'],
            connection_string=entry['connection'],
            backup_prefix=prefix
        ))

    return tuple(databases)


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Build the run configuration from the environment.

    Raises:
        ConfigurationError: If any setting is missing or invalid
    """
    default_type = parse_database_type(get_input('database_type', environ) or 'postgres')
    databases = load_databases(get_input('databases_json', environ), default_type)

    encryption_key = b''
    encoded_key = get_input('encryption_key', environ)
    if encoded_key:
        encryption_key = decode_key(encoded_key)

    retention_days = get_input_int('retention_days', 0, environ)
    retention_count = get_input_int('retention_count', 0, environ)
    if retention_days < 0:
        raise ConfigurationError('retention_days', f"must not be negative, got {retention_days}")
    if retention_count < 0:
        raise ConfigurationError('retention_count', f"must not be negative, got {retention_count}")

    config = Config(
        databases=databases,
        r2_account_id=get_input('r2_account_id', environ),
        r2_access_key_id=get_input('r2_access_key_id', environ),
        r2_secret_access_key=get_input('r2_secret_access_key', environ),
        r2_bucket_name=get_input('r2_bucket_name', environ),
        s3_endpoint_url=get_input('s3_endpoint_url', environ),
        s3_region=get_input('s3_region', environ) or 'auto',
        local_backup_dir=get_input('local_backup_dir', environ),
        compression=get_input_bool('compression', True, environ),
        encryption_key=encryption_key,
        retention_days=retention_days,
        retention_count=retention_count,
        webhook_url=get_input('webhook_url', environ),
        notify_on_success=get_input_bool('notify_on_success', True, environ),
        notify_on_failure=get_input_bool('notify_on_failure', True, environ),
        log_level=(get_input('log_level', environ) or 'INFO').upper(),
        log_file=get_input('log_file', environ),
        temp_dir=get_input('temp_dir', environ) or None
    )

    validate(config)
    return config


def validate(config: Config):
    """
    Check settings that depend on each other.

    Raises:
        ConfigurationError: If a required setting is missing
    """
    if config.local_backup_dir:
        return

    # Object storage settings are required unless storing locally
    for name in ('r2_access_key_id', 'r2_secret_access_key', 'r2_bucket_name'):
        if not getattr(config, name):
            raise ConfigurationError(name, f"{name} is required")

    if not config.endpoint_url:
        raise ConfigurationError('r2_account_id', "r2_account_id or s3_endpoint_url is required")
