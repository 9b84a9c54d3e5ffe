import os
from typing import Any, Dict, Mapping, Optional

from dbshelf.errors import ConfigurationError
from dbshelf.models import DatabaseSpec


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


class Config:
    """Base configuration"""

    # Temp/working directories (None = system temp dir)
    TEMP_DIR = os.environ.get('DBSHELF_TEMP_DIR') or None
    LOG_DIR = os.environ.get('DBSHELF_LOG_DIR') or None
    LOG_LEVEL = os.environ.get('DBSHELF_LOG_LEVEL', 'INFO').upper()

    # Pre-flight probes only; dumps and transfers run unbounded
    CONNECT_TIMEOUT_SECONDS = _int_env('DBSHELF_CONNECT_TIMEOUT', 5)

    # Progress stream
    EVENT_QUEUE_SIZE = _int_env('DBSHELF_EVENT_QUEUE_SIZE', 100)

    # S3 destinations (falls back to the default boto credential chain)
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    AWS_REGION = os.environ.get('AWS_REGION') or 'us-east-1'
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL') or None

    # Uploads larger than the threshold go through multipart upload
    MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
    MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class DevelopmentConfig(Config):
    """Development configuration"""
    LOG_LEVEL = 'DEBUG'

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    pass


class TestingConfig(Config):
    """Testing configuration"""
    LOG_DIR = None
    CONNECT_TIMEOUT_SECONDS = 2
    EVENT_QUEUE_SIZE = 10


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def get_config(name: Optional[str] = None):
    """
    Resolve a configuration class by name.

    Args:
        name: Configuration name; defaults to $DBSHELF_ENV or 'default'

    Returns:
        Config subclass

    Raises:
        ConfigurationError: If the name is unknown
    """
    if name is None:
        name = os.environ.get('DBSHELF_ENV', 'default')
    try:
        return config[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown configuration: {name}. Valid options: {list(config.keys())}"
        )


def load_databases(data: Mapping[str, Any]) -> Dict[str, DatabaseSpec]:
    """
    Build database specs from an already-parsed configuration mapping.

    The mapping has the shape ``{'databases': {name: {...}, ...}}``; reading
    and expanding the configuration file happens before this point.

    Args:
        data: Parsed configuration

    Returns:
        Dict of database name -> DatabaseSpec, in configuration order

    Raises:
        ConfigurationError: If no databases are configured or any is invalid
    """
    databases = (data or {}).get('databases')
    if not databases:
        raise ConfigurationError("no databases configured")
    if not isinstance(databases, Mapping):
        raise ConfigurationError("'databases' must be a mapping of name to settings")

    specs = {}
    for name, settings in databases.items():
        if not isinstance(settings, Mapping):
            raise ConfigurationError(f"database {name!r}: settings must be a mapping")
        specs[name] = DatabaseSpec.from_dict(name, settings)
    return specs
