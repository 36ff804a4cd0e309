import os


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value else default


class Config:
    """Base configuration"""

    # Storage locations
    DATA_DIR = os.environ.get('DATA_DIR') or '/data'
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Content-defined chunking (min 2 MiB, avg 4 MiB, max 8 MiB)
    CHUNK_MIN_SIZE = _env_int('CHUNK_MIN_SIZE', 1 << 21)
    CHUNK_AVG_SIZE = _env_int('CHUNK_AVG_SIZE', 1 << 22)
    CHUNK_MAX_SIZE = _env_int('CHUNK_MAX_SIZE', 1 << 23)
    HASH_METHOD = os.environ.get('HASH_METHOD') or 'sha256'

    # Workers
    MAX_WORKERS = _env_int('MAX_WORKERS', 4)
    MAX_CONCURRENT_JOBS = _env_int('MAX_CONCURRENT_JOBS', 3)

    # SFTP
    SFTP_CONNECT_TIMEOUT = _env_float('SFTP_CONNECT_TIMEOUT', 30.0)
    SFTP_OPERATION_TIMEOUT = _env_float('SFTP_OPERATION_TIMEOUT', 60.0)
    SFTP_MAX_ATTEMPTS = _env_int('SFTP_MAX_ATTEMPTS', 5)
    SFTP_RETRY_BASE_DELAY = _env_float('SFTP_RETRY_BASE_DELAY', 1.0)
    SFTP_RETRY_MAX_DELAY = _env_float('SFTP_RETRY_MAX_DELAY', 30.0)

    # Snapshot repository backend
    KOPIA_BIN = os.environ.get('KOPIA_BIN') or 'kopia'
    KOPIA_TIMEOUT = _env_float('KOPIA_TIMEOUT', 3600.0)

    # Job runner
    START_SCHEDULER = True


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class TestingConfig(DevelopmentConfig):
    """Testing configuration"""
    TESTING = True

    # Small chunks keep tests fast
    CHUNK_MIN_SIZE = 256
    CHUNK_AVG_SIZE = 1024
    CHUNK_MAX_SIZE = 4096
    MAX_WORKERS = 2

    SFTP_CONNECT_TIMEOUT = 1.0
    SFTP_OPERATION_TIMEOUT = 1.0
    SFTP_MAX_ATTEMPTS = 3
    SFTP_RETRY_BASE_DELAY = 0.0
    SFTP_RETRY_MAX_DELAY = 0.0


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
