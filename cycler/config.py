import os


class Config:
    """Base configuration"""

    DEBUG = False
    TESTING = False

    # Retention ledger (one JSON record per storage type/id)
    DATA_PATH = os.environ.get('CYCLER_DATA_PATH') or '/data/cycler/data'

    # Where the archive producer leaves the artifact for this run
    TMP_PATH = os.environ.get('CYCLER_TMP_PATH') or '/data/cycler/tmp'

    # Logging
    LOG_DIR = os.environ.get('CYCLER_LOG_DIR') or '/data/cycler/logs'

    # Parallel removals during cycling (1 = sequential)
    CYCLE_MAX_WORKERS = int(os.environ.get('CYCLE_MAX_WORKERS', '1'))

    # Triggers configuration file (defines MODELS)
    CONFIG_FILE = os.environ.get('CYCLER_CONFIG_FILE') or '/data/cycler/config.py'

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_MAX_WORKERS = 3


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    ROOT_DIR = os.path.join(BASE_DIR, 'data')
    DATA_PATH = os.path.join(ROOT_DIR, 'data')
    TMP_PATH = os.path.join(ROOT_DIR, 'tmp')
    LOG_DIR = os.path.join(ROOT_DIR, 'logs')
    CONFIG_FILE = os.path.join(ROOT_DIR, 'config.py')


class TestingConfig(DevelopmentConfig):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    CYCLE_MAX_WORKERS = 1


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


def get_config(config_name=None):
    """
    Resolve a configuration class by name.

    Falls back to the CYCLER_ENV environment variable, then to production.
    """
    if config_name is None:
        config_name = os.environ.get('CYCLER_ENV', 'production')

    try:
        return config[config_name]
    except KeyError:
        raise ValueError(f"Unknown configuration: {config_name}")
