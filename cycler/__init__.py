import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '1.0.0'


def configure_logging(cfg):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = cfg.LOG_DIR
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if getattr(cfg, 'DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'cycler.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    logger = logging.getLogger('cycler')
    logger.setLevel(log_level)
    logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger


def create_app(config_name=None):
    """
    Load configuration, set up logging and make sure the working
    directories exist.

    Returns:
        The configuration class selected by config_name
    """
    from cycler.config import get_config
    cfg = get_config(config_name)

    configure_logging(cfg)

    os.makedirs(cfg.DATA_PATH, exist_ok=True)
    os.makedirs(cfg.TMP_PATH, exist_ok=True)

    return cfg
