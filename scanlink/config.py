# scanlink/config.py

import os
import logging
import yaml

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.yaml")
DEFAULT_LOG_FILE = "data/logs/scanlink_log.txt"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger("SCANLINK.Config")


def load_config(path=None):
    """Read the YAML settings file.

    Every component falls back to its own defaults, so a missing or broken
    file yields {} and a warning instead of stopping the session.
    """
    path = path or DEFAULT_CONFIG_PATH

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"No configuration at {path}, using defaults")
        return {}
    except yaml.YAMLError as e:
        logger.warning(f"Ignoring unreadable configuration {path}: {e}")
        return {}

    if not isinstance(config, dict):
        logger.warning(f"Ignoring configuration {path}: top level is not a mapping")
        return {}
    logger.debug(f"Configuration read from {path}")
    return config


def setup_global_logging(config, level=logging.INFO):
    """One file handler plus the console, shared by every SCANLINK.* logger."""
    log_file_path = config.get("device_options", {}).get("log_file_path", DEFAULT_LOG_FILE)

    log_dir = os.path.dirname(log_file_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(log_file_path, mode='a'),
            logging.StreamHandler(),
        ]
    )

    main_logger = logging.getLogger("SCANLINK.Main")
    main_logger.info(f"ScanLink logging to {log_file_path}")
    return log_file_path
