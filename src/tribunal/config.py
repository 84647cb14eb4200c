"""Configuration handling for Tribunal."""

import yaml
import logging
import os
from pathlib import Path
from typing import Dict, Any

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

audit_logger = logging.getLogger("audit")
audit_logger.setLevel(logging.INFO)

log_dir = Path(__file__).parent.parent.parent / "logs"
os.makedirs(log_dir, exist_ok=True)

audit_log_file = log_dir / "audit.log"
file_handler = logging.FileHandler(str(audit_log_file), mode="a")
file_handler.setFormatter(
    logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
)

audit_logger.addHandler(file_handler)
audit_logger.propagate = True

DEFAULT_CONFIG: Dict[str, Any] = {
    "settings": {
        "timeout": 90,
        "idle_timeout": 30,
        "max_retries": 1,
        "backoff_base_ms": 2000,
        "fallback_enabled": True,
        "temperature": 0.7,
        "max_tokens": 4096,
    },
    "arbiter": {"model": "google/gemini-3-flash-preview"},
    "test_runner": {
        "partial_threshold": 400,
        "min_tokens": 512,
        "max_tokens": 16384,
        "shrink_factor": 0.5,
        "max_attempts": 3,
    },
    "server": {"host": "0.0.0.0", "port": 8006},
}


def load_config() -> Dict[str, Any]:
    """
    Load configuration from config.yaml file.
    Returns a dictionary containing the configuration, with every section
    filled from DEFAULT_CONFIG where the file leaves it out.
    """
    try:
        config_path = Path(__file__).parent.parent.parent / "config.yaml"
        config_yaml = config_path.read_text()
        loaded = yaml.safe_load(config_yaml) or {}
        logger.info("Successfully loaded configuration from config.yaml")
    except Exception as e:
        logger.error(f"Error loading config.yaml: {str(e)}")
        loaded = {}

    merged: Dict[str, Any] = {}
    for section, defaults in DEFAULT_CONFIG.items():
        merged[section] = {**defaults, **(loaded.get(section) or {})}
    for section, value in loaded.items():
        merged.setdefault(section, value)
    return merged


config = load_config()

settings = config["settings"]
TIMEOUT = float(settings["timeout"])
IDLE_TIMEOUT = float(settings["idle_timeout"])
MAX_RETRIES = int(settings["max_retries"])
BACKOFF_BASE_MS = int(settings["backoff_base_ms"])
FALLBACK_ENABLED = bool(settings["fallback_enabled"])
DEFAULT_TEMPERATURE = float(settings["temperature"])
DEFAULT_MAX_TOKENS = int(settings["max_tokens"])

ARBITER_MODEL = config["arbiter"]["model"]
TEST_RUNNER = config["test_runner"]

if TIMEOUT <= 0:
    logger.warning("settings.timeout must be positive, using default value")
    TIMEOUT = float(DEFAULT_CONFIG["settings"]["timeout"])
