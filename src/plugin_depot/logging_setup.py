# src/plugin_depot/logging_setup.py
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Third-party loggers that flood DEBUG output during hot reload
NOISY_LOGGERS = ("watchdog",)


def setup_logging(config, level: Optional[str] = None) -> logging.Logger:
    """
    Configure the root logger from the settings' [logging] section.

    `level` overrides the configured level (used by `plugin-depot -v`).
    Depot output always goes to stdout; a rotating log file is added when
    log_to_file is set.
    """
    log_settings = getattr(config, "logging", None)
    if log_settings is None:
        logging.basicConfig(level=logging.INFO)
        logging.getLogger(__name__).warning(
            "No [logging] settings found, falling back to basic logging."
        )
        return logging.getLogger()

    effective_level = (level or log_settings.level).upper()
    root = logging.getLogger()
    root.setLevel(effective_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(log_settings.format)
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_settings.log_to_file:
        log_path = Path(log_settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_path,
                maxBytes=log_settings.rotation_size_mb * 1024 * 1024,
                backupCount=log_settings.rotation_backup_count,
            )
        )

    for handler in handlers:
        handler.setLevel(effective_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.INFO, root.level))

    root.debug(f"Logging configured at {effective_level}.")
    return root
