"""
Logging de dochub : stderr (la sortie standard porte les résultats JSON de la CLI)
et fichier tournant optionnel pour la surveillance en continu.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

LOGGER_NAME = "dochub"
LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Bibliothèques bavardes en DEBUG (événements fichiers, décodage d'images)
NOISY_LOGGERS = ("watchdog", "PIL")


def parse_level(value: str | int | None, default: int = logging.INFO) -> int:
    """'debug', 'INFO', 10... -> niveau logging ; valeur inconnue -> default."""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).strip().upper())
    return level if isinstance(level, int) else default


def setup_logging(
    log_file: Optional[str | Path] = None,
    level: int = logging.INFO,
    log_dir: Optional[Path] = None,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> logging.Logger:
    """
    Configure le logger 'dochub' une seule fois par processus.
    :param log_file: Fichier de log (relatif à log_dir si fourni).
    :param level: Niveau appliqué au logger et aux handlers.
    :param max_bytes: Taille avant rotation du fichier.
    :param backup_count: Nombre de fichiers tournés conservés.
    :return: Le logger racine de dochub.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        path = Path(log_file)
        if log_dir and not path.is_absolute():
            path = Path(log_dir) / path
        path = path.resolve()
        path.parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        rotating.setFormatter(formatter)
        logger.addHandler(rotating)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger enfant : get_logger('journal') -> 'dochub.journal'."""
    return logging.getLogger(f"{LOGGER_NAME}.{name}")
