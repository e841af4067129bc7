"""
Configuration YAML de dochub : valeurs par défaut, chemins résolus par rapport
au fichier de configuration (UNC accepté), contrôle des valeurs.
"""
from pathlib import Path
from typing import Any, Optional

import yaml

from dochub.models import DuplicateAction

PATH_KEYS = ("racine_stockage", "inbox", "log_dir", "fichier_lots_valides")

DEFAULTS: dict[str, Any] = {
    "log_level": "INFO",
    "action_doublon_defaut": DuplicateAction.SKIP.value,
    "similarite_visuelle": True,
    "hash_au_scan": True,
    "max_workers": 4,
    "stability_seconds": 5,
    "stability_check_interval": 1,
    "scan_existing_on_start": True,
}


class ConfigError(ValueError):
    """Valeur de configuration invalide."""


def default_config() -> dict[str, Any]:
    return dict(DEFAULTS)


def load_config(config_path: str | Path) -> dict[str, Any]:
    """
    Lit le fichier YAML et le complète avec les valeurs par défaut.
    :raises FileNotFoundError: Fichier absent.
    :raises yaml.YAMLError: YAML illisible.
    :raises ConfigError: Contenu qui n'est pas un dictionnaire ou valeur invalide.
    """
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Fichier de configuration introuvable: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"La configuration doit être un dictionnaire YAML: {path}")

    config = {**DEFAULTS, **raw}
    for key in PATH_KEYS:
        if config.get(key):
            config[key] = str(_resolve(config[key], path.parent))
    validate_config(config)
    return config


def _resolve(value: str, base: Path) -> Path:
    p = Path(value)
    return p if p.is_absolute() else (base / p).resolve()


def validate_config(config: dict[str, Any]) -> None:
    """:raises ConfigError: Sur la première valeur invalide rencontrée."""
    get_default_action(config)
    for key, value in get_thresholds_overrides(config).items():
        if not 0 <= value <= 100:
            raise ConfigError(f"Seuil hors bornes (0..100): {key}={value}")
    workers = config.get("max_workers", DEFAULTS["max_workers"])
    if not isinstance(workers, int) or workers < 1:
        raise ConfigError(f"max_workers doit être un entier positif: {workers!r}")
    for key in ("stability_seconds", "stability_check_interval"):
        value = config.get(key, DEFAULTS[key])
        if not isinstance(value, (int, float)) or value < 0:
            raise ConfigError(f"{key} doit être un nombre positif: {value!r}")


def get_storage_root(config: dict[str, Any]) -> Path:
    """:raises KeyError: racine_stockage absente."""
    root = config.get("racine_stockage")
    if not root:
        raise KeyError("racine_stockage n'est pas configurée")
    return Path(root)


def get_inbox_path(config: dict[str, Any]) -> Path:
    """Dossier de dépôt ; à défaut INBOX à côté de la racine de stockage."""
    inbox = config.get("inbox")
    return Path(inbox) if inbox else get_storage_root(config).parent / "INBOX"


def get_default_action(config: dict[str, Any]) -> DuplicateAction:
    value = str(config.get("action_doublon_defaut") or DuplicateAction.SKIP.value).strip().lower()
    try:
        return DuplicateAction(value)
    except ValueError:
        choices = ", ".join(a.value for a in DuplicateAction)
        raise ConfigError(f"action_doublon_defaut inconnue: {value!r} (attendu: {choices})")


def get_thresholds_overrides(config: dict[str, Any]) -> dict[str, float]:
    """Section 'seuils' (valeurs 0..100) ; entrées vides ignorées."""
    seuils = config.get("seuils") or {}
    try:
        return {str(k): float(v) for k, v in seuils.items() if v is not None}
    except (AttributeError, TypeError, ValueError) as e:
        raise ConfigError(f"Section seuils invalide: {e}")


def get_valid_batches_file(config: dict[str, Any]) -> Optional[Path]:
    val = config.get("fichier_lots_valides")
    return Path(val) if val else None
