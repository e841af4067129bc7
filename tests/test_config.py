"""
Tests unitaires pour config (chargement YAML, chemins relatifs, valeurs par défaut).
"""
from pathlib import Path

import pytest
import yaml

from dochub.config import (
    DEFAULTS,
    ConfigError,
    get_default_action,
    get_inbox_path,
    get_storage_root,
    get_thresholds_overrides,
    get_valid_batches_file,
    load_config,
)
from dochub.models import DuplicateAction


def write_config(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data, allow_unicode=True), encoding="utf-8")
    return path


class TestLoadConfig:
    def test_chemins_relatifs_resolus(self, tmp_path):
        path = write_config(tmp_path, {"racine_stockage": "Lots", "fichier_lots_valides": "lots.csv"})
        config = load_config(path)
        assert get_storage_root(config) == (tmp_path / "Lots").resolve()
        assert get_valid_batches_file(config) == (tmp_path / "lots.csv").resolve()

    def test_fichier_absent(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")

    def test_fichier_vide(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == DEFAULTS

    def test_valeurs_utilisateur_prioritaires(self, tmp_path):
        config = load_config(write_config(tmp_path, {"max_workers": 8, "similarite_visuelle": False}))
        assert config["max_workers"] == 8
        assert config["similarite_visuelle"] is False
        assert config["hash_au_scan"] is True

    @pytest.mark.parametrize(
        "data",
        [
            {"action_doublon_defaut": "fusionner"},
            {"seuils": {"visual": 150}},
            {"seuils": {"visual": "haut"}},
            {"seuils": ["visual"]},
            {"max_workers": 0},
            {"stability_seconds": -1},
        ],
    )
    def test_valeurs_invalides(self, tmp_path, data):
        with pytest.raises(ConfigError):
            load_config(write_config(tmp_path, data))

    def test_pas_un_dictionnaire(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_yaml_invalide(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("racine: [non fermé", encoding="utf-8")
        with pytest.raises(yaml.YAMLError):
            load_config(path)


class TestAccesseurs:
    def test_racine_manquante(self):
        with pytest.raises(KeyError):
            get_storage_root({})

    def test_inbox_par_defaut(self, tmp_path):
        config = {"racine_stockage": str(tmp_path / "Lots")}
        assert get_inbox_path(config) == tmp_path / "INBOX"

    def test_action_par_defaut(self):
        assert get_default_action({}) == DuplicateAction.SKIP
        assert get_default_action({"action_doublon_defaut": " Version "}) == DuplicateAction.VERSION
        with pytest.raises(ConfigError):
            get_default_action({"action_doublon_defaut": "fusionner"})

    def test_seuils(self):
        assert get_thresholds_overrides({"seuils": {"visual": 80, "page_count": None}}) == {"visual": 80.0}
        assert get_thresholds_overrides({}) == {}

    def test_sans_fichier_lots_valides(self):
        assert get_valid_batches_file({}) is None
