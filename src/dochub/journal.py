"""
Journal des uploads : (lot, catégorie, nom de fichier) -> métadonnées du fichier.
Persisté dans un unique fichier JSON à la racine des dossiers de lots
(.upload-history.json), réécrit entièrement et atomiquement à chaque sauvegarde.
Un seul processus écrit dans un journal donné (pas de verrou inter-processus).
"""
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Iterator, Optional

from dochub.logging_conf import get_logger
from dochub.models import DocCategory, JournalEntry, journal_key

logger = get_logger("journal")

JOURNAL_FILENAME = ".upload-history.json"
BACKUP_PREFIX = ".upload-history.backup-"


def journal_path(storage_root: str | Path) -> Path:
    return Path(storage_root) / JOURNAL_FILENAME


def _atomic_write_json(path: Path, payload: Any) -> None:
    """Écrit le JSON dans un fichier temporaire voisin puis le renomme (tout ou rien)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class UploadJournal:
    """Journal en mémoire ; load/save le synchronisent avec le fichier persistant."""

    def __init__(self, entries: Optional[list[JournalEntry]] = None):
        self._entries: dict[str, JournalEntry] = {}
        for entry in entries or []:
            self.commit(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[JournalEntry]:
        return iter(list(self._entries.values()))

    def entries(self) -> list[JournalEntry]:
        return list(self._entries.values())

    # --- Consultation ---

    def lookup(self, batch_id: str | int, category: DocCategory, file_name: str) -> bool:
        """True si le fichier est déjà journalisé pour ce lot et cette catégorie."""
        return journal_key(batch_id, category, file_name) in self._entries

    def get(self, batch_id: str | int, category: DocCategory, file_name: str) -> Optional[JournalEntry]:
        return self._entries.get(journal_key(batch_id, category, file_name))

    def entries_for_batch(self, batch_id: str | int) -> list[JournalEntry]:
        batch = str(batch_id)
        return [e for e in self._entries.values() if e.batch_id == batch]

    def entries_for(self, batch_id: str | int, category: DocCategory) -> list[JournalEntry]:
        batch = str(batch_id)
        return [e for e in self._entries.values() if e.batch_id == batch and e.category == category]

    def count_for_batch_and_category(self, batch_id: str | int, category: DocCategory) -> int:
        return len(self.entries_for(batch_id, category))

    def batch_ids(self) -> list[str]:
        return sorted({e.batch_id for e in self._entries.values()})

    # --- Mutations ---

    def commit(self, entry: JournalEntry) -> None:
        """Ajoute ou remplace l'entrée (remplacement de l'enregistrement entier)."""
        self._entries[entry.key] = entry

    def remove(self, batch_id: str | int, category: DocCategory, file_name: str) -> bool:
        return self._entries.pop(journal_key(batch_id, category, file_name), None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def snapshot(self) -> dict[str, JournalEntry]:
        return dict(self._entries)

    def restore(self, snapshot: dict[str, JournalEntry]) -> None:
        self._entries = dict(snapshot)

    # --- Persistance ---

    def to_json(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self._entries.values()]

    def load(self, storage_root: str | Path) -> None:
        """
        Charge le journal depuis la racine de stockage.
        Fichier absent ou illisible/malformé : journal vide (la reconstruction
        par scan permet de le régénérer).
        """
        path = journal_path(storage_root)
        self._entries = {}
        if not path.is_file():
            logger.info("Aucun journal existant: %s", path)
            return
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Journal illisible %s, considéré vide: %s", path, e)
            return
        if not isinstance(data, list):
            logger.error("Journal malformé %s (tableau attendu), considéré vide", path)
            return
        try:
            entries = [JournalEntry.from_dict(item) for item in data]
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.error("Enregistrement invalide dans %s, journal considéré vide: %s", path, e)
            return
        for entry in entries:
            self.commit(entry)
        logger.info("Journal chargé: %s enregistrement(s)", len(self._entries))

    def save(self, storage_root: str | Path) -> Path:
        """
        Réécrit le journal complet. :raises OSError: Si l'écriture échoue
        (le fichier précédent reste alors intact).
        """
        path = journal_path(storage_root)
        _atomic_write_json(path, self.to_json())
        logger.debug("Journal sauvegardé: %s enregistrement(s) -> %s", len(self._entries), path)
        return path

    def backup(self, storage_root: str | Path, entries: Optional[list[JournalEntry]] = None) -> Path:
        """
        Copie horodatée (même schéma) du journal ou des entrées fournies.
        :raises OSError: Si l'écriture échoue.
        """
        path = Path(storage_root) / f"{BACKUP_PREFIX}{int(time.time() * 1000)}.json"
        items = entries if entries is not None else self.entries()
        _atomic_write_json(path, [e.to_dict() for e in items])
        logger.info("Sauvegarde du journal créée: %s", path.name)
        return path


def repair_journal_file(storage_root: str | Path) -> int:
    """
    Convertit en texte les numéros de lot numériques d'un journal existant.
    Une copie .backup est écrite avant la réécriture.
    :return: Nombre d'enregistrements corrigés.
    :raises FileNotFoundError: Si le journal n'existe pas.
    :raises ValueError: Si le contenu n'est pas un tableau JSON.
    """
    path = journal_path(storage_root)
    content = path.read_text(encoding="utf-8")
    history = json.loads(content)
    if not isinstance(history, list):
        raise ValueError(f"Le journal n'est pas un tableau: {path}")

    fixed = 0
    out = []
    for record in history:
        if isinstance(record, dict) and not isinstance(record.get("batchNumber"), str):
            record = {**record, "batchNumber": str(record.get("batchNumber"))}
            fixed += 1
        out.append(record)

    backup = path.with_name(path.name + ".backup")
    backup.write_text(content, encoding="utf-8")
    logger.info("Copie de sécurité: %s", backup)
    _atomic_write_json(path, out)
    logger.info("%s enregistrement(s) corrigé(s) dans %s", fixed, path)
    return fixed
