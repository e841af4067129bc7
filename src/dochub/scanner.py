"""
Reconstruction du journal depuis le contenu réel du stockage.
Parcours sur deux niveaux : {lot}/{catégorie}/fichiers. Les entrées déjà
journalisées conservent leur date d'upload d'origine ; les fichiers de lots
inconnus sont signalés comme orphelins. Le journal n'est écrit qu'une fois,
à la fin, et jamais en cas d'annulation.
"""
import hashlib
import threading
from pathlib import Path
from typing import Callable, Optional

from dochub.journal import UploadJournal
from dochub.logging_conf import get_logger
from dochub.models import DocCategory, JournalEntry, ScanProgress, ScanResult, journal_key
from dochub.similarity import find_duplicate_groups
from dochub.storage import StorageBackend, StorageRootError, join_path

logger = get_logger("scanner")

ProgressCallback = Callable[[ScanProgress], None]


class ScanCancelled(Exception):
    pass


class ReconciliationScanner:
    """Reconstruit le journal d'une racine de stockage à partir des fichiers présents."""

    def __init__(
        self,
        journal: UploadJournal,
        backend: StorageBackend,
        storage_root: str | Path,
        hash_files: bool = True,
    ):
        self.journal = journal
        self.backend = backend
        self.storage_root = Path(storage_root)
        self.hash_files = hash_files

    def _notify(self, on_progress: Optional[ProgressCallback], progress: ScanProgress) -> None:
        if on_progress is None:
            return
        try:
            on_progress(progress)
        except Exception:
            logger.exception("Erreur dans le callback de progression")

    @staticmethod
    def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ScanCancelled()

    def _content_hash(self, rel_path: str) -> Optional[str]:
        data = self.backend.read_file(rel_path)
        if data is None:
            raise OSError(f"Fichier disparu pendant le scan: {rel_path}")
        return hashlib.sha256(data).hexdigest()

    def _scan_batch(
        self,
        batch_id: str,
        previous: dict[str, JournalEntry],
        known_valid_batch_ids: Optional[set[str]],
        result: ScanResult,
        cancel_event: Optional[threading.Event],
    ) -> None:
        """Parcourt un dossier de lot ; les erreurs d'E/S sont consignées par fichier ou par lot."""
        try:
            category_dirs = self.backend.list_subdirectories(batch_id)
        except OSError as e:
            result.errors.append(f"Erreur de lecture du lot {batch_id}: {e}")
            logger.error("Erreur de lecture du lot %s: %s", batch_id, e)
            return

        is_orphan = bool(known_valid_batch_ids) and batch_id not in known_valid_batch_ids

        for folder in category_dirs:
            self._check_cancel(cancel_event)
            category = DocCategory.from_folder_name(folder)
            if category is None:
                logger.debug("Dossier ignoré (catégorie inconnue): %s/%s", batch_id, folder)
                continue
            folder_path = join_path(batch_id, folder)
            try:
                names = self.backend.list_files(folder_path)
            except OSError as e:
                result.errors.append(f"Erreur de lecture de {folder_path}: {e}")
                logger.error("Erreur de lecture de %s: %s", folder_path, e)
                continue

            for name in names:
                if name.startswith("."):
                    continue
                rel_path = join_path(folder_path, name)
                if is_orphan:
                    result.files_found += 1
                    result.orphaned_files.append(rel_path)
                    continue
                if self.journal.lookup(batch_id, category, name):
                    # deux dossiers pour la même catégorie (ex. "Purchase Order" et "purchase_order")
                    result.errors.append(f"Clé en double ignorée: {rel_path}")
                    logger.warning("Clé en double ignorée: %s", rel_path)
                    continue
                try:
                    st = self.backend.stat(rel_path)
                except OSError as e:
                    result.errors.append(f"Fichier illisible {rel_path}: {e}")
                    logger.error("Fichier illisible %s: %s", rel_path, e)
                    continue
                result.files_found += 1

                prior = previous.get(journal_key(batch_id, category, name))
                content_hash = None
                if prior is not None and prior.content_hash and prior.file_size == st.size:
                    content_hash = prior.content_hash
                elif self.hash_files:
                    try:
                        content_hash = self._content_hash(rel_path)
                    except OSError as e:
                        result.errors.append(f"Hash impossible pour {rel_path}: {e}")
                        logger.warning("Hash impossible pour %s: %s", rel_path, e)

                entry = JournalEntry(
                    batch_id=batch_id,
                    category=category,
                    file_name=name,
                    uploaded_at=prior.uploaded_at if prior is not None else st.modified,
                    relative_path=rel_path,
                    file_size=st.size,
                    content_hash=content_hash,
                )
                self.journal.commit(entry)
                if prior is not None:
                    result.existing_entries_preserved += 1
                else:
                    result.new_entries_added += 1

    def rebuild(
        self,
        known_valid_batch_ids: Optional[set[str]] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        detect_duplicates: bool = False,
    ) -> ScanResult:
        """
        Reconstruit le journal depuis le stockage.
        :param known_valid_batch_ids: Lots valides (source des enregistrements) ; vide ou None = pas de contrôle.
        :param on_progress: Appelé à chaque dossier de lot parcouru.
        :param cancel_event: Annulation coopérative, vérifiée à chaque dossier.
        :param detect_duplicates: Ajoute l'analyse des doublons déjà stockés.
        :raises StorageRootError: Si la racine de stockage est absente ou inaccessible.
        """
        self.backend.check_root()

        valid = {str(b) for b in known_valid_batch_ids} if known_valid_batch_ids else None
        result = ScanResult()

        self._notify(on_progress, ScanProgress("scanning", "Sauvegarde du journal existant..."))
        previous = self.journal.snapshot()
        if previous:
            try:
                backup = self.journal.backup(self.storage_root, list(previous.values()))
                result.backup_created = True
                result.backup_path = backup.name
            except OSError as e:
                logger.warning("Sauvegarde du journal impossible, reconstruction poursuivie: %s", e)

        self.journal.clear()
        try:
            batch_dirs = [d for d in self.backend.list_subdirectories("") if not d.startswith(".")]
            total = len(batch_dirs)
            self._notify(
                on_progress,
                ScanProgress("scanning", f"{total} dossier(s) de lot trouvés", 0, total),
            )

            for scanned, batch_id in enumerate(batch_dirs):
                self._check_cancel(cancel_event)
                self._notify(
                    on_progress,
                    ScanProgress("scanning", f"Lot {batch_id}...", scanned, total, batch_id),
                )
                self._scan_batch(batch_id, previous, valid, result, cancel_event)

            self._check_cancel(cancel_event)
            self._notify(
                on_progress,
                ScanProgress("validating", f"{result.files_found} fichier(s) trouvés", total, total),
            )

            if detect_duplicates:
                self._notify(
                    on_progress,
                    ScanProgress("detecting-duplicates", "Analyse des doublons...", total, total),
                )
                result.duplicate_groups = find_duplicate_groups(self.journal.entries())
        except ScanCancelled:
            self.journal.restore(previous)
            result.cancelled = True
            logger.warning("Reconstruction annulée ; journal précédent conservé")
            self._notify(on_progress, ScanProgress("cancelled", "Reconstruction annulée", result.files_found))
            return result
        except StorageRootError:
            self.journal.restore(previous)
            raise
        except Exception as e:
            self.journal.restore(previous)
            result.errors.append(f"Échec du scan: {e}")
            logger.exception("Échec de la reconstruction")
            self._notify(on_progress, ScanProgress("error", f"Erreur: {e}"))
            return result

        try:
            self.journal.save(self.storage_root)
            result.persisted = True
        except OSError as e:
            result.errors.append(f"Écriture du journal impossible: {e}")
            logger.error("Écriture du journal impossible: %s", e)

        logger.info(
            "Reconstruction terminée: %s fichier(s), %s nouveau(x), %s conservé(s), %s orphelin(s), %s erreur(s)",
            result.files_found,
            result.new_entries_added,
            result.existing_entries_preserved,
            len(result.orphaned_files),
            len(result.errors),
        )
        self._notify(on_progress, ScanProgress("complete", "Reconstruction terminée", result.files_found))
        return result
