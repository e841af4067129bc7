"""
Dépôt de fichiers dans les dossiers de lots : nommage, détection de doublons,
application des décisions, écriture puis journalisation.
Chaque commit est suivi d'une sauvegarde du journal avant le fichier suivant.
"""
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dochub.fingerprint import fingerprint
from dochub.journal import UploadJournal
from dochub.logging_conf import get_logger
from dochub.models import (
    DispositionKind,
    DocCategory,
    DuplicateAction,
    FileDisposition,
    Fingerprint,
    IncomingFile,
    JournalEntry,
)
from dochub.resolution import action_summary, resolve, split_extension
from dochub.similarity import Classifier, DetectionResult, detect_duplicates
from dochub.storage import StorageBackend, category_folder, join_path, sanitize_batch_id

logger = get_logger("uploader")


@dataclass
class ImportReport:
    """Bilan d'un dépôt multiple."""

    uploaded: list[JournalEntry] = field(default_factory=list)
    dropped: list[FileDisposition] = field(default_factory=list)
    failed: list[tuple[IncomingFile, str]] = field(default_factory=list)
    decisions: dict[str, int] = field(default_factory=dict)
    detection: Optional[DetectionResult] = None


def _sanitize_reference(value: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "_" for c in value)


def _target_folder(disposition: FileDisposition) -> Optional[str]:
    """Un écrasement vise le dossier où se trouve le fichier remplacé."""
    if disposition.kind != DispositionKind.REPLACE or disposition.candidate is None:
        return None
    rel_path = disposition.candidate.matched_entry.relative_path
    if "/" not in rel_path:
        return None
    return rel_path.rsplit("/", 1)[0]


class DocumentUploader:
    def __init__(
        self,
        journal: UploadJournal,
        backend: StorageBackend,
        storage_root: str | Path,
        classifier: Optional[Classifier] = None,
        max_workers: int = 4,
    ):
        self.journal = journal
        self.backend = backend
        self.storage_root = Path(storage_root)
        self.classifier = classifier or Classifier(fingerprint_loader=self.load_fingerprint)
        self.max_workers = max_workers

    def load_fingerprint(self, entry: JournalEntry) -> Optional[Fingerprint]:
        """Empreinte d'un fichier déjà stocké (None s'il n'existe plus)."""
        data = self.backend.read_file(entry.relative_path)
        if data is None:
            return None
        return fingerprint(data, entry.file_name)

    def build_file_name(
        self,
        batch_id: str,
        category: DocCategory,
        original_name: str,
        reference: Optional[str] = None,
    ) -> str:
        """
        Nom de stockage : '{lot} - {catégorie} - {référence}{ext}' si une référence
        (n° de commande) est fournie, sinon le nom d'origine. Suffixe ' (N)' si le
        nom est déjà journalisé.
        """
        base, ext = split_extension(original_name)
        if reference:
            base = f"{sanitize_batch_id(batch_id)} - {category.value} - {_sanitize_reference(reference)}"

        file_name = f"{base}{ext}"
        counter = 1
        while self.journal.lookup(batch_id, category, file_name):
            file_name = f"{base} ({counter}){ext}"
            counter += 1
        return file_name

    def upload(
        self,
        incoming: IncomingFile,
        file_name: Optional[str] = None,
        reference: Optional[str] = None,
        folder: Optional[str] = None,
    ) -> JournalEntry:
        """
        Écrit le fichier puis l'enregistre dans le journal (sauvegardé aussitôt).
        :param file_name: Nom imposé (écrasement ou version) ; sinon nom généré.
        :param folder: Dossier relatif imposé ; par défaut le dossier {lot}/{catégorie}.
        :raises OSError: Si la lecture, l'écriture ou la sauvegarde du journal échoue.
        """
        data = incoming.read_bytes()
        name = file_name or self.build_file_name(incoming.batch_id, incoming.category, incoming.name, reference)
        folder = folder or category_folder(incoming.batch_id, incoming.category)
        rel_path = self.backend.write_file(folder, name, data)

        entry = JournalEntry(
            batch_id=incoming.batch_id,
            category=incoming.category,
            file_name=name,
            uploaded_at=datetime.now(timezone.utc),
            relative_path=rel_path,
            file_size=len(data),
            content_hash=hashlib.sha256(data).hexdigest(),
        )
        self.journal.commit(entry)
        self.journal.save(self.storage_root)
        logger.info("Dépôt: %s -> %s", incoming.name, rel_path)
        return entry

    def detect(self, files: list[IncomingFile]) -> DetectionResult:
        return detect_duplicates(files, self.journal, self.classifier, self.max_workers)

    def import_files(
        self,
        files: list[IncomingFile],
        actions: Optional[dict[str, DuplicateAction]] = None,
        apply_to_all: Optional[DuplicateAction] = None,
        reference: Optional[str] = None,
    ) -> ImportReport:
        """
        Dépose une liste de fichiers : détection des doublons, décisions, puis
        écriture séquentielle. Un échec sur un fichier n'interrompt pas les autres.
        """
        report = ImportReport()
        detection = self.detect(files)
        report.detection = detection

        plan: list[tuple[IncomingFile, Optional[str], Optional[str]]] = [
            (f, None, None) for f in detection.non_duplicates
        ]
        dispositions = resolve(detection.duplicates, actions, self.journal, apply_to_all)
        report.decisions = action_summary(dispositions)
        for disposition in dispositions:
            if disposition.kind == DispositionKind.DROPPED:
                report.dropped.append(disposition)
            else:
                plan.append((disposition.incoming, disposition.file_name, _target_folder(disposition)))

        for incoming, file_name, folder in plan:
            try:
                report.uploaded.append(self.upload(incoming, file_name, reference, folder))
            except OSError as e:
                logger.error("Échec du dépôt de %s: %s", incoming.name, e)
                report.failed.append((incoming, str(e)))

        logger.info(
            "Import terminé: %s déposé(s), %s ignoré(s), %s échec(s)",
            len(report.uploaded), len(report.dropped), len(report.failed),
        )
        return report

    def delete_files(self, targets: list[JournalEntry]) -> tuple[int, list[str]]:
        """
        Supprime des fichiers stockés (ex. doublons) et les retire du journal.
        Le journal est sauvegardé une fois, si au moins un fichier a été supprimé.
        :return: (nombre supprimé, erreurs)
        """
        deleted = 0
        errors: list[str] = []
        for entry in targets:
            rel_path = entry.relative_path or join_path(
                category_folder(entry.batch_id, entry.category), entry.file_name
            )
            try:
                self.backend.delete_file(rel_path)
            except OSError as e:
                message = f"Suppression impossible de {entry.file_name}: {e}"
                logger.error(message)
                errors.append(message)
                continue
            self.journal.remove(entry.batch_id, entry.category, entry.file_name)
            deleted += 1

        if deleted:
            self.journal.save(self.storage_root)
        return deleted, errors
