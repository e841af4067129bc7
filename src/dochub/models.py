"""
Modèles de données (dataclasses) : journal d'upload, empreintes, doublons, scan.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class DocCategory(str, Enum):
    """Les quatre rôles de document attendus pour chaque lot."""

    PURCHASE_ORDER = "Purchase Order"
    SALES_ORDER = "Sales Order"
    SUPPLIER_INVOICE = "Supplier Invoice"
    CUSTOMER_INVOICE = "Customer Invoice"

    @property
    def folder_name(self) -> str:
        """Nom de dossier : alphanumérique, underscore, tiret, espace ; le reste devient _."""
        return re.sub(r"[^a-zA-Z0-9\-_\s]", "_", self.value)

    @property
    def short_label(self) -> str:
        return _SHORT_LABELS[self]

    @classmethod
    def from_label(cls, label: str) -> "DocCategory":
        """Retrouve la catégorie depuis son libellé (lève ValueError si inconnu)."""
        found = cls.from_folder_name(label)
        if found is None:
            raise ValueError(f"Catégorie inconnue: {label!r}")
        return found

    @classmethod
    def from_folder_name(cls, name: str) -> Optional["DocCategory"]:
        """
        Associe un nom de dossier à une catégorie : libellé exact, libellé assaini,
        puis comparaison normalisée (casse et séparateurs ignorés).
        """
        for cat in cls:
            if name == cat.value or name == cat.folder_name:
                return cat
        wanted = _normalize_label(name)
        for cat in cls:
            if wanted == _normalize_label(cat.value):
                return cat
        return None


def _normalize_label(value: str) -> str:
    return re.sub(r"[\s_\-]+", "", value).lower()


_SHORT_LABELS = {
    DocCategory.PURCHASE_ORDER: "PO",
    DocCategory.SALES_ORDER: "SO",
    DocCategory.SUPPLIER_INVOICE: "Supplier Inv",
    DocCategory.CUSTOMER_INVOICE: "Customer Inv",
}


def journal_key(batch_id: Any, category: DocCategory, file_name: str) -> str:
    """Clé composite du journal. batch_id est toujours ramené à sa forme texte."""
    return f"{str(batch_id)}|{category.value}|{file_name}"


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    # ISO-8601 produit par JavaScript : suffixe Z
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class JournalEntry:
    """Un fichier physique suivi par le journal (remplacé en bloc, jamais modifié)."""

    batch_id: str
    category: DocCategory
    file_name: str
    uploaded_at: datetime
    relative_path: str
    file_size: Optional[int] = None
    content_hash: Optional[str] = None

    def __post_init__(self) -> None:
        # Les anciens journaux contiennent des numéros de lot numériques
        object.__setattr__(self, "batch_id", str(self.batch_id))
        if self.uploaded_at.tzinfo is None:
            object.__setattr__(self, "uploaded_at", self.uploaded_at.replace(tzinfo=timezone.utc))

    @property
    def key(self) -> str:
        return journal_key(self.batch_id, self.category, self.file_name)

    def to_dict(self) -> dict[str, Any]:
        """Sérialisation JSON (mêmes clés que les fichiers .upload-history.json existants)."""
        out: dict[str, Any] = {
            "batchNumber": self.batch_id,
            "docType": self.category.value,
            "fileName": self.file_name,
            "uploadedAt": _format_timestamp(self.uploaded_at),
            "filePath": self.relative_path,
        }
        if self.file_size is not None:
            out["fileSize"] = self.file_size
        if self.content_hash:
            out["contentHash"] = self.content_hash
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JournalEntry":
        """
        Reconstruit une entrée depuis le JSON persistant.
        :raises KeyError, ValueError, TypeError: Si l'enregistrement est invalide.
        """
        size = data.get("fileSize")
        return cls(
            batch_id=str(data["batchNumber"]),
            category=DocCategory.from_label(data["docType"]),
            file_name=str(data["fileName"]),
            uploaded_at=_parse_timestamp(data["uploadedAt"]),
            relative_path=str(data.get("filePath") or ""),
            file_size=int(size) if size is not None else None,
            content_hash=data.get("contentHash") or None,
        )


class FileType(str, Enum):
    PDF = "pdf"
    IMAGE = "image"
    OTHER = "other"


@dataclass
class Fingerprint:
    """Empreinte dérivée d'un fichier (jamais persistée, recalculée à la demande)."""

    file_name: str
    file_type: FileType
    size_bytes: int
    content_hash: Optional[str] = None
    page_count: Optional[int] = None
    structure_digest: Optional[str] = None
    first_page_image_hash: Optional[str] = None
    image_hash: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def visual_hash(self) -> Optional[str]:
        """Hash perceptuel comparable : première page pour un PDF, image sinon."""
        if self.file_type == FileType.PDF:
            return self.first_page_image_hash
        return self.image_hash


class MatchReason(str, Enum):
    HASH_EXACT = "hash-exact"
    NAME_AND_SIZE = "name+size"
    NAME_ONLY = "name-only"
    VISUAL_STRUCTURE = "visual-structure"


class DuplicateAction(str, Enum):
    SKIP = "skip"
    REPLACE = "replace"
    VERSION = "version"


@dataclass
class IncomingFile:
    """Fichier à déposer dans un lot/catégorie (contenu en mémoire ou sur disque)."""

    name: str
    batch_id: str
    category: DocCategory
    path: Optional[Path] = None
    data: Optional[bytes] = None
    file_id: str = ""

    def __post_init__(self) -> None:
        self.batch_id = str(self.batch_id)
        if not self.file_id:
            self.file_id = self.name

    def read_bytes(self) -> bytes:
        """Contenu du fichier. :raises OSError: Si la lecture échoue."""
        if self.data is not None:
            return self.data
        if self.path is None:
            raise OSError(f"Aucun contenu pour {self.name}")
        return Path(self.path).read_bytes()


@dataclass
class DuplicateCandidate:
    """Résultat de la comparaison d'un fichier entrant avec une entrée du journal."""

    incoming: IncomingFile
    matched_entry: JournalEntry
    confidence: int
    reason: MatchReason
    suggested_action: DuplicateAction = DuplicateAction.SKIP
    detail: str = ""


class DispositionKind(str, Enum):
    DROPPED = "dropped"
    REPLACE = "replace"
    VERSIONED = "versioned"


@dataclass
class FileDisposition:
    """Décision appliquée à un doublon : ignoré, écrasement, ou nouvelle version."""

    kind: DispositionKind
    incoming: IncomingFile
    file_name: Optional[str] = None
    candidate: Optional[DuplicateCandidate] = None


@dataclass
class ScanProgress:
    """Avancement d'une reconstruction (une notification par dossier de lot)."""

    status: str  # scanning | validating | detecting-duplicates | complete | cancelled | error
    message: str
    scanned_count: int = 0
    total_folders: Optional[int] = None
    current_folder: Optional[str] = None


@dataclass
class DuplicateGroup:
    """Groupe de fichiers d'un même lot jugés identiques lors d'un scan."""

    reason: str  # identical-hash | identical-size-name | similar-name
    confidence: int
    entries: list[JournalEntry] = field(default_factory=list)


@dataclass
class ScanResult:
    """Bilan d'une passe de réconciliation."""

    files_found: int = 0
    new_entries_added: int = 0
    existing_entries_preserved: int = 0
    orphaned_files: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    backup_created: bool = False
    backup_path: Optional[str] = None
    cancelled: bool = False
    persisted: bool = False
    duplicate_groups: list[DuplicateGroup] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.persisted and not self.cancelled

    def to_dict(self) -> dict[str, Any]:
        return {
            "filesFound": self.files_found,
            "newEntriesAdded": self.new_entries_added,
            "existingEntriesPreserved": self.existing_entries_preserved,
            "orphanedFiles": list(self.orphaned_files),
            "errors": list(self.errors),
            "backupCreated": self.backup_created,
            "backupPath": self.backup_path,
            "cancelled": self.cancelled,
            "success": self.success,
            "duplicateGroups": [
                {
                    "reason": g.reason,
                    "confidence": g.confidence,
                    "files": [e.relative_path for e in g.entries],
                }
                for g in self.duplicate_groups
            ],
        }


@dataclass
class BatchCompletion:
    """État de complétude d'un lot sur les quatre catégories requises."""

    batch_id: str
    uploaded: dict[DocCategory, int]
    missing: list[DocCategory]

    @property
    def total_required(self) -> int:
        return len(self.uploaded)

    @property
    def total_uploaded(self) -> int:
        return sum(1 for n in self.uploaded.values() if n > 0)

    @property
    def percentage(self) -> int:
        if not self.total_required:
            return 0
        return round(self.total_uploaded * 100 / self.total_required)

    @property
    def is_complete(self) -> bool:
        return not self.missing
