"""
Classification des fichiers entrants : nouveau, identique ou quasi-doublon.
Règles par entrée existante (la première satisfaite l'emporte) :
  1. hash de contenu identique            -> 100, hash-exact
  2. nom normalisé + taille similaire     -> 95, name+size
  3. nom normalisé seul (confiance >= 95) -> name-only
  4. similarité visuelle/structurelle     -> visual-structure (optionnel)
"""
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields
from typing import Callable, Iterable, Optional

from dochub.fingerprint import (
    MIN_VISUAL_SIMILARITY,
    PAGE_COUNT_MATCH_THRESHOLD,
    compare_fingerprints,
    fingerprint,
)
from dochub.logging_conf import get_logger
from dochub.models import (
    DuplicateCandidate,
    DuplicateGroup,
    Fingerprint,
    IncomingFile,
    JournalEntry,
    MatchReason,
)

logger = get_logger("similarity")

# Seuils (0..100) : constantes de politique, redéfinissables via Thresholds / config
HASH_MATCH_CONFIDENCE = 100
NAME_AND_SIZE_CONFIDENCE = 95
SIZE_MATCH_THRESHOLD = 95
NAME_CONTAINMENT_RATIO = 80
NAME_ONLY_MIN_CONFIDENCE = 95

# Analyse des fichiers déjà stockés (après scan)
GROUP_HASH_CONFIDENCE = 100
GROUP_NAME_SIZE_CONFIDENCE = 90
GROUP_SIMILAR_NAME_CONFIDENCE = 70
GROUP_MAX_SIZE_VARIATION = 10


@dataclass(frozen=True)
class Thresholds:
    size_match: float = SIZE_MATCH_THRESHOLD
    name_containment: float = NAME_CONTAINMENT_RATIO
    name_only: float = NAME_ONLY_MIN_CONFIDENCE
    name_and_size_confidence: int = NAME_AND_SIZE_CONFIDENCE
    visual: float = MIN_VISUAL_SIMILARITY
    page_count: float = PAGE_COUNT_MATCH_THRESHOLD

    @classmethod
    def from_overrides(cls, overrides: dict[str, float]) -> "Thresholds":
        """Construit les seuils à partir de la section 'seuils' de la config (clés inconnues ignorées)."""
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("Seuil inconnu ignoré: %s", key)
                continue
            values[key] = int(value) if key == "name_and_size_confidence" else float(value)
        return cls(**values)


@dataclass
class NameSimilarity:
    is_match: bool
    confidence: int
    reason: str


_EXTENSION = re.compile(r"\.[^.]+$")
_PAREN_COUNTER = re.compile(r"\s*\(\d+\)$")
_VERSION_SUFFIX = re.compile(r"_v\d+$", re.IGNORECASE)
_SEPARATORS = re.compile(r"[\s_\-]+")
_STORED_PREFIX = re.compile(r"^\d+\s*-\s*[^-]+-\s*")


def strip_extension(name: str) -> str:
    return _EXTENSION.sub("", name)


def normalize_filename(name: str) -> str:
    """
    Normalise un nom pour comparaison : sans extension, sans compteur ' (2)',
    sans suffixe '_v3', en minuscules, sans espaces/underscores/tirets.
    """
    base = strip_extension(name)
    base = _PAREN_COUNTER.sub("", base)
    base = _VERSION_SUFFIX.sub("", base)
    return _SEPARATORS.sub("", base.lower())


def normalize_stored_name(name: str) -> str:
    """
    Variante pour les fichiers déjà stockés : retire aussi le préfixe
    '{lot} - {catégorie} - ' des noms générés.
    """
    base = strip_extension(name)
    base = re.sub(r"\s*\((\d+)\)$|_v\d+$", "", base)
    base = _STORED_PREFIX.sub("", base)
    return base.lower().strip()


def name_similarity(name1: str, name2: str, containment_ratio: float = NAME_CONTAINMENT_RATIO) -> NameSimilarity:
    """Compare deux noms normalisés : égalité (100) ou inclusion avec ratio de longueur suffisant."""
    a = normalize_filename(name1)
    b = normalize_filename(name2)
    if not a or not b:
        return NameSimilarity(False, 0, "Nom vide")
    if a == b:
        return NameSimilarity(True, 100, "Nom identique (version ignorée)")
    if a in b or b in a:
        shorter, longer = sorted((a, b), key=len)
        ratio = len(shorter) / len(longer) * 100
        if ratio >= containment_ratio:
            return NameSimilarity(True, round(ratio), "Nom similaire")
    return NameSimilarity(False, 0, "Nom différent")


def size_similarity(size1: Optional[int], size2: Optional[int]) -> float:
    """100 * (1 - |s1-s2| / moyenne) ; 0 si une taille est inconnue."""
    if size1 is None or size2 is None:
        return 0.0
    if size1 == size2:
        return 100.0
    avg = (size1 + size2) / 2
    return max(0.0, 100.0 * (1 - abs(size1 - size2) / avg))


FingerprintLoader = Callable[[JournalEntry], Optional[Fingerprint]]


class Classifier:
    """
    Compare un fichier entrant aux entrées existantes d'un lot/catégorie.
    Sans état entre deux appels : mêmes entrées -> même résultat.
    """

    def __init__(
        self,
        thresholds: Optional[Thresholds] = None,
        fingerprint_loader: Optional[FingerprintLoader] = None,
        visual: bool = True,
    ):
        self.thresholds = thresholds or Thresholds()
        self.fingerprint_loader = fingerprint_loader
        self.visual = visual

    def _match_entry(
        self, incoming: IncomingFile, fp: Fingerprint, entry: JournalEntry
    ) -> Optional[DuplicateCandidate]:
        t = self.thresholds

        # Un hash absent d'un côté ne vaut jamais égalité
        if fp.content_hash and entry.content_hash and fp.content_hash == entry.content_hash:
            return DuplicateCandidate(
                incoming, entry, HASH_MATCH_CONFIDENCE, MatchReason.HASH_EXACT,
                detail="Contenu identique (hash)",
            )

        name = name_similarity(incoming.name, entry.file_name, t.name_containment)
        size = size_similarity(fp.size_bytes, entry.file_size)
        if name.is_match and size >= t.size_match:
            return DuplicateCandidate(
                incoming, entry, t.name_and_size_confidence, MatchReason.NAME_AND_SIZE,
                detail=f"{name.reason} + taille identique",
            )
        if name.is_match and name.confidence >= t.name_only:
            return DuplicateCandidate(
                incoming, entry, name.confidence, MatchReason.NAME_ONLY, detail=name.reason
            )

        if name.is_match or not self.visual or self.fingerprint_loader is None:
            return None
        try:
            existing_fp = self.fingerprint_loader(entry)
        except OSError as e:
            logger.warning("Empreinte indisponible pour %s: %s", entry.relative_path, e)
            return None
        if existing_fp is None:
            return None
        visual = compare_fingerprints(fp, existing_fp, t.visual, t.page_count)
        if visual.is_duplicate and visual.similarity > 0:
            return DuplicateCandidate(
                incoming, entry, visual.similarity, MatchReason.VISUAL_STRUCTURE, detail=visual.reason
            )
        return None

    def evaluate(
        self,
        incoming: IncomingFile,
        existing_entries: Iterable[JournalEntry],
        fp: Optional[Fingerprint] = None,
    ) -> list[DuplicateCandidate]:
        """
        Candidats dans l'ordre d'itération des entrées existantes.
        Fichier entrant illisible -> liste vide (jamais considéré comme doublon).
        """
        if fp is None:
            try:
                data = incoming.read_bytes()
            except OSError as e:
                logger.error("Lecture impossible de %s, exclu de la détection: %s", incoming.name, e)
                return []
            fp = fingerprint(data, incoming.name)
        if not fp.content_hash:
            logger.warning("Hash absent pour %s, exclu de la détection", incoming.name)
            return []

        candidates = []
        for entry in existing_entries:
            candidate = self._match_entry(incoming, fp, entry)
            if candidate is not None and candidate.confidence > 0:
                candidates.append(candidate)
        return candidates

    def classify(
        self,
        incoming: IncomingFile,
        existing_entries: Iterable[JournalEntry],
        fp: Optional[Fingerprint] = None,
    ) -> list[DuplicateCandidate]:
        """Candidats triés par confiance décroissante (tri stable)."""
        candidates = self.evaluate(incoming, existing_entries, fp)
        return sorted(candidates, key=lambda c: c.confidence, reverse=True)


@dataclass
class DetectionResult:
    duplicates: list[DuplicateCandidate] = field(default_factory=list)
    non_duplicates: list[IncomingFile] = field(default_factory=list)
    # Fichiers illisibles : transmis comme non-doublons, listés pour information
    excluded: list[IncomingFile] = field(default_factory=list)


def _safe_fingerprint(incoming: IncomingFile) -> Optional[Fingerprint]:
    try:
        return fingerprint(incoming.read_bytes(), incoming.name)
    except OSError as e:
        logger.error("Lecture impossible de %s, exclu de la détection: %s", incoming.name, e)
        return None


def detect_duplicates(
    files: list[IncomingFile],
    journal,
    classifier: Classifier,
    max_workers: int = 4,
) -> DetectionResult:
    """
    Détecte les doublons d'une liste de fichiers à déposer.
    Les empreintes sont calculées en parallèle (lecture seule) ; la
    classification consulte ensuite le journal séquentiellement.
    Le doublon retenu pour un fichier est la première entrée satisfaisante
    dans l'ordre du journal.
    """
    result = DetectionResult()
    if not files:
        return result

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        fingerprints = list(pool.map(_safe_fingerprint, files))

    for incoming, fp in zip(files, fingerprints):
        if fp is None:
            result.excluded.append(incoming)
            result.non_duplicates.append(incoming)
            continue
        existing = journal.entries_for(incoming.batch_id, incoming.category)
        candidates = classifier.evaluate(incoming, existing, fp)
        if candidates:
            primary = candidates[0]
            logger.info(
                "Doublon: %s ~ %s (%s, %s%%)",
                incoming.name, primary.matched_entry.file_name, primary.reason.value, primary.confidence,
            )
            result.duplicates.append(primary)
        else:
            result.non_duplicates.append(incoming)

    logger.info(
        "Détection terminée: %s doublon(s), %s nouveau(x) fichier(s)",
        len(result.duplicates), len(result.non_duplicates),
    )
    return result


def find_duplicate_groups(
    entries: list[JournalEntry],
    sizes: Optional[dict[str, int]] = None,
) -> list[DuplicateGroup]:
    """
    Regroupe les fichiers stockés d'un même lot : hash identique, puis nom + taille,
    puis nom seul quand les tailles varient de moins de 10 %.
    :param sizes: Tailles par chemin relatif (sinon file_size des entrées).
    """
    sizes = sizes or {}

    def size_of(e: JournalEntry) -> int:
        return sizes.get(e.relative_path, e.file_size or 0)

    by_batch: dict[str, list[JournalEntry]] = {}
    for e in entries:
        by_batch.setdefault(e.batch_id, []).append(e)

    groups: list[DuplicateGroup] = []
    for batch_entries in by_batch.values():
        grouped: set[str] = set()

        by_hash: dict[str, list[JournalEntry]] = {}
        for e in batch_entries:
            if e.content_hash:
                by_hash.setdefault(e.content_hash, []).append(e)
        for members in by_hash.values():
            if len(members) > 1:
                groups.append(DuplicateGroup("identical-hash", GROUP_HASH_CONFIDENCE, members))
                grouped.update(m.key for m in members)

        by_name_size: dict[tuple[str, int], list[JournalEntry]] = {}
        for e in batch_entries:
            by_name_size.setdefault((normalize_stored_name(e.file_name), size_of(e)), []).append(e)
        for members in by_name_size.values():
            if len(members) > 1 and not all(m.key in grouped for m in members):
                groups.append(DuplicateGroup("identical-size-name", GROUP_NAME_SIZE_CONFIDENCE, members))
                grouped.update(m.key for m in members)

        by_name: dict[str, list[JournalEntry]] = {}
        for e in batch_entries:
            by_name.setdefault(normalize_stored_name(e.file_name), []).append(e)
        for members in by_name.values():
            if len(members) < 2 or all(m.key in grouped for m in members):
                continue
            member_sizes = [size_of(m) for m in members]
            largest = max(member_sizes)
            variation = (largest - min(member_sizes)) * 100 / largest if largest else 0
            if variation < GROUP_MAX_SIZE_VARIATION:
                groups.append(DuplicateGroup("similar-name", GROUP_SIMILAR_NAME_CONFIDENCE, members))
                grouped.update(m.key for m in members)

    return groups
