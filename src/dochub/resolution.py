"""
Application des décisions utilisateur sur les doublons détectés :
ignorer, écraser le fichier existant, ou conserver les deux avec un suffixe _vN.
"""
import re
from collections import Counter
from typing import Optional

from dochub.logging_conf import get_logger
from dochub.models import (
    DispositionKind,
    DocCategory,
    DuplicateAction,
    DuplicateCandidate,
    FileDisposition,
)

logger = get_logger("resolution")

FIRST_VERSION = 2
MAX_VERSION_ATTEMPTS = 100

_VERSION_SUFFIX = re.compile(r"_v\d+$", re.IGNORECASE)


def split_extension(file_name: str) -> tuple[str, str]:
    """('facture', '.pdf') ; extension vide si le nom n'a pas de point."""
    dot = file_name.rfind(".")
    if dot <= 0:
        return file_name, ""
    return file_name[:dot], file_name[dot:]


def versioned_filename(file_name: str, version: int) -> str:
    """'facture.pdf' -> 'facture_v2.pdf'."""
    stem, ext = split_extension(file_name)
    return f"{stem}_v{version}{ext}"


def next_version(
    journal,
    batch_id: str,
    category: DocCategory,
    file_name: str,
    reserved: Optional[set[str]] = None,
) -> int:
    """
    Premier numéro de version libre pour ce lot/catégorie, à partir de 2.
    Recherche bornée : après MAX_VERSION_ATTEMPTS essais, la dernière valeur tentée est retenue.
    :param reserved: Noms déjà attribués dans la même série de décisions.
    """
    stem, ext = split_extension(file_name)
    stem = _VERSION_SUFFIX.sub("", stem)
    reserved = reserved or set()
    version = FIRST_VERSION
    for attempt in range(MAX_VERSION_ATTEMPTS):
        version = FIRST_VERSION + attempt
        candidate = f"{stem}_v{version}{ext}"
        if candidate not in reserved and not journal.lookup(batch_id, category, candidate):
            return version
    logger.warning("Aucune version libre trouvée pour %s, utilisation de _v%s", file_name, version)
    return version


def _base_name(file_name: str) -> str:
    stem, ext = split_extension(file_name)
    return _VERSION_SUFFIX.sub("", stem) + ext


def resolve(
    candidates: list[DuplicateCandidate],
    chosen_actions: Optional[dict[str, DuplicateAction]],
    journal,
    apply_to_all: Optional[DuplicateAction] = None,
) -> list[FileDisposition]:
    """
    Calcule le sort de chaque doublon.
    :param candidates: Un candidat (doublon retenu) par fichier entrant.
    :param chosen_actions: Décision par identifiant de fichier (file_id).
    :param apply_to_all: Décision globale, prioritaire sur les décisions individuelles.
    :return: Une disposition par candidat, dans le même ordre.
    """
    chosen_actions = chosen_actions or {}
    dispositions = []
    reserved: dict[tuple[str, DocCategory], set[str]] = {}
    for candidate in candidates:
        incoming = candidate.incoming
        action = apply_to_all or chosen_actions.get(incoming.file_id) or candidate.suggested_action
        action = DuplicateAction(action)

        if action == DuplicateAction.SKIP:
            dispositions.append(FileDisposition(DispositionKind.DROPPED, incoming, None, candidate))
            logger.info("Ignoré (doublon): %s", incoming.name)
        elif action == DuplicateAction.REPLACE:
            target = candidate.matched_entry.file_name
            dispositions.append(FileDisposition(DispositionKind.REPLACE, incoming, target, candidate))
            logger.info("Écrasement: %s remplacera %s", incoming.name, target)
        else:
            taken = reserved.setdefault((incoming.batch_id, incoming.category), set())
            version = next_version(journal, incoming.batch_id, incoming.category, incoming.name, taken)
            target = versioned_filename(_base_name(incoming.name), version)
            taken.add(target)
            dispositions.append(FileDisposition(DispositionKind.VERSIONED, incoming, target, candidate))
            logger.info("Nouvelle version: %s -> %s", incoming.name, target)
    return dispositions


def action_summary(dispositions: list[FileDisposition]) -> dict[str, int]:
    """Nombre de fichiers par type de décision (dropped / replace / versioned)."""
    counts = Counter(d.kind.value for d in dispositions)
    return {kind.value: counts.get(kind.value, 0) for kind in DispositionKind}
