"""
Empreintes de fichiers pour la détection de doublons :
- SHA-256 du contenu brut (identité exacte)
- PDF (PyMuPDF) : nombre de pages, empreinte de structure des premières pages,
  hash perceptuel de la première page rendue en basse résolution
- Images (Pillow) : hash perceptuel (average hash 8x8 en niveaux de gris)
Le calcul ne lève jamais d'exception : en cas d'échec de parsing, les champs
enrichis sont simplement absents et la comparaison se rabat sur taille/nom.
"""
import hashlib
import io
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from rapidfuzz.distance import Hamming

from dochub.logging_conf import get_logger
from dochub.models import FileType, Fingerprint

logger = get_logger("fingerprint")

PDF_EXTENSIONS = {".pdf"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp"}

# Bornes d'échantillonnage : coût constant quelle que soit la taille du document
MAX_STRUCTURE_PAGES = 5
HASH_SIZE = 8
FIRST_PAGE_RENDER_SCALE = 0.5
MAX_IMAGE_DIMENSION = 512

PAGE_COUNT_MATCH_THRESHOLD = 90
MIN_VISUAL_SIMILARITY = 75


def content_hash(data: bytes) -> str:
    """SHA-256 hexadécimal du contenu."""
    return hashlib.sha256(data).hexdigest()


def detect_file_type(name: str) -> FileType:
    suffix = Path(name).suffix.lower()
    if suffix in PDF_EXTENSIONS:
        return FileType.PDF
    if suffix in IMAGE_EXTENSIONS:
        return FileType.IMAGE
    return FileType.OTHER


def average_hash(img, hash_size: int = HASH_SIZE) -> str:
    """
    Average hash : réduction à hash_size x hash_size en niveaux de gris,
    bit à 1 si le pixel dépasse la moyenne de la grille.
    :return: Chaîne de hash_size² caractères '0'/'1'.
    """
    from PIL import Image

    small = img.convert("L").resize((hash_size, hash_size), Image.Resampling.BILINEAR)
    pixels = list(small.tobytes())
    mean = sum(pixels) / len(pixels)
    return "".join("1" if p > mean else "0" for p in pixels)


def hash_similarity(hash1: Optional[str], hash2: Optional[str]) -> float:
    """Pourcentage de bits identiques (0 si un hash manque ou si les longueurs diffèrent)."""
    if not hash1 or not hash2 or len(hash1) != len(hash2):
        return 0.0
    return 100.0 * Hamming.similarity(hash1, hash2) / len(hash1)


def _add_pdf_fingerprint(data: bytes, fp: Fingerprint) -> None:
    import fitz  # PyMuPDF

    doc = fitz.open(stream=data, filetype="pdf")
    try:
        fp.page_count = doc.page_count
        structure = []
        for i in range(min(MAX_STRUCTURE_PAGES, doc.page_count)):
            page = doc[i]
            has_text = bool(page.get_text().strip())
            structure.append(
                f"{round(page.rect.width)}x{round(page.rect.height)}_{'T' if has_text else 'N'}"
            )
        fp.structure_digest = hashlib.sha256("|".join(structure).encode("utf-8")).hexdigest()[:16]

        if doc.page_count:
            # Rendu basse résolution de la première page, indépendant du reste
            try:
                from PIL import Image

                first = doc[0]
                pix = first.get_pixmap(
                    matrix=fitz.Matrix(FIRST_PAGE_RENDER_SCALE, FIRST_PAGE_RENDER_SCALE),
                    alpha=False,
                )
                if pix.width and pix.height:
                    img = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
                    fp.first_page_image_hash = average_hash(img)
                    fp.width = round(first.rect.width)
                    fp.height = round(first.rect.height)
            except Exception as e:
                logger.debug("Rendu première page impossible pour %s: %s", fp.file_name, e)
    finally:
        doc.close()


def _add_image_fingerprint(data: bytes, fp: Fingerprint) -> None:
    from PIL import Image

    with Image.open(io.BytesIO(data)) as img:
        fp.width, fp.height = img.size
        img.draft("RGB", (MAX_IMAGE_DIMENSION, MAX_IMAGE_DIMENSION))
        work = img.convert("RGB")
        work.thumbnail((MAX_IMAGE_DIMENSION, MAX_IMAGE_DIMENSION))
        fp.image_hash = average_hash(work)


def fingerprint(data: bytes, name: str) -> Fingerprint:
    """
    Calcule l'empreinte d'un fichier. Ne lève jamais d'exception :
    file_type et size_bytes sont toujours renseignés.
    :param data: Contenu brut du fichier.
    :param name: Nom du fichier (l'extension détermine le type).
    """
    fp = Fingerprint(file_name=name, file_type=detect_file_type(name), size_bytes=len(data))
    try:
        fp.content_hash = content_hash(data)
    except Exception as e:
        logger.warning("Hash impossible pour %s: %s", name, e)

    try:
        if fp.file_type == FileType.PDF:
            _add_pdf_fingerprint(data, fp)
        elif fp.file_type == FileType.IMAGE:
            _add_image_fingerprint(data, fp)
    except Exception as e:
        logger.warning("Empreinte partielle pour %s: %s", name, e)
    return fp


@dataclass
class VisualSimilarity:
    """Résultat d'une comparaison visuelle/structurelle entre deux empreintes."""

    similarity: int
    match_type: str  # identical-structure | similar-structure | different-pages | different-format | no-match
    reason: str
    is_duplicate: bool
    page_count_match: Optional[int] = None
    structure_match: Optional[int] = None
    image_hash_match: Optional[int] = None


def _compare_pdf(fp1: Fingerprint, fp2: Fingerprint, min_similarity: float, page_threshold: float) -> VisualSimilarity:
    total = 0.0
    factors = 0
    page_match = structure_match = image_match = None
    page_diff = None

    if fp1.page_count is not None and fp2.page_count is not None:
        page_diff = abs(fp1.page_count - fp2.page_count)
        max_pages = max(fp1.page_count, fp2.page_count)
        similarity = 100.0 if page_diff == 0 else max(0.0, (1 - page_diff / max_pages) * 100)
        page_match = round(similarity)
        # Un écart de pages important n'entre pas dans la moyenne
        if similarity >= page_threshold:
            total += similarity
            factors += 1

    if fp1.structure_digest and fp2.structure_digest:
        structure_match = 100 if fp1.structure_digest == fp2.structure_digest else 0
        total += structure_match
        factors += 1

    if fp1.first_page_image_hash and fp2.first_page_image_hash:
        sim = hash_similarity(fp1.first_page_image_hash, fp2.first_page_image_hash)
        image_match = round(sim)
        total += sim
        factors += 1

    average = total / factors if factors else 0.0
    if average >= 95:
        match_type = "identical-structure"
        reason = f"PDF très similaires : {fp1.page_count} pages, {round(average)}%"
    elif average >= 85:
        match_type = "similar-structure"
        reason = f"PDF similaires : {fp1.page_count} vs {fp2.page_count} pages, {round(average)}%"
    elif page_diff:
        match_type = "different-pages"
        reason = f"Nombre de pages différent : {fp1.page_count} vs {fp2.page_count}"
    else:
        match_type = "no-match"
        reason = f"Faible similarité : {round(average)}%"

    return VisualSimilarity(
        similarity=round(average),
        match_type=match_type,
        reason=reason,
        is_duplicate=average >= min_similarity,
        page_count_match=page_match,
        structure_match=structure_match,
        image_hash_match=image_match,
    )


def _compare_image(fp1: Fingerprint, fp2: Fingerprint, min_similarity: float) -> VisualSimilarity:
    if not fp1.image_hash or not fp2.image_hash:
        return VisualSimilarity(0, "no-match", "Hash d'image indisponible", False)
    sim = hash_similarity(fp1.image_hash, fp2.image_hash)
    if sim >= 98:
        match_type, reason = "identical-structure", f"Images identiques : {round(sim)}%"
    elif sim >= 92:
        match_type, reason = "similar-structure", f"Images similaires : {round(sim)}% (redimensionnée ou compressée ?)"
    else:
        match_type, reason = "no-match", f"Images différentes : {round(sim)}%"
    return VisualSimilarity(
        similarity=round(sim),
        match_type=match_type,
        reason=reason,
        is_duplicate=sim >= min_similarity,
        image_hash_match=round(sim),
    )


def compare_fingerprints(
    fp1: Fingerprint,
    fp2: Fingerprint,
    min_similarity: float = MIN_VISUAL_SIMILARITY,
    page_threshold: float = PAGE_COUNT_MATCH_THRESHOLD,
) -> VisualSimilarity:
    """
    Compare deux empreintes.
    PDF : moyenne des signaux disponibles (pages, structure, hash première page).
    Image : similarité du hash perceptuel seule.
    """
    if fp1.file_type != fp2.file_type:
        return VisualSimilarity(
            0, "different-format", f"Types différents : {fp1.file_type.value} vs {fp2.file_type.value}", False
        )
    if fp1.file_type == FileType.PDF:
        return _compare_pdf(fp1, fp2, min_similarity, page_threshold)
    if fp1.file_type == FileType.IMAGE:
        return _compare_image(fp1, fp2, min_similarity)
    return VisualSimilarity(0, "no-match", "Type non comparable", False)
