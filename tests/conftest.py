"""
Fixtures communes : racine de stockage temporaire, génération de PDF et d'images.
"""
import io
from datetime import datetime, timezone
from pathlib import Path

import pytest

from dochub.journal import UploadJournal
from dochub.models import DocCategory, JournalEntry
from dochub.storage import LocalFolderBackend


def make_pdf(texts: list[str], width: float = 595, height: float = 842) -> bytes:
    """PDF d'une page par texte (PyMuPDF)."""
    import fitz

    doc = fitz.open()
    for text in texts:
        page = doc.new_page(width=width, height=height)
        page.insert_text((72, 72), text, fontsize=24)
    data = doc.tobytes()
    doc.close()
    return data


def make_png(size: tuple[int, int] = (64, 64)) -> bytes:
    """Image moitié noire / moitié blanche (hash perceptuel stable au redimensionnement)."""
    from PIL import Image

    img = Image.new("L", size, 255)
    img.paste(0, (0, 0, size[0] // 2, size[1]))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def make_entry(
    batch_id: str,
    category: DocCategory,
    file_name: str,
    size: int | None = None,
    content_hash: str | None = None,
    uploaded_at: datetime | None = None,
) -> JournalEntry:
    return JournalEntry(
        batch_id=batch_id,
        category=category,
        file_name=file_name,
        uploaded_at=uploaded_at or datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        relative_path=f"{batch_id}/{category.folder_name}/{file_name}",
        file_size=size,
        content_hash=content_hash,
    )


def put_file(root: Path, batch: str, folder: str, name: str, data: bytes) -> Path:
    """Crée {root}/{batch}/{folder}/{name}."""
    path = root / batch / folder / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


@pytest.fixture
def storage_root(tmp_path: Path) -> Path:
    root = tmp_path / "Lots"
    root.mkdir()
    return root


@pytest.fixture
def backend(storage_root: Path) -> LocalFolderBackend:
    return LocalFolderBackend(storage_root)


@pytest.fixture
def journal() -> UploadJournal:
    return UploadJournal()


@pytest.fixture
def pdf_bytes():
    return make_pdf


@pytest.fixture
def png_bytes():
    return make_png


@pytest.fixture
def entry_factory():
    return make_entry


@pytest.fixture
def put():
    return put_file
