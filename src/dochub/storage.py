"""
Accès au stockage des documents : interface minimale commune aux backends
(dossier local, drive cloud) et implémentation sur le système de fichiers local.
Chemins relatifs à la racine, séparateur '/'.
Arborescence : {racine}/{lot}/{dossier catégorie}/{fichier}
"""
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

from dochub.logging_conf import get_logger
from dochub.models import DocCategory

logger = get_logger("storage")


class StorageRootError(Exception):
    """Racine de stockage absente ou inaccessible (erreur de configuration, non récupérable)."""


@dataclass
class FileStat:
    size: int
    modified: datetime


class StorageBackend(Protocol):
    def check_root(self) -> None: ...

    def write_file(self, folder: str, file_name: str, data: bytes) -> str: ...

    def read_file(self, path: str) -> Optional[bytes]: ...

    def list_subdirectories(self, path: str = "") -> list[str]: ...

    def list_files(self, path: str) -> list[str]: ...

    def stat(self, path: str) -> FileStat: ...

    def delete_file(self, path: str) -> None: ...


def sanitize_batch_id(batch_id: str | int) -> str:
    """Nom de dossier d'un lot : alphanumérique, tiret, underscore ; le reste devient _."""
    return re.sub(r"[^a-zA-Z0-9\-_]", "_", str(batch_id))


def category_folder(batch_id: str | int, category: DocCategory) -> str:
    """Dossier relatif d'un lot/catégorie : '{lot}/{catégorie}'."""
    return f"{sanitize_batch_id(batch_id)}/{category.folder_name}"


def join_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p)


class LocalFolderBackend:
    """Backend sur un dossier local (ou partage réseau monté / UNC)."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def check_root(self) -> None:
        """:raises StorageRootError: Si la racine n'existe pas ou n'est pas accessible."""
        if not self.root.is_dir():
            raise StorageRootError(f"Racine de stockage introuvable: {self.root}")
        if not os.access(self.root, os.R_OK | os.W_OK):
            raise StorageRootError(f"Droits insuffisants sur la racine de stockage: {self.root}")

    def _abs(self, path: str) -> Path:
        parts = [p for p in path.replace("\\", "/").split("/") if p]
        if any(p == ".." for p in parts):
            raise ValueError(f"Chemin hors de la racine: {path}")
        return self.root.joinpath(*parts)

    def _ensure_dir(self, path: Path) -> None:
        """Crée le répertoire (et parents) si nécessaire."""
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Impossible de créer le dossier %s: %s", path, e)
            raise

    def write_file(self, folder: str, file_name: str, data: bytes) -> str:
        """
        Écrit (ou écrase) un fichier via un temporaire renommé.
        :return: Chemin relatif final.
        """
        self.check_root()
        dest_dir = self._abs(folder)
        self._ensure_dir(dest_dir)
        final_path = dest_dir / file_name
        fd, tmp_name = tempfile.mkstemp(prefix=".upload-", suffix=".part", dir=dest_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, final_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("Fichier écrit: %s", final_path)
        return join_path(folder, file_name)

    def read_file(self, path: str) -> Optional[bytes]:
        target = self._abs(path)
        if not target.is_file():
            return None
        return target.read_bytes()

    def list_subdirectories(self, path: str = "") -> list[str]:
        base = self._abs(path)
        return sorted(p.name for p in base.iterdir() if p.is_dir())

    def list_files(self, path: str) -> list[str]:
        base = self._abs(path)
        return sorted(p.name for p in base.iterdir() if p.is_file())

    def stat(self, path: str) -> FileStat:
        st = self._abs(path).stat()
        return FileStat(size=st.st_size, modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc))

    def delete_file(self, path: str) -> None:
        self._abs(path).unlink()
        logger.info("Fichier supprimé: %s", path)
