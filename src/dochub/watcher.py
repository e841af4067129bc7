"""
Surveillance du dossier de dépôt (watchdog).
Arborescence attendue : {inbox}/{lot}/{catégorie}/{fichier}. Un fichier n'est
transmis au callback qu'une fois sa taille inchangée pendant stability_seconds
(copie réseau ou scanner encore en cours d'écriture sinon).
"""
import fnmatch
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from dochub.logging_conf import get_logger
from dochub.models import DocCategory

logger = get_logger("watcher")

DEFAULT_EXCLUDE_PATTERNS = ["*.tmp", "~*", "*.part", ".*"]

StableCallback = Callable[[Path], None]


def is_excluded(path: Path, patterns: list[str]) -> bool:
    return any(fnmatch.fnmatch(path.name, pattern) for pattern in patterns)


def parse_inbox_path(inbox: Path, path: Path) -> Optional[tuple[str, DocCategory]]:
    """
    Déduit (lot, catégorie) de l'emplacement d'un fichier déposé.
    None si le fichier n'est pas à la profondeur {lot}/{catégorie}/{fichier}
    ou si la catégorie est inconnue.
    """
    try:
        parts = path.resolve().relative_to(inbox.resolve()).parts
    except ValueError:
        return None
    if len(parts) != 3:
        return None
    category = DocCategory.from_folder_name(parts[1])
    if category is None:
        return None
    return parts[0], category


@dataclass
class _Pending:
    size: int
    since: float


class StableFileHandler(FileSystemEventHandler):
    """
    Suit les fichiers créés, modifiés ou déplacés dans le dépôt ; process_stable()
    déclenche le callback pour ceux dont la taille n'a pas bougé depuis
    stability_seconds. Un fichier dont la taille change repart de zéro.
    """

    def __init__(
        self,
        inbox: Path,
        on_stable_file: StableCallback,
        stability_seconds: float = 5.0,
        min_file_size: int = 0,
        exclude_patterns: Optional[list[str]] = None,
    ):
        super().__init__()
        self.inbox = Path(inbox)
        self.on_stable_file = on_stable_file
        self.stability_seconds = stability_seconds
        self.min_file_size = min_file_size
        self.exclude_patterns = exclude_patterns or list(DEFAULT_EXCLUDE_PATTERNS)
        self._pending: dict[Path, _Pending] = {}
        self._lock = threading.Lock()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def accepts(self, path: Path) -> bool:
        """Fichier à importer : non exclu, bien placé, taille minimale atteinte."""
        if is_excluded(path, self.exclude_patterns):
            return False
        if parse_inbox_path(self.inbox, path) is None:
            logger.warning("Fichier hors arborescence {lot}/{catégorie}/ ignoré: %s", path)
            return False
        try:
            return path.stat().st_size >= self.min_file_size
        except OSError:
            return False

    def track(self, path: Path) -> None:
        path = path.resolve()
        try:
            size = path.stat().st_size
        except OSError:
            return
        with self._lock:
            if path not in self._pending:
                self._pending[path] = _Pending(size, time.monotonic())
                logger.debug("En attente de stabilité: %s", path.name)

    def _pop_stable(self) -> list[Path]:
        now = time.monotonic()
        ready = []
        with self._lock:
            for path, pending in list(self._pending.items()):
                try:
                    size = path.stat().st_size
                except OSError:
                    del self._pending[path]
                    continue
                if size != pending.size:
                    self._pending[path] = _Pending(size, now)
                elif now - pending.since >= self.stability_seconds:
                    del self._pending[path]
                    ready.append(path)
        return ready

    def process_stable(self) -> int:
        """
        Transmet les fichiers devenus stables au callback (hors verrou).
        :return: Nombre de fichiers transmis.
        """
        count = 0
        for path in self._pop_stable():
            if not path.exists() or not self.accepts(path):
                continue
            logger.info("Fichier stable: %s", path.name)
            try:
                self.on_stable_file(path)
                count += 1
            except Exception:
                logger.exception("Échec du traitement de %s", path)
        return count

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self.accepts(Path(event.src_path)):
            self.track(Path(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        self.on_created(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self.accepts(Path(event.dest_path)):
            self.track(Path(event.dest_path))


class InboxWatcher:
    """Observer watchdog récursif + thread de contrôle de stabilité."""

    def __init__(
        self,
        inbox: Path,
        on_stable_file: StableCallback,
        stability_seconds: float = 5.0,
        check_interval: float = 1.0,
        min_file_size: int = 0,
        exclude_patterns: Optional[list[str]] = None,
    ):
        self.inbox = Path(inbox)
        self.check_interval = check_interval
        self.handler = StableFileHandler(
            self.inbox, on_stable_file, stability_seconds, min_file_size, exclude_patterns
        )
        self._observer = Observer()
        self._stop = threading.Event()
        self._checker = threading.Thread(target=self._check_loop, name="dochub-stability", daemon=True)

    def _check_loop(self) -> None:
        while not self._stop.wait(self.check_interval):
            self.handler.process_stable()

    def start(self) -> None:
        self._observer.schedule(self.handler, str(self.inbox), recursive=True)
        self._observer.start()
        self._checker.start()
        logger.info("Surveillance du dépôt: %s (stabilité %s s)", self.inbox, self.handler.stability_seconds)

    def stop(self) -> None:
        self._stop.set()
        self._observer.stop()

    def join(self, timeout: Optional[float] = None) -> None:
        self._observer.join(timeout)
        if self._checker.is_alive():
            self._checker.join(timeout)


def scan_existing_files(
    inbox: Path,
    callback: StableCallback,
    exclude_patterns: Optional[list[str]] = None,
) -> int:
    """Traite les fichiers déjà présents dans le dépôt au démarrage. :return: Nombre traité."""
    if not inbox.is_dir():
        return 0
    patterns = exclude_patterns or list(DEFAULT_EXCLUDE_PATTERNS)
    count = 0
    for path in sorted(inbox.glob("*/*/*")):
        if not path.is_file() or is_excluded(path, patterns) or parse_inbox_path(inbox, path) is None:
            continue
        logger.info("Fichier présent au démarrage: %s", path.name)
        try:
            callback(path)
            count += 1
        except Exception:
            logger.exception("Échec du traitement de %s", path)
    return count
