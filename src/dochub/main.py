"""
CLI dochub : reconstruction du journal, détection de doublons, dépôt de fichiers,
état des lots, surveillance d'un dossier de dépôt.
"""
import argparse
import csv
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Optional

import yaml

from dochub.completion import batch_completion, completion_summary
from dochub.config import (
    default_config,
    get_default_action,
    get_inbox_path,
    get_storage_root,
    get_thresholds_overrides,
    get_valid_batches_file,
    load_config,
)
from dochub.journal import UploadJournal, repair_journal_file
from dochub.logging_conf import get_logger, parse_level, setup_logging
from dochub.models import DocCategory, DuplicateAction, IncomingFile, ScanProgress
from dochub.scanner import ReconciliationScanner
from dochub.similarity import Classifier, Thresholds, find_duplicate_groups
from dochub.storage import LocalFolderBackend, StorageRootError
from dochub.uploader import DocumentUploader
from dochub.watcher import InboxWatcher, parse_inbox_path, scan_existing_files

logger = get_logger("main")

_CATEGORY_ALIASES = {
    "po": DocCategory.PURCHASE_ORDER,
    "so": DocCategory.SALES_ORDER,
    "si": DocCategory.SUPPLIER_INVOICE,
    "ci": DocCategory.CUSTOMER_INVOICE,
}


def parse_category(value: str) -> DocCategory:
    """Catégorie depuis son libellé, son nom de dossier ou un alias court (po, so, si, ci)."""
    alias = _CATEGORY_ALIASES.get(value.strip().lower())
    if alias:
        return alias
    try:
        return DocCategory.from_label(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def read_valid_batch_ids(path: str | Path) -> set[str]:
    """
    Lit les numéros de lot valides (export de la source des enregistrements) :
    première colonne d'un CSV ou un identifiant par ligne ; lignes '#' ignorées.
    """
    ids = set()
    with open(path, encoding="utf-8", newline="") as f:
        for row in csv.reader(f):
            if not row:
                continue
            value = row[0].strip()
            if value and not value.startswith("#"):
                ids.add(value)
    return ids


class Hub:
    """Objets partagés par les commandes pour une racine de stockage."""

    def __init__(self, config: dict[str, Any]):
        self.config = config
        self.root = get_storage_root(config)
        self.backend = LocalFolderBackend(self.root)
        self.backend.check_root()
        self.journal = UploadJournal()
        self.journal.load(self.root)
        self.uploader = DocumentUploader(
            self.journal,
            self.backend,
            self.root,
            max_workers=int(config.get("max_workers", 4)),
        )
        self.uploader.classifier = Classifier(
            thresholds=Thresholds.from_overrides(get_thresholds_overrides(config)),
            fingerprint_loader=self.uploader.load_fingerprint,
            visual=bool(config.get("similarite_visuelle", True)),
        )


def _load(config_path: str, root: Optional[str], verbose: bool = False) -> dict[str, Any]:
    if Path(config_path).is_file():
        config = load_config(config_path)
    elif root:
        config = default_config()
    else:
        raise FileNotFoundError(f"Fichier de configuration introuvable: {config_path}")
    if root:
        config["racine_stockage"] = str(Path(root).resolve())
    log_dir = Path(config["log_dir"]) if config.get("log_dir") else Path(config_path).resolve().parent
    level = logging.DEBUG if verbose else parse_level(config.get("log_level"))
    setup_logging(log_file=config.get("log_file"), level=level, log_dir=log_dir)
    return config


def _print_json(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def _print_progress(progress: ScanProgress) -> None:
    total = f"/{progress.total_folders}" if progress.total_folders is not None else ""
    print(f"[{progress.status}] {progress.scanned_count}{total} {progress.message}", file=sys.stderr, flush=True)


def cmd_rebuild(hub: Hub, valid_file: Optional[str], duplicates: bool, no_hash: bool) -> int:
    """Reconstruit le journal depuis les dossiers de lots."""
    valid_path = Path(valid_file) if valid_file else get_valid_batches_file(hub.config)
    valid = read_valid_batch_ids(valid_path) if valid_path else None
    scanner = ReconciliationScanner(
        hub.journal,
        hub.backend,
        hub.root,
        hash_files=not no_hash and bool(hub.config.get("hash_au_scan", True)),
    )
    cancel = threading.Event()

    def on_sigint(signum, frame):
        logger.info("Arrêt demandé (Ctrl+C), annulation de la reconstruction...")
        cancel.set()

    previous_handler = signal.signal(signal.SIGINT, on_sigint)
    try:
        result = scanner.rebuild(valid, on_progress=_print_progress, cancel_event=cancel, detect_duplicates=duplicates)
    finally:
        signal.signal(signal.SIGINT, previous_handler)
    _print_json(result.to_dict())
    if result.cancelled:
        return 130
    return 0 if result.success else 1


def _incoming_files(paths: list[str], batch: str, category: DocCategory) -> list[IncomingFile]:
    return [IncomingFile(name=Path(p).name, batch_id=batch, category=category, path=Path(p)) for p in paths]


def cmd_check(hub: Hub, paths: list[str], batch: str, category: DocCategory) -> int:
    """Affiche les doublons potentiels sans rien écrire."""
    out = []
    for incoming in _incoming_files(paths, batch, category):
        candidates = hub.uploader.classifier.classify(incoming, hub.journal.entries_for(batch, category))
        out.append({
            "file": incoming.name,
            "candidates": [
                {
                    "existing": c.matched_entry.file_name,
                    "confidence": c.confidence,
                    "reason": c.reason.value,
                    "detail": c.detail,
                }
                for c in candidates
            ],
        })
    _print_json(out)
    return 0


def cmd_import(
    hub: Hub,
    paths: list[str],
    batch: str,
    category: DocCategory,
    action: Optional[str],
    reference: Optional[str],
) -> int:
    """Dépose des fichiers dans un lot/catégorie."""
    apply_to_all = DuplicateAction(action) if action else get_default_action(hub.config)
    report = hub.uploader.import_files(
        _incoming_files(paths, batch, category), apply_to_all=apply_to_all, reference=reference
    )
    _print_json({
        "uploaded": [e.relative_path for e in report.uploaded],
        "skipped": [d.incoming.name for d in report.dropped],
        "failed": [{"file": f.name, "error": err} for f, err in report.failed],
        "decisions": report.decisions,
    })
    return 0 if not report.failed else 1


def cmd_status(hub: Hub, batches: list[str]) -> int:
    """État de complétude des lots (tous les lots journalisés par défaut)."""
    out = []
    for batch in batches or hub.journal.batch_ids():
        completion = batch_completion(batch, hub.journal)
        out.append({
            "batch": completion.batch_id,
            "percentage": completion.percentage,
            "summary": completion_summary(completion),
            "uploaded": {cat.value: n for cat, n in completion.uploaded.items()},
        })
    _print_json(out)
    return 0


def cmd_duplicates(hub: Hub, batches: list[str], delete_extras: bool) -> int:
    """Liste les doublons déjà stockés ; --delete-extras garde le premier fichier de chaque groupe."""
    if batches:
        entries = [e for batch in batches for e in hub.journal.entries_for_batch(batch)]
    else:
        entries = hub.journal.entries()
    groups = find_duplicate_groups(entries)
    _print_json([
        {"reason": g.reason, "confidence": g.confidence, "files": [e.relative_path for e in g.entries]}
        for g in groups
    ])
    if not delete_extras:
        return 0
    extras = {e.key: e for g in groups for e in g.entries[1:]}
    deleted, errors = hub.uploader.delete_files(list(extras.values()))
    print(f"{deleted} fichier(s) supprimé(s)", file=sys.stderr)
    return 0 if not errors else 1


def inbox_callback_factory(hub: Hub, inbox: Path):
    """Fabrique le callback appelé quand un fichier est stable dans le dépôt."""
    default_action = get_default_action(hub.config)

    def on_stable_file(path: Path) -> None:
        target = parse_inbox_path(inbox, path)
        if target is None:
            return
        batch, category = target
        incoming = IncomingFile(name=path.name, batch_id=batch, category=category, path=path)
        report = hub.uploader.import_files([incoming], apply_to_all=default_action)
        if report.failed:
            logger.error("Fichier conservé dans le dépôt après échec: %s", path)
            return
        path.unlink(missing_ok=True)

    return on_stable_file


def cmd_watch(hub: Hub) -> int:
    """Surveille le dossier de dépôt et importe les fichiers stables."""
    inbox = get_inbox_path(hub.config)
    inbox.mkdir(parents=True, exist_ok=True)
    exclude = hub.config.get("exclude_patterns") or None
    callback = inbox_callback_factory(hub, inbox)
    # Un seul thread écrit dans le journal : le scan initial précède l'observer
    if hub.config.get("scan_existing_on_start", True):
        scan_existing_files(inbox, callback, exclude)
    watcher = InboxWatcher(
        inbox,
        callback,
        stability_seconds=float(hub.config.get("stability_seconds", 5)),
        check_interval=float(hub.config.get("stability_check_interval", 1)),
        exclude_patterns=exclude,
    )
    watcher.start()
    try:
        watcher.join()
    except KeyboardInterrupt:
        logger.info("Arrêt demandé (Ctrl+C)")
        watcher.stop()
        watcher.join(timeout=5)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dochub", description="Journal des documents de lots : doublons et reconstruction")
    parser.add_argument("--config", "-c", default="config.yaml", help="Fichier de configuration YAML")
    parser.add_argument("--root", default=None, help="Racine de stockage (remplace racine_stockage)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Logs détaillés (DEBUG)")
    sub = parser.add_subparsers(dest="command", required=True)

    rebuild_p = sub.add_parser("rebuild", help="Reconstruire le journal depuis les dossiers")
    rebuild_p.add_argument("--valid-batches", default=None, help="Fichier des numéros de lot valides (CSV ou texte)")
    rebuild_p.add_argument("--duplicates", action="store_true", help="Analyser aussi les doublons stockés")
    rebuild_p.add_argument("--no-hash", action="store_true", help="Ne pas calculer les hash des nouveaux fichiers")

    for name, help_text in (("check", "Détecter les doublons sans déposer"), ("import", "Déposer des fichiers")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("paths", nargs="+", help="Fichiers à traiter")
        p.add_argument("--batch", "-b", required=True, help="Numéro de lot")
        p.add_argument("--category", "-t", required=True, type=parse_category, help="Catégorie (PO, SO, SI, CI ou libellé)")
        if name == "import":
            p.add_argument("--action", choices=[a.value for a in DuplicateAction], default=None,
                           help="Décision pour tous les doublons (défaut: config)")
            p.add_argument("--reference", default=None, help="Référence PO/SO pour le nom de fichier")

    status_p = sub.add_parser("status", help="État de complétude des lots")
    status_p.add_argument("batches", nargs="*", help="Numéros de lot (tous par défaut)")

    dup_p = sub.add_parser("duplicates", help="Lister les doublons déjà stockés")
    dup_p.add_argument("batches", nargs="*", help="Numéros de lot (tous par défaut)")
    dup_p.add_argument("--delete-extras", action="store_true", help="Supprimer les copies (garde le premier fichier)")

    sub.add_parser("repair-journal", help="Convertir les numéros de lot numériques du journal")
    sub.add_parser("watch", help="Surveiller le dossier de dépôt")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Point d'entrée CLI."""
    args = build_parser().parse_args(argv)
    try:
        config = _load(args.config, args.root, args.verbose)
        if args.command == "repair-journal":
            fixed = repair_journal_file(get_storage_root(config))
            print(f"{fixed} enregistrement(s) corrigé(s)")
            sys.exit(0)
        hub = Hub(config)
    except (FileNotFoundError, KeyError, StorageRootError, ValueError, yaml.YAMLError) as e:
        print(f"Erreur: {e}", file=sys.stderr)
        sys.exit(2)

    if args.command == "rebuild":
        code = cmd_rebuild(hub, args.valid_batches, args.duplicates, args.no_hash)
    elif args.command == "check":
        code = cmd_check(hub, args.paths, args.batch, args.category)
    elif args.command == "import":
        code = cmd_import(hub, args.paths, args.batch, args.category, args.action, args.reference)
    elif args.command == "status":
        code = cmd_status(hub, args.batches)
    elif args.command == "duplicates":
        code = cmd_duplicates(hub, args.batches, args.delete_extras)
    else:
        code = cmd_watch(hub)
    sys.exit(code)


if __name__ == "__main__":
    main()
