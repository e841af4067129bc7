"""
Tests unitaires pour uploader (écriture, journalisation, décisions sur doublons, suppression).
"""
import json

import pytest

from dochub.journal import UploadJournal, journal_path
from dochub.models import DocCategory, DuplicateAction, IncomingFile
from dochub.scanner import ReconciliationScanner
from dochub.uploader import DocumentUploader

PO = DocCategory.PURCHASE_ORDER
SI = DocCategory.SUPPLIER_INVOICE


@pytest.fixture
def uploader(journal, backend, storage_root):
    return DocumentUploader(journal, backend, storage_root, max_workers=2)


class TestUpload:
    def test_ecriture_et_journal(self, uploader, journal, storage_root):
        entry = uploader.upload(IncomingFile("facture.pdf", 6024, SI, data=b"abc"))

        assert (storage_root / "6024" / "Supplier Invoice" / "facture.pdf").read_bytes() == b"abc"
        assert entry.relative_path == "6024/Supplier Invoice/facture.pdf"
        assert entry.batch_id == "6024"
        assert journal.lookup("6024", SI, "facture.pdf")
        saved = json.loads(journal_path(storage_root).read_text(encoding="utf-8"))
        assert saved[0]["fileName"] == "facture.pdf"
        assert saved[0]["fileSize"] == 3

    def test_nom_avec_reference(self, uploader):
        first = uploader.upload(IncomingFile("scan.pdf", "6024", PO, data=b"1"), reference="PO100")
        second = uploader.upload(IncomingFile("scan.pdf", "6024", PO, data=b"2"), reference="PO100")

        assert first.file_name == "6024 - Purchase Order - PO100.pdf"
        assert second.file_name == "6024 - Purchase Order - PO100 (1).pdf"

    def test_lecture_impossible(self, uploader, tmp_path):
        with pytest.raises(OSError):
            uploader.upload(IncomingFile("absent.pdf", "1", PO, path=tmp_path / "absent.pdf"))

    def test_fichier_sur_disque(self, uploader, tmp_path, storage_root):
        source = tmp_path / "commande.pdf"
        source.write_bytes(b"commande")

        uploader.upload(IncomingFile(source.name, "7", PO, path=source))

        assert (storage_root / "7" / "Purchase Order" / "commande.pdf").read_bytes() == b"commande"


class TestImportFiles:
    def test_doublon_ignore(self, uploader, journal, storage_root):
        uploader.upload(IncomingFile("po.pdf", "1", PO, data=b"contenu"))

        report = uploader.import_files(
            [IncomingFile("copie.pdf", "1", PO, data=b"contenu"), IncomingFile("autre.pdf", "1", PO, data=b"neuf")],
            apply_to_all=DuplicateAction.SKIP,
        )

        assert [d.incoming.name for d in report.dropped] == ["copie.pdf"]
        assert [e.file_name for e in report.uploaded] == ["autre.pdf"]
        assert report.decisions == {"dropped": 1, "replace": 0, "versioned": 0}
        assert not (storage_root / "1" / "Purchase Order" / "copie.pdf").exists()
        assert len(journal) == 2

    def test_doublon_version(self, uploader, journal, storage_root):
        uploader.upload(IncomingFile("rapport.pdf", "1", PO, data=b"v1"))

        report = uploader.import_files(
            [IncomingFile("rapport.pdf", "1", PO, data=b"v2 plus longue")], actions={"rapport.pdf": DuplicateAction.VERSION}
        )

        assert [e.file_name for e in report.uploaded] == ["rapport_v2.pdf"]
        assert (storage_root / "1" / "Purchase Order" / "rapport_v2.pdf").read_bytes() == b"v2 plus longue"
        assert journal.lookup("1", PO, "rapport.pdf")

    def test_doublon_ecrase(self, uploader, journal, storage_root):
        original = uploader.upload(IncomingFile("rapport.pdf", "1", PO, data=b"ancien"))

        report = uploader.import_files(
            [IncomingFile("Rapport (2).pdf", "1", PO, data=b"nouveau contenu")], apply_to_all=DuplicateAction.REPLACE
        )

        [entry] = report.uploaded
        assert entry.file_name == "rapport.pdf"
        assert len(journal) == 1
        assert journal.get("1", PO, "rapport.pdf").content_hash != original.content_hash
        assert (storage_root / "1" / "Purchase Order" / "rapport.pdf").read_bytes() == b"nouveau contenu"

    def test_ecrasement_dans_le_dossier_existant(self, uploader, journal, backend, storage_root, put):
        put(storage_root, "6024", "purchase_order", "x.pdf", b"ancienne version")
        ReconciliationScanner(journal, backend, storage_root).rebuild()

        report = uploader.import_files(
            [IncomingFile("x.pdf", "6024", PO, data=b"nouvelle version")], apply_to_all=DuplicateAction.REPLACE
        )

        assert report.decisions["replace"] == 1
        assert journal.get("6024", PO, "x.pdf").relative_path == "6024/purchase_order/x.pdf"
        assert (storage_root / "6024" / "purchase_order" / "x.pdf").read_bytes() == b"nouvelle version"
        assert not (storage_root / "6024" / "Purchase Order").exists()
        assert len(journal) == 1

    def test_echec_isole(self, uploader, tmp_path):
        report = uploader.import_files([
            IncomingFile("absent.pdf", "1", PO, path=tmp_path / "absent.pdf"),
            IncomingFile("ok.pdf", "1", PO, data=b"ok"),
        ])

        assert [f.name for f, _ in report.failed] == ["absent.pdf"]
        assert [e.file_name for e in report.uploaded] == ["ok.pdf"]
        assert report.detection.excluded[0].name == "absent.pdf"

    def test_doublon_visuel_contre_fichier_stocke(self, uploader, pdf_bytes):
        uploader.upload(IncomingFile("scan_0001.pdf", "1", SI, data=pdf_bytes(["Facture 2024-001 ACME"])))

        report = uploader.import_files([IncomingFile("document.pdf", "1", SI, data=pdf_bytes(["Facture 2024-001 ACME."]))])

        assert [d.incoming.name for d in report.dropped] == ["document.pdf"]
        assert report.detection.duplicates[0].matched_entry.file_name == "scan_0001.pdf"


class TestDeleteFiles:
    def test_suppression(self, uploader, journal, storage_root):
        a = uploader.upload(IncomingFile("a.pdf", "1", PO, data=b"a"))
        b = uploader.upload(IncomingFile("b.pdf", "1", PO, data=b"b"))

        deleted, errors = uploader.delete_files([a])

        assert (deleted, errors) == (1, [])
        assert not (storage_root / "1" / "Purchase Order" / "a.pdf").exists()
        assert [e.key for e in journal] == [b.key]
        reloaded = UploadJournal()
        reloaded.load(storage_root)
        assert len(reloaded) == 1

    def test_fichier_deja_absent(self, uploader, journal, entry_factory):
        ghost = entry_factory("1", PO, "fantome.pdf")
        journal.commit(ghost)

        deleted, errors = uploader.delete_files([ghost])

        assert deleted == 0
        assert len(errors) == 1
        assert journal.lookup("1", PO, "fantome.pdf")
