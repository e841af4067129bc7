"""
Tests de la CLI (commandes rebuild, import, check, status, duplicates, repair-journal).
"""
import json
import signal

import pytest
import yaml

from dochub.journal import UploadJournal, journal_path
from dochub.main import Hub, inbox_callback_factory, main, parse_category, read_valid_batch_ids
from dochub.models import DocCategory


def run(argv: list[str], capsys) -> tuple[int, object]:
    with pytest.raises(SystemExit) as exc:
        main(argv)
    out = capsys.readouterr().out
    try:
        data = json.loads(out)
    except ValueError:
        data = out
    return exc.value.code, data


@pytest.fixture
def base_args(tmp_path, storage_root) -> list[str]:
    return ["--config", str(tmp_path / "absent.yaml"), "--root", str(storage_root)]


def test_parse_category():
    assert parse_category("PO") == DocCategory.PURCHASE_ORDER
    assert parse_category("customer invoice") == DocCategory.CUSTOMER_INVOICE


def test_read_valid_batch_ids(tmp_path):
    path = tmp_path / "lots.csv"
    path.write_text("# export\n6024,ACME\n\n 6025 ,Globex\n", encoding="utf-8")
    assert read_valid_batch_ids(path) == {"6024", "6025"}


def test_rebuild(base_args, storage_root, tmp_path, put, capsys):
    put(storage_root, "6024", "Purchase Order", "a.pdf", b"a")
    put(storage_root, "9999", "Purchase Order", "b.pdf", b"b")
    valid = tmp_path / "lots.txt"
    valid.write_text("6024\n", encoding="utf-8")

    code, data = run(base_args + ["rebuild", "--valid-batches", str(valid)], capsys)

    assert code == 0
    assert data["filesFound"] == 2
    assert data["orphanedFiles"] == ["9999/Purchase Order/b.pdf"]
    assert journal_path(storage_root).is_file()


def test_rebuild_interrompu(base_args, storage_root, put, capsys, monkeypatch):
    put(storage_root, "6024", "Purchase Order", "a.pdf", b"a")
    handler_before = signal.getsignal(signal.SIGINT)

    def ctrl_c(progress):
        signal.raise_signal(signal.SIGINT)

    monkeypatch.setattr("dochub.main._print_progress", ctrl_c)

    code, data = run(base_args + ["rebuild"], capsys)

    assert code == 130
    assert data["cancelled"] is True
    assert data["success"] is False
    assert not journal_path(storage_root).exists()
    assert signal.getsignal(signal.SIGINT) is handler_before


def test_import_puis_check(base_args, storage_root, tmp_path, capsys):
    source = tmp_path / "po100.pdf"
    source.write_bytes(b"bon de commande")

    code, data = run(base_args + ["import", str(source), "-b", "6024", "-t", "PO", "--reference", "PO100"], capsys)
    assert code == 0
    assert data["uploaded"] == ["6024/Purchase Order/6024 - Purchase Order - PO100.pdf"]

    code, data = run(base_args + ["check", str(source), "-b", "6024", "-t", "po"], capsys)
    assert code == 0
    assert data[0]["candidates"][0]["reason"] == "hash-exact"
    assert data[0]["candidates"][0]["confidence"] == 100

    code, data = run(base_args + ["import", str(source), "-b", "6024", "-t", "PO", "--action", "version"], capsys)
    assert data["uploaded"] == ["6024/Purchase Order/po100_v2.pdf"]
    assert data["decisions"]["versioned"] == 1


def test_status(base_args, storage_root, put, capsys):
    put(storage_root, "6024", "Purchase Order", "a.pdf", b"a")
    run(base_args + ["rebuild"], capsys)

    code, data = run(base_args + ["status"], capsys)

    assert code == 0
    assert data == [{
        "batch": "6024",
        "percentage": 25,
        "summary": "Missing: SO, Supplier Inv, Customer Inv",
        "uploaded": {"Purchase Order": 1, "Sales Order": 0, "Supplier Invoice": 0, "Customer Invoice": 0},
    }]


def test_duplicates_delete_extras(base_args, storage_root, put, capsys):
    put(storage_root, "1", "Purchase Order", "a.pdf", b"meme")
    put(storage_root, "1", "Purchase Order", "b.pdf", b"meme")
    run(base_args + ["rebuild"], capsys)

    code, data = run(base_args + ["duplicates", "--delete-extras"], capsys)

    assert code == 0
    assert data[0]["files"] == ["1/Purchase Order/a.pdf", "1/Purchase Order/b.pdf"]
    assert not (storage_root / "1" / "Purchase Order" / "b.pdf").exists()
    journal = UploadJournal()
    journal.load(storage_root)
    assert [e.file_name for e in journal] == ["a.pdf"]


def test_repair_journal(base_args, storage_root, capsys):
    journal_path(storage_root).write_text(json.dumps([{"batchNumber": 1, "docType": "Sales Order"}]), encoding="utf-8")

    code, out = run(base_args + ["repair-journal"], capsys)

    assert code == 0
    assert "1 enregistrement(s)" in out


def test_racine_absente(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--config", str(tmp_path / "absent.yaml"), "--root", str(tmp_path / "absent"), "status"])
    assert exc.value.code == 2


def test_config_yaml(tmp_path, storage_root, capsys):
    config = tmp_path / "config.yaml"
    config.write_text(yaml.safe_dump({"racine_stockage": "Lots"}), encoding="utf-8")

    code, data = run(["--config", str(config), "status"], capsys)

    assert code == 0
    assert data == []


def test_callback_depot(storage_root, tmp_path):
    inbox = tmp_path / "INBOX"
    dropped = inbox / "6024" / "Sales Order" / "so.pdf"
    dropped.parent.mkdir(parents=True)
    dropped.write_bytes(b"commande client")
    hub = Hub({"racine_stockage": str(storage_root)})

    inbox_callback_factory(hub, inbox)(dropped)

    assert not dropped.exists()
    assert (storage_root / "6024" / "Sales Order" / "so.pdf").read_bytes() == b"commande client"
    assert hub.journal.lookup("6024", DocCategory.SALES_ORDER, "so.pdf")


def test_duplicates_par_lot(base_args, storage_root, put, capsys):
    put(storage_root, "1", "Purchase Order", "a.pdf", b"meme")
    put(storage_root, "1", "Purchase Order", "b.pdf", b"meme")
    put(storage_root, "2", "Sales Order", "c.pdf", b"autre")
    put(storage_root, "2", "Sales Order", "d.pdf", b"autre")
    run(base_args + ["rebuild"], capsys)

    code, data = run(base_args + ["duplicates", "2"], capsys)

    assert code == 0
    assert [g["files"] for g in data] == [["2/Sales Order/c.pdf", "2/Sales Order/d.pdf"]]
