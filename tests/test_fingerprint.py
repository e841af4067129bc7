"""
Tests unitaires pour fingerprint (hash, PDF PyMuPDF, images Pillow, comparaison).
"""
import hashlib

from dochub.fingerprint import (
    compare_fingerprints,
    content_hash,
    detect_file_type,
    fingerprint,
    hash_similarity,
)
from dochub.models import FileType


class TestFingerprint:
    def test_hash_contenu(self):
        fp = fingerprint(b"hello", "note.txt")
        assert fp.content_hash == hashlib.sha256(b"hello").hexdigest()
        assert fp.file_type == FileType.OTHER
        assert fp.size_bytes == 5

    def test_pdf(self, pdf_bytes):
        fp = fingerprint(pdf_bytes(["Page 1", "Page 2", "Page 3"]), "doc.PDF")
        assert fp.file_type == FileType.PDF
        assert fp.page_count == 3
        assert fp.structure_digest and len(fp.structure_digest) == 16
        assert fp.first_page_image_hash and len(fp.first_page_image_hash) == 64
        assert fp.visual_hash == fp.first_page_image_hash
        assert (fp.width, fp.height) == (595, 842)

    def test_pdf_corrompu_ne_leve_pas(self):
        fp = fingerprint(b"%PDF-1.4 pas vraiment un pdf", "casse.pdf")
        assert fp.file_type == FileType.PDF
        assert fp.content_hash is not None
        assert fp.page_count is None
        assert fp.first_page_image_hash is None

    def test_image(self, png_bytes):
        fp = fingerprint(png_bytes((64, 48)), "scan.png")
        assert fp.file_type == FileType.IMAGE
        assert (fp.width, fp.height) == (64, 48)
        assert fp.image_hash and set(fp.image_hash) <= {"0", "1"}

    def test_detect_file_type(self):
        assert detect_file_type("a.jpeg") == FileType.IMAGE
        assert detect_file_type("a") == FileType.OTHER


class TestHashSimilarity:
    def test_identique(self):
        assert hash_similarity("1010", "1010") == 100.0

    def test_moitie(self):
        assert hash_similarity("1100", "1111") == 50.0

    def test_absent_ou_longueurs_differentes(self):
        assert hash_similarity(None, "1") == 0.0
        assert hash_similarity("10", "101") == 0.0


class TestCompareFingerprints:
    def test_pdf_identique(self, pdf_bytes):
        data = pdf_bytes(["Facture 42"])
        result = compare_fingerprints(fingerprint(data, "a.pdf"), fingerprint(data, "b.pdf"))
        assert result.similarity == 100
        assert result.match_type == "identical-structure"
        assert result.is_duplicate

    def test_pdf_nombre_de_pages_different(self, pdf_bytes):
        one = fingerprint(pdf_bytes(["A"]), "a.pdf")
        five = fingerprint(pdf_bytes(["A", "B", "C", "D", "E"]), "b.pdf")
        result = compare_fingerprints(one, five)
        assert result.page_count_match == 20
        assert result.structure_match == 0
        assert not result.is_duplicate

    def test_image_redimensionnee(self, png_bytes):
        big = fingerprint(png_bytes((256, 256)), "a.png")
        small = fingerprint(png_bytes((32, 32)), "b.png")
        result = compare_fingerprints(big, small)
        assert result.similarity >= 90
        assert result.is_duplicate

    def test_types_differents(self, pdf_bytes, png_bytes):
        result = compare_fingerprints(fingerprint(pdf_bytes(["A"]), "a.pdf"), fingerprint(png_bytes(), "a.png"))
        assert result.match_type == "different-format"
        assert not result.is_duplicate

    def test_content_hash_stable(self):
        assert content_hash(b"x") == content_hash(b"x")
