"""
Complétude d'un lot : quelles catégories de documents ont au moins un fichier.
"""
from dochub.models import BatchCompletion, DocCategory

REQUIRED_CATEGORIES = [
    DocCategory.PURCHASE_ORDER,
    DocCategory.SALES_ORDER,
    DocCategory.SUPPLIER_INVOICE,
    DocCategory.CUSTOMER_INVOICE,
]


def batch_completion(batch_id: str | int, journal) -> BatchCompletion:
    """Compte les fichiers journalisés par catégorie requise pour le lot."""
    batch = str(batch_id)
    uploaded = {cat: journal.count_for_batch_and_category(batch, cat) for cat in REQUIRED_CATEGORIES}
    missing = [cat for cat in REQUIRED_CATEGORIES if uploaded[cat] == 0]
    return BatchCompletion(batch_id=batch, uploaded=uploaded, missing=missing)


def completion_summary(completion: BatchCompletion) -> str:
    if completion.is_complete:
        return "Complete"
    if completion.total_uploaded == 0:
        return "No documents uploaded"
    return "Missing: " + ", ".join(cat.short_label for cat in completion.missing)
