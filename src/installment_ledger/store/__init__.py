from .firestore import Document, FirestoreClient, FirestoreError, Write, describe_store_error
from .ledger import CustomerExistsError, CustomerNotFoundError, DuplicateUpiIdError, LedgerStore

__all__ = [
    "Document",
    "FirestoreClient",
    "FirestoreError",
    "Write",
    "describe_store_error",
    "CustomerExistsError",
    "CustomerNotFoundError",
    "DuplicateUpiIdError",
    "LedgerStore",
]
