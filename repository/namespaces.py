# repository/namespaces.py
from typing import Final

ROOT: Final[str] = "symptomrag"

DOCUMENTS: Final[str] = f"{ROOT}:documents"  # hash: doc id -> StoredDocument JSON
