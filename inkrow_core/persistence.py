"""
Persistence - JSON document store

Stores the RowManager.serialize() payload in a single JSON file. Writes go
to a temporary sibling first and replace the target atomically. A missing
file loads as an empty document; a corrupt one is logged and also loads as
an empty document, so a damaged save never blocks startup.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from inkrow_core.errors import PersistedStateCorrupt
from inkrow_core.rows import RowManager
from inkrow_core.schema import DocumentModel
from inkrow_core.version import DOCUMENT_VERSION

logger = logging.getLogger(__name__)


def empty_document(row_height: float = 384, start_y: float = 0) -> Dict[str, Any]:
    return {
        "version": DOCUMENT_VERSION,
        "rowHeight": row_height,
        "startY": start_y,
        "activeRowId": None,
        "rows": [],
        "activationTimeline": [],
        "elements": [],
    }


class JsonDocumentStore:
    """Document payload persisted as one JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.last_error: Optional[PersistedStateCorrupt] = None

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, payload: Dict[str, Any]) -> None:
        """Write the payload atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
            logger.debug(f"Saved document to {self.path}")
        except Exception as e:
            logger.error(f"Failed to save document {self.path}: {e}")
            if tmp.exists():
                tmp.unlink()
            raise

    def load(self, row_height: float = 384, start_y: float = 0) -> Dict[str, Any]:
        """
        Read and validate the payload.

        Returns:
            The stored payload, or an empty document when the file is missing
            or corrupt (the failure is kept in ``last_error``)
        """
        self.last_error = None
        if not self.path.exists():
            return empty_document(row_height, start_y)

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            DocumentModel.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            self.last_error = PersistedStateCorrupt(f"cannot load {self.path}: {e}")
            logger.warning(f"{self.last_error.describe()}; starting from an empty document")
            return empty_document(row_height, start_y)
        return data

    def load_into(self, rows: RowManager) -> bool:
        """
        Restore a RowManager from the store.

        Returns:
            True if a stored document was restored, False if the manager
            was reset to an empty document
        """
        payload = self.load(rows.row_height, rows.start_y)
        try:
            rows.deserialize(payload)
        except PersistedStateCorrupt as e:
            self.last_error = e
            logger.warning(f"{e.describe()}; starting from an empty document")
            rows.deserialize(empty_document(rows.row_height, rows.start_y))
            return False
        return self.last_error is None and self.path.exists()
