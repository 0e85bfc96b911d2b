"""Firestore-backed records: users (entitlements, portal access) and uploaded files.

Collections:
    users/{uid}              - subscription entitlement + portal role
    driveFiles/{driveFileId} - provenance of each uploaded photo
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore

logger = logging.getLogger("checklist_api.records")

USERS_COLLECTION = "users"
FILES_COLLECTION = "driveFiles"


def is_document_id(value: str) -> bool:
    """True when ``value`` can name a single Firestore document.

    Firestore rejects ids containing "/", the dot segments and ids of the
    form ``__name__``; ids like that come from clients and never exist.
    """
    if not value or "/" in value or value in (".", ".."):
        return False
    return not (value.startswith("__") and value.endswith("__"))


class UserDirectory:
    def __init__(self, db: firestore.Client):
        self.db = db

    def _ref(self, uid: str):
        return self.db.collection(USERS_COLLECTION).document(str(uid))

    def get_user(self, uid: str) -> Optional[Dict[str, Any]]:
        if not is_document_id(str(uid)):
            return None
        snap = self._ref(uid).get()
        if not snap.exists:
            return None
        return snap.to_dict() or {}

    def apply_entitlement(self, uid: str, patch: Dict[str, Any]) -> bool:
        """Write the patch as one document update.

        ``update`` refuses to create the document, so a user deleted between
        lookup and write is reported (False) rather than recreated.
        """
        try:
            self._ref(uid).update(patch)
        except gcp_exceptions.NotFound:
            logger.warning(f"Entitlement target users/{uid} disappeared before update")
            return False
        return True

    def set_portal_access(self, uid: str, role: str, allowed_owner_keys: List[str]) -> None:
        self._ref(uid).set(
            {
                "portalRole": role,
                "allowedOwnerKeys": allowed_owner_keys,
                "updatedAt": firestore.SERVER_TIMESTAMP,
            },
            merge=True,
        )


class FileRecords:
    def __init__(self, db: firestore.Client):
        self.db = db

    def create(
        self,
        file_id: str,
        *,
        owner_key: str,
        batch_id: str,
        item_id: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        record: Dict[str, Any] = {
            "ownerKey": owner_key,
            "batchId": batch_id,
            "itemId": item_id,
            "createdAt": firestore.SERVER_TIMESTAMP,
        }
        if extra:
            record.update(extra)
        self.db.collection(FILES_COLLECTION).document(str(file_id)).set(record)

    def owner_keys(self, file_ids: Iterable[str]) -> Dict[str, Optional[str]]:
        """Map each known file id to its owner key; unknown ids are absent."""
        collection = self.db.collection(FILES_COLLECTION)
        refs = [collection.document(str(fid)) for fid in file_ids if is_document_id(str(fid))]
        if not refs:
            return {}
        result: Dict[str, Optional[str]] = {}
        for snap in self.db.get_all(refs):
            if snap.exists:
                data = snap.to_dict() or {}
                owner_key = data.get("ownerKey")
                result[snap.id] = str(owner_key) if owner_key is not None else None
        return result
