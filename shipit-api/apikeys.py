import hashlib
import logging
import secrets
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from models import ApiKeyRecord
from search import SearchClient
from storage import utc_now


API_KEY_MAPPINGS = {
    "properties": {
        "id": {"type": "keyword"},
        "description": {"type": "text"},
        "keyDigest": {"type": "keyword"},
        "createdBy": {"type": "keyword"},
        "createdAt": {"type": "date"},
        "active": {"type": "boolean"},
        "revokedBy": {"type": "keyword"},
        "revokedAt": {"type": "date"},
    }
}
ACTIVE_KEYS_TTL_SECONDS = 60
MAX_KEYS = 1000

logger = logging.getLogger("shipit.auth")


def digest_key(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class ApiKeyStore:
    """Issued API keys, kept in their own search index.

    Only the SHA-256 digest of a key is stored; the key itself is returned once,
    when it is issued. Active digests are cached for ``ttl_seconds`` and the
    cache is dropped whenever this process issues or revokes a key.
    """

    def __init__(self, search: SearchClient, index: str, ttl_seconds: float = ACTIVE_KEYS_TTL_SECONDS) -> None:
        self.search = search
        self.index = index
        self.ttl_seconds = ttl_seconds
        self._cache: Dict[str, Any] = {"fetched_at": 0.0, "digests": None}

    def ensure_index(self) -> None:
        if self.search.ensure_index(self.index, API_KEY_MAPPINGS):
            logger.info("api_keys.index created index=%s", self.index)

    def invalidate(self) -> None:
        self._cache.update({"fetched_at": 0.0, "digests": None})

    def _query(self, filters: List[dict]) -> List[ApiKeyRecord]:
        query = {"bool": {"filter": filters}} if filters else {"match_all": {}}
        payload = self.search.search(
            self.index,
            {"query": query, "sort": [{"createdAt": {"order": "desc"}}], "from": 0, "size": MAX_KEYS},
        )
        hits = payload.get("hits", {}).get("hits", [])
        return [ApiKeyRecord(**hit["_source"]) for hit in hits if "_source" in hit]

    def active_digests(self) -> List[str]:
        now = time.monotonic()
        cached = self._cache["digests"]
        if cached is not None and (now - self._cache["fetched_at"]) < self.ttl_seconds:
            return cached
        digests = [record.keyDigest for record in self._query([{"term": {"active": True}}]) if record.active]
        self._cache.update({"fetched_at": now, "digests": digests})
        return digests

    def list(self) -> List[ApiKeyRecord]:
        return self._query([])

    def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        source = self.search.get_document(self.index, key_id)
        if source is None:
            return None
        return ApiKeyRecord(**source)

    def _save(self, record: ApiKeyRecord) -> None:
        self.search.index_document(self.index, record.id, record.dict())
        self.invalidate()

    def issue(self, description: str, created_by: str) -> Tuple[ApiKeyRecord, str]:
        plaintext = secrets.token_urlsafe(32)
        record = ApiKeyRecord(
            id=str(uuid.uuid4()),
            description=description,
            keyDigest=digest_key(plaintext),
            createdBy=created_by,
            createdAt=utc_now(),
        )
        self._save(record)
        return record, plaintext

    def revoke(self, key_id: str, revoked_by: str) -> Optional[ApiKeyRecord]:
        record = self.get(key_id)
        if record is None or not record.active:
            return record
        revoked = ApiKeyRecord(
            **{**record.dict(), "active": False, "revokedBy": revoked_by, "revokedAt": utc_now()}
        )
        self._save(revoked)
        return revoked
