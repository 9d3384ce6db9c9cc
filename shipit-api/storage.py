import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from models import DeploymentIntent, DeploymentPage, DeploymentRecord, DeploymentSearch
from search import SearchClient


PAGE_SIZE = 20

DEPLOYMENT_MAPPINGS = {
    "properties": {
        "id": {"type": "keyword"},
        "team": {"type": "keyword"},
        "service": {"type": "keyword"},
        "buildId": {"type": "keyword"},
        "timestamp": {"type": "date"},
        "links": {
            "properties": {
                "title": {"type": "text"},
                "url": {"type": "keyword", "index": False},
            }
        },
        "note": {"type": "text"},
        "result": {"type": "keyword"},
        "jiraComponent": {"type": "keyword"},
        "createdBy": {"type": "keyword"},
    }
}

logger = logging.getLogger("shipit.api")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return utc_now()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class DeploymentStore:
    def __init__(self, search: SearchClient, index: str) -> None:
        self.search = search
        self.index = index

    def ensure_index(self) -> None:
        if self.search.ensure_index(self.index, DEPLOYMENT_MAPPINGS):
            logger.info("storage.index created index=%s", self.index)

    def build_record(self, intent: DeploymentIntent, created_by: str) -> DeploymentRecord:
        return DeploymentRecord(
            id=str(uuid.uuid4()),
            team=intent.team,
            service=intent.service,
            buildId=intent.buildId,
            timestamp=_format_timestamp(intent.timestamp),
            links=intent.links,
            note=intent.note,
            result=intent.result,
            jiraComponent=intent.jiraComponent,
            createdBy=created_by,
        )

    def insert(self, record: DeploymentRecord) -> None:
        self.search.index_document(self.index, record.id, record.dict())

    def get(self, deployment_id: str) -> Optional[DeploymentRecord]:
        source = self.search.get_document(self.index, deployment_id)
        if source is None:
            return None
        return DeploymentRecord(**source)

    def delete(self, deployment_id: str) -> bool:
        return self.search.delete_document(self.index, deployment_id)

    def find(self, criteria: DeploymentSearch) -> DeploymentPage:
        filters = []
        for field in ("team", "service", "buildId", "result"):
            value = getattr(criteria, field)
            if value is None:
                continue
            if hasattr(value, "value"):
                value = value.value
            filters.append({"term": {field: value}})
        query = {"bool": {"filter": filters}} if filters else {"match_all": {}}
        payload = self.search.search(
            self.index,
            {
                "query": query,
                "sort": [{"timestamp": {"order": "desc"}}],
                "from": (criteria.page - 1) * PAGE_SIZE,
                "size": PAGE_SIZE,
            },
        )
        hits = payload.get("hits", {})
        total = hits.get("total", 0)
        if isinstance(total, dict):
            total = total.get("value", 0)
        items = [DeploymentRecord(**hit["_source"]) for hit in hits.get("hits", []) if "_source" in hit]
        return DeploymentPage(items=items, total=int(total), page=criteria.page, pageSize=PAGE_SIZE)
