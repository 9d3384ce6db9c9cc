import json
from datetime import datetime, timedelta, timezone

from botocore.credentials import Credentials

from gateway_utils import ES_ENDPOINT, FakeSearchBackend
from models import DeploymentIntent, DeploymentResult, DeploymentSearch
from search import AwsSigV4Auth, SearchClient
from storage import PAGE_SIZE, DeploymentStore


def _store(backend: FakeSearchBackend) -> DeploymentStore:
    client = SearchClient(ES_ENDPOINT, AwsSigV4Auth(Credentials("AKID", "secret"), "eu-west-1"), transport=backend.transport())
    return DeploymentStore(client, "deployments")


def test_build_record_normalizes_timestamp_to_utc():
    store = _store(FakeSearchBackend())
    offset = timezone(timedelta(hours=2))
    intent = DeploymentIntent(
        team="Platform",
        service="shipit",
        buildId="b-1",
        timestamp=datetime(2026, 10, 1, 14, 0, tzinfo=offset),
    )
    record = store.build_record(intent, "automation")
    assert record.timestamp == "2026-10-01T12:00:00Z"
    assert record.createdBy == "automation"


def test_build_record_defaults_timestamp_to_now():
    store = _store(FakeSearchBackend())
    record = store.build_record(DeploymentIntent(team="t", service="s", buildId="b"), "automation")
    assert record.timestamp.endswith("Z")


def test_find_builds_filtered_paged_query():
    backend = FakeSearchBackend()
    store = _store(backend)
    page = store.find(DeploymentSearch(team="Platform", result=DeploymentResult.FAILED, page=3))
    body = json.loads(backend.requests[0].content)
    assert backend.requests[0].url.path == "/deployments/_search"
    assert body["query"] == {"bool": {"filter": [{"term": {"team": "Platform"}}, {"term": {"result": "failed"}}]}}
    assert body["from"] == 2 * PAGE_SIZE
    assert body["size"] == PAGE_SIZE
    assert body["sort"] == [{"timestamp": {"order": "desc"}}]
    assert page.total == 0
    assert page.page == 3


def test_round_trip_through_backend():
    backend = FakeSearchBackend()
    store = _store(backend)
    record = store.build_record(
        DeploymentIntent(team="Platform", service="shipit", buildId="b-9", links=[{"title": "CI", "url": "https://ci/9"}]),
        "automation",
    )
    store.insert(record)
    assert store.get(record.id) == record
    assert store.delete(record.id) is True
    assert store.get(record.id) is None
