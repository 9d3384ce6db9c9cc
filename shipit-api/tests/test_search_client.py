import json
from pathlib import Path

import httpx
import pytest
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials, CredentialResolver

import search
from errors import BackendError, ConfigurationError
from gateway_utils import ACCESS_KEY, ES_ENDPOINT, FakeSearchBackend, write_credentials_file


REGION = "eu-west-1"


class CountingCredentials:
    """Stands in for refreshable role credentials."""

    def __init__(self, token=None) -> None:
        self._credentials = Credentials("AKIDROLE", "role-secret", token)
        self.frozen_calls = 0
        self.method = "iam-role"

    def get_frozen_credentials(self):
        self.frozen_calls += 1
        return self._credentials.get_frozen_credentials()


class StaticResolver:
    def __init__(self, credentials) -> None:
        self.credentials = credentials

    def load_credentials(self):
        return self.credentials


def _client(backend: FakeSearchBackend, credentials=None) -> search.SearchClient:
    credentials = credentials or Credentials("AKIDSTATIC", "static-secret")
    return search.SearchClient(ES_ENDPOINT, search.AwsSigV4Auth(credentials, REGION), transport=backend.transport())


def _isolate_chain(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AWS_EC2_METADATA_DISABLED", "true")
    monkeypatch.delenv("AWS_CONTAINER_CREDENTIALS_RELATIVE_URI", raising=False)
    monkeypatch.delenv("AWS_CONTAINER_CREDENTIALS_FULL_URI", raising=False)
    monkeypatch.setenv("AWS_SHARED_CREDENTIALS_FILE", str(tmp_path / "missing-credentials"))


def test_credential_chain_order_is_role_then_profile():
    resolver = search.build_credential_chain("shipit")
    assert [provider.METHOD for provider in resolver.providers] == [
        "container-role",
        "iam-role",
        "shared-credentials-file",
    ]


def test_factory_uses_named_profile_when_no_role(monkeypatch, tmp_path: Path):
    _isolate_chain(monkeypatch, tmp_path)
    credentials_file = write_credentials_file(tmp_path / "credentials", profile="shipit")
    resolver = search.build_credential_chain("shipit", credentials_file=str(credentials_file))
    factory = search.SigningSearchClientFactory(ES_ENDPOINT, REGION, credential_resolver=resolver)
    credentials = factory.resolve_credentials()
    assert credentials.access_key == ACCESS_KEY
    assert credentials.method == "shared-credentials-file"


def test_factory_fails_when_no_credential_source_is_available(monkeypatch, tmp_path: Path):
    _isolate_chain(monkeypatch, tmp_path)
    factory = search.SigningSearchClientFactory(ES_ENDPOINT, REGION, profile_name="shipit")
    with pytest.raises(ConfigurationError):
        factory.build()


def test_factory_fails_with_empty_resolver():
    factory = search.SigningSearchClientFactory(ES_ENDPOINT, REGION, credential_resolver=CredentialResolver(providers=[]))
    with pytest.raises(ConfigurationError):
        factory.build()


@pytest.mark.parametrize("endpoint", ["", "search.shipit.test", "ftp://search.shipit.test"])
def test_factory_rejects_bad_endpoint(endpoint):
    with pytest.raises(ConfigurationError):
        search.SigningSearchClientFactory(endpoint, REGION, credential_resolver=StaticResolver(None))


def test_every_request_is_signed_with_region_and_service():
    backend = FakeSearchBackend()
    client = _client(backend)
    client.index_document("deployments", "abc", {"id": "abc", "service": "shipit"})
    client.get_document("deployments", "abc")
    client.close()
    assert len(backend.requests) == 2
    for request in backend.requests:
        authorization = request.headers["Authorization"]
        assert authorization.startswith("AWS4-HMAC-SHA256 Credential=AKIDSTATIC/")
        assert f"/{REGION}/es/aws4_request" in authorization
        assert "SignedHeaders=" in authorization
        assert "host" in authorization.split("SignedHeaders=")[1]
        assert request.headers["X-Amz-Date"].endswith("Z")


def test_signature_matches_canonical_request():
    backend = FakeSearchBackend()
    credentials = Credentials("AKIDSTATIC", "static-secret")
    client = _client(backend, credentials)
    client.search("deployments", {"query": {"match_all": {}}, "from": 0, "size": 20, "sort": []})
    client.close()
    sent = backend.requests[0]
    amz_date = sent.headers["X-Amz-Date"]
    aws_request = AWSRequest(
        method=sent.method,
        url=str(sent.url),
        data=sent.content,
        headers={"Host": sent.headers["Host"], "Content-Type": sent.headers["Content-Type"], "X-Amz-Date": amz_date},
    )
    aws_request.context["timestamp"] = amz_date
    signer = SigV4Auth(credentials.get_frozen_credentials(), "es", REGION)
    canonical = signer.canonical_request(aws_request)
    expected = signer.signature(signer.string_to_sign(aws_request, canonical), aws_request)
    assert sent.headers["Authorization"].endswith(f"Signature={expected}")


def test_credentials_are_consulted_on_each_call_and_token_forwarded():
    backend = FakeSearchBackend()
    credentials = CountingCredentials(token="session-token")
    client = _client(backend, credentials)
    client.get_document("deployments", "a")
    client.get_document("deployments", "b")
    client.close()
    assert credentials.frozen_calls == 2
    assert all(request.headers["X-Amz-Security-Token"] == "session-token" for request in backend.requests)


def test_missing_document_returns_none_and_delete_false():
    client = _client(FakeSearchBackend())
    assert client.get_document("deployments", "nope") is None
    assert client.delete_document("deployments", "nope") is False
    client.close()


def test_http_errors_raise_backend_error():
    client = _client(FakeSearchBackend(status_override=500))
    with pytest.raises(BackendError) as exc:
        client.index_document("deployments", "abc", {"id": "abc"})
    assert exc.value.status_code == 502
    client.close()


def test_transport_errors_raise_backend_error():
    def _unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    client = search.SearchClient(
        ES_ENDPOINT,
        search.AwsSigV4Auth(Credentials("AKID", "secret"), REGION),
        transport=httpx.MockTransport(_unreachable),
    )
    with pytest.raises(BackendError):
        client.search("deployments", {"query": {"match_all": {}}})
    client.close()


def test_search_on_missing_index_returns_no_hits():
    def _missing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"type": "index_not_found_exception"}})

    client = search.SearchClient(
        ES_ENDPOINT,
        search.AwsSigV4Auth(Credentials("AKID", "secret"), REGION),
        transport=httpx.MockTransport(_missing),
    )
    assert client.search("deployments", {"query": {"match_all": {}}})["hits"]["hits"] == []
    client.close()


def test_ensure_index_creates_only_when_missing():
    created = []

    def _handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            return httpx.Response(404)
        created.append(json.loads(request.content))
        return httpx.Response(200, json={"acknowledged": True})

    client = search.SearchClient(
        ES_ENDPOINT,
        search.AwsSigV4Auth(Credentials("AKID", "secret"), REGION),
        transport=httpx.MockTransport(_handler),
    )
    assert client.ensure_index("deployments", {"properties": {}}) is True
    assert created == [{"mappings": {"properties": {}}}]
    client.close()
    assert client.closed is True
