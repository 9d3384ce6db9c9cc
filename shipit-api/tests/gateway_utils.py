import importlib
import json
import sys
from pathlib import Path
from typing import List, Optional

import httpx

API_KEY = "shipit-test-api-key-0123456789"
ES_ENDPOINT = "https://search.shipit.test"
SLACK_WEBHOOK = "https://hooks.slack.test/services/T000/B000/XXXX"
JIRA_ISSUE_API = "https://jira.test/rest/api/2/issue"
JIRA_BROWSE = "https://jira.test/browse/"
ACCESS_KEY = "AKIDSHIPITTEST"
SECRET_KEY = "shipit-test-secret-key"

BASE_ENV = {
    "SHIPIT_GOOGLE_CLIENTID": "shipit-client-id.apps.googleusercontent.com",
    "SHIPIT_GOOGLE_CLIENTSECRET": "google-secret",
    "SHIPIT_GOOGLE_REDIRECTURL": "http://testserver/oauth2callback",
    "SHIPIT_AWS_REGION": "eu-west-1",
    "SHIPIT_AWS_ES_ENDPOINTURL": ES_ENDPOINT,
    "SHIPIT_SLACK_WEBHOOKURL": SLACK_WEBHOOK,
    "SHIPIT_JIRA_BROWSETICKETSURL": JIRA_BROWSE,
    "SHIPIT_JIRA_ISSUEAPIURL": JIRA_ISSUE_API,
    "SHIPIT_JIRA_USERNAME": "shipit-bot",
    "SHIPIT_JIRA_PASSWORD": "jira-password",
    "SHIPIT_ADMIN_EMAILADDRESSES": '["Ops@ovoenergy.com"]',
    "SHIPIT_API_KEY": API_KEY,
}


def write_credentials_file(path: Path, profile: str = "default") -> Path:
    path.write_text(
        f"[{profile}]\naws_access_key_id = {ACCESS_KEY}\naws_secret_access_key = {SECRET_KEY}\n",
        encoding="utf-8",
    )
    return path


def configure_env(monkeypatch, tmp_path: Path, omit: Optional[List[str]] = None, **overrides) -> None:
    for key in ["SHIPIT_SSM_PREFIX", "AWS_CONTAINER_CREDENTIALS_RELATIVE_URI", "AWS_CONTAINER_CREDENTIALS_FULL_URI"]:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("AWS_EC2_METADATA_DISABLED", "true")
    monkeypatch.setenv("AWS_SHARED_CREDENTIALS_FILE", str(write_credentials_file(tmp_path / "credentials")))
    env = dict(BASE_ENV)
    env.update(overrides)
    for key, value in env.items():
        if omit and key in omit:
            monkeypatch.delenv(key, raising=False)
            continue
        monkeypatch.setenv(key, value)


def load_main():
    for module in ["main", "context"]:
        if module in sys.modules:
            del sys.modules[module]
    return importlib.import_module("main")


class FakeSearchBackend:
    """In-memory stand-in for the search domain, served through httpx.MockTransport."""

    def __init__(self, status_override: Optional[int] = None) -> None:
        self.documents = {}
        self.indexes = {"deployments": self.documents}
        self.requests: List[httpx.Request] = []
        self.status_override = status_override

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, method: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.method == method]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_override:
            return httpx.Response(self.status_override, json={"error": "unavailable"})
        parts = request.url.path.strip("/").split("/")
        method = request.method
        documents = self.indexes.setdefault(parts[0], {})
        if len(parts) == 1:
            return httpx.Response(200, json={"acknowledged": True})
        if len(parts) == 3 and parts[1] == "_doc":
            doc_id = parts[2]
            if method == "PUT":
                documents[doc_id] = json.loads(request.content)
                return httpx.Response(201, json={"_id": doc_id, "result": "created"})
            if method == "GET":
                if doc_id not in documents:
                    return httpx.Response(404, json={"_id": doc_id, "found": False})
                return httpx.Response(200, json={"_id": doc_id, "found": True, "_source": documents[doc_id]})
            if method == "DELETE":
                if documents.pop(doc_id, None) is None:
                    return httpx.Response(404, json={"_id": doc_id, "result": "not_found"})
                return httpx.Response(200, json={"_id": doc_id, "result": "deleted"})
        if len(parts) == 2 and parts[1] == "_search":
            body = json.loads(request.content)
            filters = body["query"].get("bool", {}).get("filter", [])
            matches = [
                doc
                for doc in documents.values()
                if all(doc.get(field) == value for item in filters for field, value in item["term"].items())
            ]
            if body.get("sort"):
                sort_field = next(iter(body["sort"][0]))
                matches.sort(key=lambda doc: doc[sort_field], reverse=True)
            start = body.get("from", 0)
            window = matches[start : start + body.get("size", 10)]
            return httpx.Response(
                200,
                json={
                    "hits": {
                        "total": {"value": len(matches), "relation": "eq"},
                        "hits": [{"_id": doc["id"], "_source": doc} for doc in window],
                    }
                },
            )
        return httpx.Response(400, json={"error": f"unsupported {method} {request.url.path}"})


class FakeNotifyEndpoints:
    def __init__(self, slack_status: int = 200, jira_status: int = 201, unreachable: bool = False) -> None:
        self.slack_status = slack_status
        self.jira_status = jira_status
        self.unreachable = unreachable
        self.requests: List[httpx.Request] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def slack_posts(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.host == "hooks.slack.test"]

    @property
    def jira_posts(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == "jira.test"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.host == "hooks.slack.test":
            return httpx.Response(self.slack_status, text="ok" if self.slack_status < 400 else "invalid_token")
        if request.url.host == "jira.test":
            if self.jira_status >= 400:
                return httpx.Response(self.jira_status, json={"errorMessages": ["nope"]})
            return httpx.Response(
                self.jira_status,
                json={"id": "10042", "key": "REL-42", "self": f"{JIRA_ISSUE_API}/10042"},
            )
        return httpx.Response(404)


def install_fakes(main, backend: FakeSearchBackend, endpoints: FakeNotifyEndpoints) -> None:
    main.context.close()
    main.context = main.build_context(
        main.settings,
        search_transport=backend.transport(),
        notify_transport=endpoints.transport(),
    )
    main.store = main.DeploymentStore(main.context.search, main.settings.es_index_name)
    main.key_store = main.ApiKeyStore(main.context.search, main.settings.api_key_index_name)
    main.api_key_gate = main.ApiKeyAuthGate(main.settings.api_key, main.key_store)
