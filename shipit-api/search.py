import logging
import os
import time
from typing import Optional
from urllib.parse import quote, urlsplit

import httpx
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import (
    ContainerProvider,
    CredentialResolver,
    InstanceMetadataProvider,
    SharedCredentialProvider,
)
from botocore.exceptions import BotoCoreError
from botocore.utils import InstanceMetadataFetcher

from errors import BackendError, ConfigurationError
from observability import elapsed_ms, log_event, outbound_headers
from redaction import redact_text, redact_url


SERVICE_NAME = "es"
METADATA_TIMEOUT_SECONDS = 1.0
DEFAULT_CREDENTIALS_FILE = "~/.aws/credentials"
MAX_CONNECTIONS = 50
_SIGNED_HEADERS = ("Authorization", "X-Amz-Date", "X-Amz-Security-Token")

logger = logging.getLogger("shipit.search")


def build_credential_chain(
    profile_name: str = "default",
    credentials_file: Optional[str] = None,
    metadata_timeout: float = METADATA_TIMEOUT_SECONDS,
) -> CredentialResolver:
    """Instance or container role credentials first, then the named local profile.

    Environment variables and anonymous access are not consulted.
    """
    credentials_file = credentials_file or os.environ.get("AWS_SHARED_CREDENTIALS_FILE") or DEFAULT_CREDENTIALS_FILE
    fetcher = InstanceMetadataFetcher(timeout=metadata_timeout, num_attempts=1)
    return CredentialResolver(
        providers=[
            ContainerProvider(),
            InstanceMetadataProvider(iam_role_fetcher=fetcher),
            SharedCredentialProvider(
                creds_filename=os.path.expanduser(credentials_file),
                profile_name=profile_name,
            ),
        ]
    )


class AwsSigV4Auth(httpx.Auth):
    """Signs each outgoing request with SigV4 before it reaches the transport.

    ``credentials`` is the botocore credentials object returned by the chain.
    Role credentials are refreshable, so every call asks for a frozen snapshot
    which refreshes them once they approach expiry.
    """

    requires_request_body = True

    def __init__(self, credentials, region: str, service: str = SERVICE_NAME) -> None:
        self._credentials = credentials
        self.region = region
        self.service = service

    def sign(self, request: httpx.Request) -> httpx.Request:
        try:
            frozen = self._credentials.get_frozen_credentials()
        except BotoCoreError as exc:
            raise BackendError(f"Unable to refresh AWS credentials: {exc}") from exc
        headers = {"Host": request.headers.get("Host") or request.url.host}
        content_type = request.headers.get("Content-Type")
        if content_type:
            headers["Content-Type"] = content_type
        aws_request = AWSRequest(
            method=request.method,
            url=str(request.url),
            data=request.content,
            headers=headers,
        )
        SigV4Auth(frozen, self.service, self.region).add_auth(aws_request)
        for name in _SIGNED_HEADERS:
            value = aws_request.headers.get(name)
            if value:
                request.headers[name] = value
        return request

    def auth_flow(self, request: httpx.Request):
        yield self.sign(request)


class SearchClient:
    """Thread-safe handle to the search backend. One per process."""

    def __init__(
        self,
        endpoint_url: str,
        auth: httpx.Auth,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.endpoint_url = endpoint_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.endpoint_url,
            auth=auth,
            timeout=httpx.Timeout(timeout_seconds),
            limits=httpx.Limits(max_connections=MAX_CONNECTIONS, max_keepalive_connections=MAX_CONNECTIONS // 2),
            transport=transport,
        )

    @property
    def closed(self) -> bool:
        return self._client.is_closed

    def close(self) -> None:
        if not self._client.is_closed:
            self._client.close()
            logger.info("search.client closed endpoint=%s", redact_url(self.endpoint_url))

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        body: Optional[dict] = None,
        params: Optional[dict] = None,
        allow_not_found: bool = False,
    ) -> Optional[dict]:
        headers = outbound_headers()
        start = time.monotonic()
        try:
            response = self._client.request(method, path, json=body, params=params, headers=headers)
        except (httpx.HTTPError, BotoCoreError) as exc:
            latency_ms = elapsed_ms(start)
            message = redact_text(f"Search backend request failed: {exc}")
            log_event(
                "search_call_failed",
                level=logging.WARNING,
                operation=operation,
                duration_ms=latency_ms,
                error=message,
            )
            raise BackendError(message) from exc
        latency_ms = elapsed_ms(start)
        if response.status_code == 404 and allow_not_found:
            logger.info("search.request operation=%s status=404 latency_ms=%.1f", operation, latency_ms)
            return None
        if response.status_code >= 400:
            snippet = _safe_snippet(response.text)
            message = f"Search backend HTTP {response.status_code}: {snippet}" if snippet else f"Search backend HTTP {response.status_code}"
            log_event(
                "search_call_failed",
                level=logging.WARNING,
                operation=operation,
                duration_ms=latency_ms,
                status_code=response.status_code,
                error=message,
            )
            raise BackendError(redact_text(message))
        logger.info(
            "search.request operation=%s status=%s latency_ms=%.1f",
            operation,
            response.status_code,
            latency_ms,
        )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError("Search backend returned a non-JSON body") from exc

    def ensure_index(self, index: str, mappings: dict) -> bool:
        """Create ``index`` when missing. Returns True if it was created."""
        existing = self._request("HEAD", f"/{quote(index)}", "index_exists", allow_not_found=True)
        if existing is not None:
            return False
        self._request("PUT", f"/{quote(index)}", "create_index", body={"mappings": mappings})
        return True

    def index_document(self, index: str, doc_id: str, document: dict) -> dict:
        return self._request(
            "PUT",
            f"/{quote(index)}/_doc/{quote(doc_id, safe='')}",
            "index_document",
            body=document,
            params={"refresh": "wait_for"},
        )

    def get_document(self, index: str, doc_id: str) -> Optional[dict]:
        payload = self._request(
            "GET",
            f"/{quote(index)}/_doc/{quote(doc_id, safe='')}",
            "get_document",
            allow_not_found=True,
        )
        if not payload or not payload.get("found", True):
            return None
        return payload.get("_source")

    def delete_document(self, index: str, doc_id: str) -> bool:
        payload = self._request(
            "DELETE",
            f"/{quote(index)}/_doc/{quote(doc_id, safe='')}",
            "delete_document",
            params={"refresh": "wait_for"},
            allow_not_found=True,
        )
        return payload is not None and payload.get("result") == "deleted"

    def search(self, index: str, query: dict) -> dict:
        payload = self._request("POST", f"/{quote(index)}/_search", "search", body=query, allow_not_found=True)
        if payload is None:
            return {"hits": {"total": {"value": 0}, "hits": []}}
        return payload


class SigningSearchClientFactory:
    def __init__(
        self,
        endpoint_url: str,
        region: str,
        profile_name: str = "default",
        timeout_seconds: float = 5.0,
        credential_resolver: Optional[CredentialResolver] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        parsed = urlsplit(endpoint_url or "")
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ConfigurationError("aws.es.endpointUrl must be an http(s) URL")
        if not region:
            raise ConfigurationError("aws.region is required to sign search requests")
        self.endpoint_url = endpoint_url
        self.region = region
        self.timeout_seconds = timeout_seconds
        self.credential_resolver = credential_resolver or build_credential_chain(profile_name)
        self.transport = transport

    def resolve_credentials(self):
        try:
            credentials = self.credential_resolver.load_credentials()
        except BotoCoreError as exc:
            raise ConfigurationError(f"Unable to resolve AWS credentials: {exc}") from exc
        if credentials is None:
            raise ConfigurationError("No AWS credentials found from the instance role or the local profile")
        return credentials

    def build(self) -> SearchClient:
        credentials = self.resolve_credentials()
        client = SearchClient(
            self.endpoint_url,
            AwsSigV4Auth(credentials, self.region),
            timeout_seconds=self.timeout_seconds,
            transport=self.transport,
        )
        logger.info(
            "search.client built endpoint=%s region=%s credential_source=%s",
            redact_url(self.endpoint_url),
            self.region,
            getattr(credentials, "method", "unknown"),
        )
        return client


def _safe_snippet(value: str, limit: int = 240) -> str:
    if not value:
        return ""
    text = value.replace("\n", " ").replace("\r", " ")
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."
