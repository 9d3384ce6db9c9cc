import json
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlsplit

import jwt
import requests
from fastapi import Request
from jwt.algorithms import RSAAlgorithm

from apikeys import ApiKeyStore, digest_key
from errors import Unauthenticated
from models import Principal, PrincipalKind, VerifiedIdentity
from observability import log_event


GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_ISSUERS = ["https://accounts.google.com", "accounts.google.com"]
SESSION_COOKIE = "shipit_session"
CSRF_COOKIE = "shipit_csrf"
STATE_COOKIE = "shipit_oauth_state"
CSRF_HEADER = "X-CSRF-Token"
API_KEY_HEADER = "X-Api-Key"
LOGIN_URL = "/auth/login"
SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}

_JWKS_CACHE: Dict[str, Any] = {"url": None, "fetched_at": 0.0, "keys": {}}
_JWKS_TTL_SECONDS = 300

logger = logging.getLogger("shipit.auth")


class AuthenticationFailed(Exception):
    """Raised by the identity provider when a session assertion is not acceptable."""


def _fetch_jwks(jwks_url: str) -> Dict[str, dict]:
    now = time.time()
    if _JWKS_CACHE["url"] == jwks_url and (now - _JWKS_CACHE["fetched_at"]) < _JWKS_TTL_SECONDS:
        return _JWKS_CACHE["keys"]
    response = requests.get(jwks_url, timeout=5)
    response.raise_for_status()
    payload = response.json()
    keys = {}
    for key in payload.get("keys", []):
        kid = key.get("kid")
        if kid:
            keys[kid] = key
    _JWKS_CACHE["url"] = jwks_url
    _JWKS_CACHE["fetched_at"] = now
    _JWKS_CACHE["keys"] = keys
    return keys


class AntiForgeryChecker:
    """Double-submit check: unsafe requests must echo the CSRF cookie in a header."""

    def __init__(self, cookie_name: str = CSRF_COOKIE, header_name: str = CSRF_HEADER) -> None:
        self.cookie_name = cookie_name
        self.header_name = header_name

    def verify(self, request: Request) -> None:
        if request.method.upper() in SAFE_METHODS:
            return
        cookie_value = request.cookies.get(self.cookie_name) or ""
        header_value = request.headers.get(self.header_name) or ""
        if not cookie_value or not header_value:
            raise AuthenticationFailed("Anti-forgery token missing")
        if not secrets.compare_digest(cookie_value.encode("utf-8"), header_value.encode("utf-8")):
            raise AuthenticationFailed("Anti-forgery token mismatch")


class GoogleIdentityProvider:
    """Verifies the Google ID token kept in the session cookie after login."""

    def __init__(
        self,
        client_id: str,
        domain: str,
        anti_forgery: Optional[AntiForgeryChecker] = None,
        jwks_url: str = GOOGLE_JWKS_URL,
    ) -> None:
        self.client_id = client_id
        self.domain = domain
        self.anti_forgery = anti_forgery or AntiForgeryChecker()
        self.jwks_url = jwks_url

    def verify(self, token: str, request: Request) -> dict:
        self.anti_forgery.verify(request)
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise AuthenticationFailed("Invalid session header") from exc
        kid = header.get("kid")
        if not kid:
            raise AuthenticationFailed("Session token is missing kid")
        try:
            keys = _fetch_jwks(self.jwks_url)
        except requests.RequestException as exc:
            raise AuthenticationFailed("Identity provider keys unavailable") from exc
        jwk = keys.get(kid)
        if not jwk:
            raise AuthenticationFailed("Unknown signing key")
        try:
            key = RSAAlgorithm.from_jwk(json.dumps(jwk))
            claims = jwt.decode(
                token,
                key=key,
                algorithms=["RS256"],
                audience=self.client_id,
                issuer=GOOGLE_ISSUERS,
                options={"require": ["exp", "email"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationFailed("Session expired") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthenticationFailed("Invalid session token") from exc
        if claims.get("email_verified") is not True:
            raise AuthenticationFailed("Email address is not verified")
        if self.domain and claims.get("hd") != self.domain:
            raise AuthenticationFailed(f"Account is not in the {self.domain} domain")
        return claims


class SessionAuthGate:
    def __init__(self, provider, login_url: str = LOGIN_URL, cookie_name: str = SESSION_COOKIE) -> None:
        self.provider = provider
        self.login_url = login_url
        self.cookie_name = cookie_name

    def identify(self, token: str, request: Request) -> VerifiedIdentity:
        try:
            claims = self.provider.verify(token, request)
        except AuthenticationFailed as exc:
            log_event("session_rejected", reason=str(exc), path=request.url.path)
            raise Unauthenticated(str(exc), login_url=self.login_url) from exc
        email = claims["email"]
        return VerifiedIdentity(
            email=email,
            displayName=claims.get("name") or email,
            sessionExpiry=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
        )

    def authenticate(self, request: Request) -> VerifiedIdentity:
        token = request.cookies.get(self.cookie_name)
        if not token:
            raise Unauthenticated("Login required", login_url=self.login_url)
        identity = self.identify(token, request)
        request.state.identity = identity
        return identity

    def principal(self, request: Request) -> Principal:
        return Principal(kind=PrincipalKind.USER, identity=self.authenticate(request))


class ApiKeyAuthGate:
    """Accepts the configured seed key or any active key issued through the key store.

    Keys are compared as SHA-256 digests with ``secrets.compare_digest``; every
    active digest is compared, so the time taken does not depend on which one matched.
    """

    def __init__(
        self,
        secret: Optional[str],
        key_store: Optional[ApiKeyStore] = None,
        header_name: str = API_KEY_HEADER,
    ) -> None:
        self._seed_digest = digest_key(secret).encode("ascii") if secret else None
        self.key_store = key_store
        self.header_name = header_name
        if self._seed_digest is None and key_store is None:
            logger.warning("auth.api_key not configured; machine routes will reject every caller")
        elif self._seed_digest is None:
            logger.warning("auth.api_key seed not configured; only issued keys are accepted")

    def is_authorized(self, presented: Optional[str]) -> bool:
        if not presented:
            return False
        presented_digest = digest_key(presented).encode("ascii")
        if self._seed_digest is not None and secrets.compare_digest(presented_digest, self._seed_digest):
            return True
        if self.key_store is None:
            return False
        matched = False
        for digest in self.key_store.active_digests():
            matched |= secrets.compare_digest(presented_digest, digest.encode("ascii"))
        return matched

    def presented_key(self, request: Request) -> Optional[str]:
        value = request.headers.get(self.header_name)
        if value:
            return value.strip()
        authorization = request.headers.get("Authorization") or ""
        parts = authorization.split(" ")
        if len(parts) == 2 and parts[0].lower() == "apikey":
            return parts[1].strip()
        return None

    def authenticate(self, request: Request) -> Principal:
        presented = self.presented_key(request)
        if not presented:
            raise Unauthenticated("API key required", code="API_KEY_REQUIRED")
        if not self.is_authorized(presented):
            log_event("api_key_rejected", path=request.url.path)
            raise Unauthenticated("Invalid API key", code="API_KEY_INVALID")
        return Principal(kind=PrincipalKind.AUTOMATION)


class GoogleLoginFlow:
    """Authorization-code sign-in with Google, ending in the session cookie."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_url: str,
        domain: str,
        token_url: str = GOOGLE_TOKEN_URL,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_url = redirect_url
        self.domain = domain
        self.token_url = token_url
        parsed = urlsplit(redirect_url)
        self.callback_path = parsed.path or "/oauth2callback"
        self.secure_cookies = parsed.scheme == "https"

    def authorization_url(self, state: str) -> str:
        query = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": "openid email profile",
            "redirect_uri": self.redirect_url,
            "state": state,
            "prompt": "select_account",
        }
        if self.domain:
            query["hd"] = self.domain
        return f"{GOOGLE_AUTHORIZE_URL}?{urlencode(query)}"

    def exchange_code(self, code: str) -> str:
        try:
            response = requests.post(
                self.token_url,
                data={
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_url,
                    "grant_type": "authorization_code",
                },
                timeout=5,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise AuthenticationFailed("Token exchange with the identity provider failed") from exc
        id_token = payload.get("id_token") if isinstance(payload, dict) else None
        if not id_token:
            raise AuthenticationFailed("Identity provider returned no ID token")
        return id_token
