import logging
import secrets
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import HTTPException as FastAPIHTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from apikeys import ApiKeyStore
from auth import (
    CSRF_COOKIE,
    LOGIN_URL,
    SESSION_COOKIE,
    STATE_COOKIE,
    AntiForgeryChecker,
    ApiKeyAuthGate,
    AuthenticationFailed,
    GoogleIdentityProvider,
    GoogleLoginFlow,
    SessionAuthGate,
)
from config import Settings
from context import build_context
from errors import BackendError, GatewayError, NotFound, Unauthenticated
from models import ApiKeyRequest, DeploymentIntent, DeploymentResult, DeploymentSearch, Principal
from observability import REQUEST_ID_HEADER, log_event, request_id_ctx
from storage import DeploymentStore


logger = logging.getLogger("shipit.api")

# Startup order: configuration, search client, notifications, admin policy.
# Any failure here aborts the import and no route is ever served.
settings = Settings()
context = build_context(settings)
store = DeploymentStore(context.search, settings.es_index_name)
key_store = ApiKeyStore(context.search, settings.api_key_index_name)
session_gate = SessionAuthGate(
    GoogleIdentityProvider(settings.google_client_id, settings.google_domain, AntiForgeryChecker())
)
api_key_gate = ApiKeyAuthGate(settings.api_key, key_store)
login_flow = GoogleLoginFlow(
    settings.google_client_id,
    settings.google_client_secret,
    settings.google_redirect_url,
    settings.google_domain,
)

logger.info(
    "config.loaded es_endpoint=%s api_key=%s admins=%s",
    "set" if settings.es_endpoint_url else "missing",
    "set" if settings.api_key else "missing",
    len(context.admin_policy.allow_list),
)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    for name, ensure in (("deployments", store.ensure_index), ("api_keys", key_store.ensure_index)):
        try:
            ensure()
        except BackendError as exc:
            logger.warning("storage.index unavailable at startup index=%s error=%s", name, exc.message)
    yield
    context.close()


app = FastAPI(title="shipit API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    request_id = request_id_ctx.get() or str(uuid.uuid4())
    payload = {
        "code": code,
        "message": message,
        "request_id": request_id,
    }
    for key, value in extra.items():
        if value is not None:
            payload[key] = value
    return JSONResponse(status_code=status_code, content=payload)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    login_url = exc.login_url if isinstance(exc, Unauthenticated) else None
    return error_response(exc.status_code, exc.code, exc.message, login_url=login_url)


@app.exception_handler(FastAPIHTTPException)
async def http_exception_handler(request: Request, exc: FastAPIHTTPException):
    return error_response(exc.status_code, "HTTP_ERROR", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
    return error_response(400, "INVALID_REQUEST", "Invalid request", fields=fields)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def session_principal(request: Request) -> Principal:
    return session_gate.principal(request)


def automation_principal(request: Request) -> Principal:
    return api_key_gate.authenticate(request)


def key_admin_principal(principal: Principal = Depends(session_principal)) -> Principal:
    context.admin_policy.require_admin(principal, "manage API keys")
    return principal


def _load_deployment(deployment_id: str):
    record = store.get(deployment_id)
    if record is None:
        raise NotFound(f"Deployment {deployment_id} not found", code="DEPLOYMENT_NOT_FOUND")
    return record


def _load_api_key(key_id: str):
    record = key_store.get(key_id)
    if record is None:
        raise NotFound(f"API key {key_id} not found", code="API_KEY_NOT_FOUND")
    return record


def _record_deployment(intent: DeploymentIntent, principal: Principal, replaces: Optional[str]) -> dict:
    replaced = None
    if replaces:
        context.admin_policy.require_admin(principal, "replace deployment records")
        replaced = _load_deployment(replaces)
    record = store.build_record(intent, principal.actor_id)
    store.insert(record)
    if replaced:
        store.delete(replaced.id)
    log_event(
        "deployment_recorded",
        deployment_id=record.id,
        actor_id=principal.actor_id,
        team=record.team,
        service_name=record.service,
        build_id=record.buildId,
        replaced=replaced.id if replaced else None,
    )
    warnings = context.notifications.announce_deployment(record)
    payload = record.dict()
    payload["notificationWarnings"] = warnings
    if replaced:
        payload["replaced"] = replaced.id
    return payload


@app.get("/health")
def health():
    return {"status": "UP"}


@app.get(LOGIN_URL)
def login():
    state = secrets.token_urlsafe(24)
    response = RedirectResponse(login_flow.authorization_url(state), status_code=302)
    response.set_cookie(
        STATE_COOKIE,
        state,
        max_age=600,
        httponly=True,
        secure=login_flow.secure_cookies,
        samesite="lax",
    )
    return response


def oauth_callback(request: Request, code: Optional[str] = None, state: Optional[str] = None):
    expected = request.cookies.get(STATE_COOKIE) or ""
    if not code or not state or not expected or not secrets.compare_digest(state.encode(), expected.encode()):
        raise Unauthenticated("Login state mismatch", login_url=LOGIN_URL, code="LOGIN_STATE_MISMATCH")
    try:
        token = login_flow.exchange_code(code)
    except AuthenticationFailed as exc:
        raise Unauthenticated(str(exc), login_url=LOGIN_URL) from exc
    identity = session_gate.identify(token, request)
    max_age = max(0, int((identity.sessionExpiry - datetime.now(timezone.utc)).total_seconds()))
    response = RedirectResponse("/", status_code=303)
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=max_age,
        httponly=True,
        secure=login_flow.secure_cookies,
        samesite="lax",
    )
    # readable by the frontend, which echoes it in the CSRF header
    response.set_cookie(
        CSRF_COOKIE,
        secrets.token_urlsafe(24),
        max_age=max_age,
        secure=login_flow.secure_cookies,
        samesite="lax",
    )
    response.delete_cookie(STATE_COOKIE)
    log_event("session_started", actor_id=identity.email)
    return response


app.add_api_route(login_flow.callback_path, oauth_callback, methods=["GET"])


@app.get("/v1/whoami")
def whoami(principal: Principal = Depends(session_principal)):
    identity = principal.identity
    return {
        "email": identity.email,
        "displayName": identity.displayName,
        "sessionExpiry": identity.sessionExpiry.isoformat(),
        "isAdmin": context.is_admin(identity),
    }


@app.get("/v1/deployments")
def list_deployments(
    team: Optional[str] = None,
    service: Optional[str] = None,
    buildId: Optional[str] = None,
    result: Optional[DeploymentResult] = None,
    page: int = Query(1, ge=1),
    principal: Principal = Depends(session_principal),
):
    criteria = DeploymentSearch(team=team, service=service, buildId=buildId, result=result, page=page)
    return store.find(criteria).dict()


@app.get("/v1/deployments/{deployment_id}")
def get_deployment(deployment_id: str, principal: Principal = Depends(session_principal)):
    return _load_deployment(deployment_id).dict()


@app.post("/v1/deployments", status_code=201)
def create_deployment(intent: DeploymentIntent, principal: Principal = Depends(automation_principal)):
    return _record_deployment(intent, principal, intent.replaces)


@app.put("/v1/deployments/{deployment_id}", status_code=201)
def replace_deployment(
    deployment_id: str,
    intent: DeploymentIntent,
    principal: Principal = Depends(session_principal),
):
    return _record_deployment(intent, principal, deployment_id)


@app.delete("/v1/deployments/{deployment_id}")
def delete_deployment(deployment_id: str, principal: Principal = Depends(session_principal)):
    context.admin_policy.require_admin(principal, "delete deployment records")
    record = _load_deployment(deployment_id)
    if not store.delete(deployment_id):
        raise NotFound(f"Deployment {deployment_id} not found", code="DEPLOYMENT_NOT_FOUND")
    log_event(
        "deployment_deleted",
        deployment_id=deployment_id,
        actor_id=principal.actor_id,
        service_name=record.service,
    )
    warnings = context.notifications.announce_deletion(record, principal.actor_id)
    return {"deleted": deployment_id, "notificationWarnings": warnings}


@app.get("/v1/api-keys")
def list_api_keys(principal: Principal = Depends(key_admin_principal)):
    return {"items": [record.public() for record in key_store.list()]}


@app.post("/v1/api-keys", status_code=201)
def issue_api_key(key_request: ApiKeyRequest, principal: Principal = Depends(key_admin_principal)):
    replaced = _load_api_key(key_request.replaces) if key_request.replaces else None
    record, plaintext = key_store.issue(key_request.description, principal.actor_id)
    if replaced:
        key_store.revoke(replaced.id, principal.actor_id)
    log_event(
        "api_key_issued",
        key_id=record.id,
        actor_id=principal.actor_id,
        replaced=replaced.id if replaced else None,
    )
    payload = record.public()
    payload["apiKey"] = plaintext
    return payload


@app.delete("/v1/api-keys/{key_id}")
def revoke_api_key(key_id: str, principal: Principal = Depends(key_admin_principal)):
    record = key_store.revoke(key_id, principal.actor_id)
    if record is None:
        raise NotFound(f"API key {key_id} not found", code="API_KEY_NOT_FOUND")
    log_event("api_key_revoked", key_id=key_id, actor_id=principal.actor_id)
    return record.public()
