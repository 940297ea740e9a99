# Meterline API v1.0.0
# FastAPI. Users, instances, billing windows, accounts. Thin over the core:
# every route is a call into instances / billing / users and nothing more.

import json
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from billing import BillingLedger
from db import get_coordinator, set_coordinator
from errors import MeterlineError, PrimaryError
from instances import InstanceLifecycle, log, wall_clock
from payments import get_payment_provider
from users import create_user, get_user, get_user_property

METERLINE_ENV = os.environ.get("METERLINE_ENV", "dev").lower()
# Raw SQLite messages are only shown to callers while developing
EXPOSE_STORAGE_ERRORS = METERLINE_ENV in {"dev", "development"}

# Clock shared by every request; tests swap it for a fake
clock = wall_clock


def _lifecycle():
    return InstanceLifecycle(get_coordinator(), clock=clock)


def _ledger():
    return BillingLedger(get_coordinator(), clock=clock)


@asynccontextmanager
async def lifespan(_: FastAPI):
    coordinator = get_coordinator()
    _lifecycle().reconcile()
    coordinator.start_heartbeat()
    log.info("API READY storage=%s env=%s", coordinator.mode, METERLINE_ENV)
    try:
        yield
    finally:
        coordinator.close()
        set_coordinator(None)
        log.info("API SHUTDOWN")


app = FastAPI(title="Meterline", version="1.0.0", lifespan=lifespan)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs for observability."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - started) * 1000, 2)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "client_ip": request.client.host if request.client else "unknown",
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


# ── Error envelopes ───────────────────────────────────────────────────


def _error(status_code, code, message, **extra):
    body = {"code": code, "message": message}
    body.update(extra)
    return JSONResponse(status_code=status_code, content={"ok": False, "error": body})


@app.exception_handler(MeterlineError)
async def meterline_exception_handler(_: Request, exc: MeterlineError):
    message = exc.message
    if isinstance(exc, PrimaryError) and not EXPOSE_STORAGE_ERRORS:
        message = "Storage failure"
    return _error(exc.status, exc.code, message)


@app.exception_handler(ValueError)
async def value_error_handler(_: Request, exc: ValueError):
    return _error(400, "invalid_request", str(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return _error(exc.status_code, "http_error", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return _error(
        422, "validation_error", "Request validation failed",
        details=json.loads(json.dumps(exc.errors(), default=str)),
    )


# ── Request models ────────────────────────────────────────────────────


class UserIn(BaseModel):
    username: str = Field(min_length=3, max_length=32)
    email: str = Field(min_length=3, max_length=254)
    password_hash: str = Field(min_length=1)
    passkey: str | None = None


class InstanceIn(BaseModel):
    user_id: int
    country_code: str = Field(min_length=2, max_length=2)
    phone_number: str = Field(min_length=7, max_length=24)


class DepositIn(BaseModel):
    user_id: int
    amount: float = Field(gt=0)


class ApiKeyActivationIn(BaseModel):
    payment_method: str | None = None


# ── User endpoints ────────────────────────────────────────────────────


@app.post("/users", status_code=201)
def api_create_user(u: UserIn):
    """Register a user. The password must already be hashed by the auth layer."""
    user = create_user(
        u.username, u.email, u.password_hash, passkey=u.passkey,
        coordinator=get_coordinator(), clock=clock,
    )
    return {"ok": True, "user": user}


@app.get("/users/{user_id}")
def api_get_user(user_id: int):
    coordinator = get_coordinator()
    return {
        "ok": True,
        "user": get_user(user_id, coordinator),
        "property": get_user_property(user_id, coordinator),
    }


@app.post("/users/{user_id}/api-key/activate")
def api_activate_api_key(user_id: int, body: ApiKeyActivationIn | None = None):
    """Charge the configured payment backend, then unlock the API key."""
    try:
        provider = get_payment_provider()
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e))
    metadata = {"payment_method": body.payment_method} if body and body.payment_method else {}
    outcome = _ledger().activate_api_key(user_id, provider, payment_metadata=metadata)
    return {"ok": True, "payment": outcome.to_dict()}


# ── Instance endpoints ────────────────────────────────────────────────


@app.get("/instances")
def api_list_instances(user_id: int):
    """List all instances owned by a user."""
    return {"ok": True, "instances": _lifecycle().list_instances(user_id)}


@app.post("/instances", status_code=201)
def api_create_instance(i: InstanceIn):
    """Provision a new instance. It starts inactive."""
    instance = _lifecycle().create_instance(i.user_id, i.country_code, i.phone_number)
    return {"ok": True, "instance": instance}


@app.get("/instances/{instance_id}")
def api_get_instance(instance_id: int):
    return {"ok": True, "instance": _lifecycle().get_instance(instance_id)}


@app.patch("/instances/{instance_id}/activate")
def api_activate_instance(instance_id: int):
    """Mark an instance active and open a billing window."""
    record = _lifecycle().activate(instance_id)
    return {"ok": True, "instance_id": instance_id, "status": "active", "record": record}


@app.patch("/instances/{instance_id}/deactivate")
def api_deactivate_instance(instance_id: int):
    """Mark an instance inactive, close its billing window and price it."""
    record = _lifecycle().deactivate(instance_id)
    return {"ok": True, "instance_id": instance_id, "status": "inactive", "record": record}


# ── Billing endpoints ────────────────────────────────────────────────


@app.get("/billing")
def api_billing(user_id: int):
    """Every billing window for a user and the total of the closed ones."""
    return _ledger().summary(user_id)


@app.get("/billing/account")
def api_billing_account(user_id: int):
    return {"ok": True, "account": _ledger().account_summary(user_id)}


@app.post("/billing/deposit")
def api_billing_deposit(d: DepositIn):
    return {"ok": True, "account": _ledger().deposit(d.user_id, d.amount)}


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": METERLINE_ENV}


@app.get("/readyz")
def readyz():
    storage = get_coordinator().healthcheck()
    if not storage.get("ok"):
        raise HTTPException(
            status_code=503, detail=f"Storage not ready: {storage.get('error', 'unknown')}"
        )
    return {"ok": True, "status": "ready", "storage": storage}


@app.get("/metrics")
def metrics():
    return {"ok": True, "metrics": {"storage": get_coordinator().stats()}}


@app.get("/")
def root():
    return {"name": "Meterline", "status": "running"}


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", "3000"))
    log.info("API STARTING on port %d", port)
    uvicorn.run(app, host="0.0.0.0", port=port)
