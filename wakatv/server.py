from __future__ import annotations

import logging
from contextlib import asynccontextmanager
import os
from pathlib import Path
from typing import Optional

from .infra.sql import make_async_engine, supports_skip_locked
from .infra import timings
from .infra.timings import timeit
from .model.db import Base
from .model import inventory as inventory_model
from .model.ledger import Ledger
from .model.referral import ReferralLedger
from .notifier import Notifier, SmtpNotifier, ConsoleNotifier
from .redemption import (
    Outcome, RedemptionRequest, RedemptionWorkflow,
)

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, ORJSONResponse, PlainTextResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware

from .helpers import ct_equal

import redis.asyncio as redis
import uvicorn

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get(
    "DATABASE_URL", "sqlite:///./db/wakatv.sqlite"
)
INVENTORY_BACKEND = inventory_model.BACKEND

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

CORS_ORIGINS = [
    o.strip() for o in os.environ.get(
        "CORS_ORIGINS",
        "http://localhost:5500,https://nimble-pudding-0824c3.netlify.app",
    ).split(",") if o.strip()
]

SMTP_HOST = os.environ.get("SMTP_HOST", "smtp-relay.brevo.com")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_USER = os.environ.get("SMTP_USER", os.environ.get("BREVO_SMTP_USER"))
SMTP_PASS = os.environ.get("SMTP_PASS", os.environ.get("BREVO_SMTP_PASS"))
MAIL_FROM = os.environ.get("MAIL_FROM", "WakaTV <easywakatv@gmail.com>")
SUPPORT_EMAIL = os.environ.get("SUPPORT_EMAIL", "support@wakatv.co.za")

NOTIFY_TIMEOUT_SECONDS = float(os.environ.get("NOTIFY_TIMEOUT_SECONDS", "30"))
MAX_QUANTITY = int(os.environ.get("MAX_QUANTITY", "20"))
REWARD_EVERY = int(os.environ.get("REWARD_EVERY", "5"))

OUTCOME_STATUS = {
    Outcome.COMPLETE: 200,
    Outcome.FAILED_PERSISTENCE: 200,
    Outcome.INVALID_REQUEST: 400,
    Outcome.REJECTED_INSUFFICIENT_INVENTORY: 409,
    Outcome.IN_PROGRESS: 409,
    Outcome.FAILED_DELIVERY: 502,
}


TEMPLATE_DIR = Path(__file__).parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATE_DIR))

engine, SessionAsync, gated = make_async_engine(DATABASE_URL)
SKIP_LOCKED = supports_skip_locked(engine)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


# ---
# startup / shutdown
# ---
def _say_hello():
    print('\n' * 3)
    print('=' * 50)
    I = 'Redis' if INVENTORY_BACKEND == 'redis' else 'SQL'
    print('WakaTV is starting up...')
    print(f'   - Database:          {engine.url.render_as_string()}')
    print(f'   - Inventory Backend: {I}')
    print(f'   - Mail:              {SMTP_HOST if SMTP_USER else "console"}')
    print('=' * 50)
    print('\n' * 3)


async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _redis_start(app: FastAPI):
    if INVENTORY_BACKEND == 'redis':
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "512")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


def _notifier_start(app: FastAPI):
    if SMTP_USER:
        app.state.notifier = SmtpNotifier(
            host=SMTP_HOST,
            port=SMTP_PORT,
            username=SMTP_USER,
            password=SMTP_PASS,
            mail_from=MAIL_FROM,
            support_email=SUPPORT_EMAIL,
        )
    else:
        logger.warning("SMTP_USER not set, codes are logged instead of sent")
        app.state.notifier = ConsoleNotifier()


async def _redis_stop(app: FastAPI):
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    _say_hello()
    await _db_init()
    _redis_start(app)
    _notifier_start(app)
    try:
        yield
    finally:
        await _redis_stop(app)
        # pooled connections belong to this event loop
        await engine.dispose()


app = FastAPI(
    title="WakaTV",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET,
                   same_site="lax")


def get_notifier() -> Notifier:
    notifier = getattr(app.state, "notifier", None)
    if notifier is None:
        raise RuntimeError("Notifier not initialized")
    return notifier


def inventory_store(db: AsyncSession = Depends(get_db)):
    return inventory_model.new_store(
        db=db,
        r=getattr(app.state, "redis", None),
        gated=gated,
        skip_locked=SKIP_LOCKED,
    )


def ledger_store(db: AsyncSession = Depends(get_db)) -> Ledger:
    return Ledger(db=db, gated=gated)


def referral_store(db: AsyncSession = Depends(get_db)) -> ReferralLedger:
    return ReferralLedger(db=db, gated=gated)


def redemption_workflow(
    inventory=Depends(inventory_store),
    ledger: Ledger = Depends(ledger_store),
    referrals: ReferralLedger = Depends(referral_store),
    notifier: Notifier = Depends(get_notifier),
) -> RedemptionWorkflow:
    return RedemptionWorkflow(
        inventory=inventory,
        ledger=ledger,
        referrals=referrals,
        notifier=notifier,
        notify_timeout=NOTIFY_TIMEOUT_SECONDS,
        max_quantity=MAX_QUANTITY,
        reward_every=REWARD_EVERY,
    )


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=403, detail="Unauthorized")


@app.exception_handler(HTTPException)
async def _http_error(request: Request, exc: HTTPException):
    return ORJSONResponse(
        {"success": False, "message": exc.detail},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


# ----------------------------
# Health
# ----------------------------
@app.get("/", response_class=PlainTextResponse)
async def health():
    return "WakaTV backend is running"


# ----------------------------
# Redemption
# ----------------------------
@app.post("/send-code")
async def send_code(
    payload: dict,
    workflow: RedemptionWorkflow = Depends(redemption_workflow),
):
    req = RedemptionRequest.from_payload(payload)
    result = await workflow.redeem(req)

    body = {
        "success": result.delivered_ok,
        "outcome": result.outcome.value,
        "delivered": result.delivered,
        "referralCode": result.referral_code,
        "idempotent": result.idempotent,
    }
    if result.detail:
        body["detail"] = result.detail
    return ORJSONResponse(body, status_code=OUTCOME_STATUS[result.outcome])


@app.get("/api/referral")
async def referral_info(
    email: str,
    referrals: ReferralLedger = Depends(referral_store),
):
    account = await referrals.find(email.strip().lower())
    if account is None:
        raise HTTPException(404, detail="no referral account for this email")
    return {
        "success": True,
        "referralCode": account.referral_code,
        "referred": account.referred_count,
        "rewards": account.rewards_earned,
    }


# ----------------------------
# Admin
# ----------------------------
@app.post("/admin/login")
async def admin_login(request: Request, payload: dict):
    username = str(payload.get("username") or "")
    password = str(payload.get("password") or "")
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return {"success": True, "message": "Logged in"}
    raise HTTPException(401, detail="Invalid credentials")


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"success": True, "message": "Logged out successfully"}


@app.get("/admin/logs-data", dependencies=[Depends(require_admin)])
async def admin_logs(
    limit: int = 200,
    ledger: Ledger = Depends(ledger_store),
):
    async with timeit("admin.logs"):
        logs = await ledger.list_recent(limit=limit)
    return {"success": True, "logs": logs}


@app.get("/admin/logs", response_class=HTMLResponse,
         dependencies=[Depends(require_admin)])
async def admin_logs_page(
    request: Request,
    limit: int = 200,
    ledger: Ledger = Depends(ledger_store),
):
    logs = await ledger.list_recent(limit=limit)
    return templates.TemplateResponse(request, "admin/logs.html", {"logs": logs})


@app.get("/admin/codes", dependencies=[Depends(require_admin)])
async def admin_codes(
    unused: bool = False,
    inventory=Depends(inventory_store),
):
    async with timeit("admin.codes"):
        if unused:
            codes = await inventory.list_unused()
        else:
            codes = await inventory.list_all()
    return {"success": True, "codes": codes}


@app.get("/admin/inventory", dependencies=[Depends(require_admin)])
async def admin_inventory(inventory=Depends(inventory_store)):
    return {"success": True, **(await inventory.stats())}


@app.post("/admin/upload-codes", dependencies=[Depends(require_admin)])
async def admin_upload_codes(
    payload: dict,
    inventory=Depends(inventory_store),
):
    codes = payload.get("codes")
    if not isinstance(codes, list):
        raise HTTPException(400, detail="Invalid codes format")
    async with timeit("admin.upload_codes"):
        inserted = await inventory.bulk_upsert(
            str(c) for c in codes if c is not None
        )
    return {
        "success": True,
        "message": "Codes uploaded successfully",
        "inserted": inserted,
    }


@app.post("/admin/delete-codes", dependencies=[Depends(require_admin)])
async def admin_delete_codes(
    payload: dict,
    inventory=Depends(inventory_store),
):
    ids = payload.get("ids")
    if not isinstance(ids, list):
        raise HTTPException(400, detail="Invalid ids format")
    if INVENTORY_BACKEND == "sql":
        try:
            ids = [int(i) for i in ids]
        except (TypeError, ValueError):
            raise HTTPException(400, detail="ids must be integers")
    deleted = await inventory.delete(ids)
    return {"success": True, "deleted": deleted}


@app.get("/admin/referrals", dependencies=[Depends(require_admin)])
async def admin_referrals(
    limit: int = 200,
    referrals: ReferralLedger = Depends(referral_store),
):
    return {
        "success": True,
        "accounts": await referrals.list_accounts(limit=limit),
    }


@app.get("/admin/timings", dependencies=[Depends(require_admin)])
async def admin_timings(reset: Optional[bool] = False):
    out = timings.snapshot()
    if reset:
        timings.reset()
    return {"success": True, "timings": out}


def main():
    config = uvicorn.Config(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "10000")),
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
    )
    uvicorn.Server(config).run()


if __name__ == "__main__":
    main()
