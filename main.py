from fastapi import FastAPI, Depends, Header, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from typing import Optional
import logging

from database import Base, engine, get_db, SessionLocal
import models  # noqa: F401  (registers tables on Base)
from billing import BillingClient
from cleanup import expiry_sweep, verify_cron_secret
from csrf import allowed_origins
from errors import register_exception_handlers
from notifications import Mailer
from rate_limit import RateLimiter
from storage import BlobStorage
from webhooks import dispatch_event

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ─── App created FIRST before any include_router ─────────────────────────────
app = FastAPI(
    title="FlyFile API",
    description="Secure file transfer: expiring links, password protection, encrypted storage",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# ─── Process-wide collaborators ──────────────────────────────────────────────
app.state.rate_limiter = RateLimiter()
app.state.storage = BlobStorage()
app.state.billing = BillingClient()
app.state.mailer = Mailer()
app.state.session_factory = SessionLocal

# ─── Routers ──────────────────────────────────────────────────────────────────
from transfer_routes import router as transfer_router
from file_routes import router as file_router
from security_routes import router as security_router
from account_routes import router as account_router

app.include_router(transfer_router)
app.include_router(file_router)
app.include_router(security_router)
app.include_router(account_router)

Base.metadata.create_all(bind=engine)


# ─── Health ───────────────────────────────────────────────────────────────────

@app.get("/health", tags=["System"])
def health():
    return {
        "status": "ok",
        "service": "FlyFile",
        "version": "1.0.0",
        "storage": app.state.storage.get_health(),
    }


# ─── Scheduled cleanup ────────────────────────────────────────────────────────

def _run_cleanup(background_tasks: BackgroundTasks, db: Session, authorization: Optional[str]):
    verify_cron_secret(authorization)
    report = expiry_sweep(db, app.state.storage)
    for owner_id, transfer_id in report.expired:
        background_tasks.add_task(
            dispatch_event, app.state.session_factory, owner_id, "transfer.expired",
            {"transfer_id": transfer_id},
        )
    return {"success": True, **report.to_dict()}


@app.post("/cron/cleanup", tags=["System"])
def cron_cleanup(background_tasks: BackgroundTasks, db: Session = Depends(get_db),
                 authorization: Optional[str] = Header(None)):
    return _run_cleanup(background_tasks, db, authorization)


@app.get("/cron/cleanup", tags=["System"])
def cron_cleanup_get(background_tasks: BackgroundTasks, db: Session = Depends(get_db),
                     authorization: Optional[str] = Header(None)):
    return _run_cleanup(background_tasks, db, authorization)
