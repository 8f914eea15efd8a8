# dependencies.py
# Process-wide collaborators live on app.state; handlers get them through these.

from fastapi import BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from database import get_db
from rate_limit import get_rate_limiter
from transfers import TransferService


def get_storage(request: Request):
    return request.app.state.storage


def get_mailer(request: Request):
    return request.app.state.mailer


def get_billing(request: Request):
    return request.app.state.billing


def get_session_factory(request: Request):
    return request.app.state.session_factory


def get_transfer_service(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
) -> TransferService:
    return TransferService(
        db,
        get_storage(request),
        limiter=get_rate_limiter(request),
        mailer=get_mailer(request),
        tasks=background_tasks,
        session_factory=get_session_factory(request),
    )
