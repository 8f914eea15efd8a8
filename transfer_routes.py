# transfer_routes.py

from typing import Optional

from fastapi import APIRouter, Depends, File, Header, Request, UploadFile
from fastapi.responses import StreamingResponse

from access import CallerIdentity, ensure_permission, get_caller, require_permission
from csrf import csrf_protect
from dependencies import get_transfer_service
from rate_limit import client_ip, get_rate_limiter, rate_limited
from storage import content_disposition
from transfers import (
    UNSET, DecryptedDownload, FileSpec, TransferService, serialize_transfer,
)
import schemas

router = APIRouter(prefix="/transfers", tags=["Transfers"])


def _slot(slot) -> dict:
    return {
        "file_id": slot.file_id,
        "name": slot.name,
        "size": slot.size,
        "storage_key": slot.storage_key,
        "upload_url": slot.upload_url,
    }


def _spec(f: schemas.FileSpecIn) -> FileSpec:
    return FileSpec(
        name=f.name,
        size=f.size,
        mime_type=f.mime_type or "application/octet-stream",
        encryption_key=f.encryption_key,
        encryption_iv=f.encryption_iv,
    )


# ─── CREATE ─────────────────────────────────────────────

@router.post("", dependencies=[Depends(csrf_protect), Depends(rate_limited("upload"))])
def create_transfer(
    req: schemas.TransferCreate,
    request: Request,
    caller: CallerIdentity = Depends(get_caller),
    service: TransferService = Depends(get_transfer_service),
):
    ensure_permission(caller, "write")
    if caller.is_anonymous:
        get_rate_limiter(request).hit(client_ip(request), "anonymous")

    created = service.create_transfer(
        caller,
        title=req.title,
        expiry_days=req.expiry_days,
        password=req.password,
        recipient_email=req.recipient_email,
        message=req.message,
        delivery_method=req.delivery_method,
        sender_name=req.sender_name,
        sender_email=req.sender_email,
        files=[_spec(f) for f in req.files],
        source="api" if caller.api_key_id else "web",
    )
    body = {
        "success": True,
        "transfer": serialize_transfer(created.transfer),
        "upload_slots": [_slot(s) for s in created.upload_slots],
    }
    if created.capability_id:
        body["capability_id"] = created.capability_id
    return body


@router.get("", dependencies=[Depends(rate_limited("api"))])
def list_transfers(
    caller: CallerIdentity = Depends(require_permission("read")),
    service: TransferService = Depends(get_transfer_service),
):
    return {"success": True, "transfers": service.list_transfers(caller)}


# ─── CONFIRM / PASSWORD / BULK ──────────────────────────
# Registered before /{transfer_id} routes so the literal paths win

@router.post("/confirm", dependencies=[Depends(csrf_protect), Depends(rate_limited("api"))])
def confirm_upload(
    req: schemas.ConfirmRequest,
    caller: CallerIdentity = Depends(get_caller),
    service: TransferService = Depends(get_transfer_service),
):
    ensure_permission(caller, "write")
    result = service.confirm_upload(
        caller,
        file_id=req.file_id,
        transfer_id=req.transfer_id,
        capability_id=req.capability_id,
    )
    return {
        "success": True,
        "confirmed_files": result.confirmed_files,
        "counted_size": result.counted_size,
        "activated": result.activated,
    }


@router.post("/verify-password", dependencies=[Depends(csrf_protect)])
def verify_password(
    req: schemas.VerifyPasswordRequest,
    request: Request,
    service: TransferService = Depends(get_transfer_service),
):
    valid = service.verify_password(req.transfer_id, req.password, client_ip(request))
    return {"success": True, "valid": valid}


@router.post("/bulk-delete", dependencies=[Depends(csrf_protect), Depends(rate_limited("sensitive"))])
def bulk_delete_transfers(
    req: schemas.BulkDeleteRequest,
    caller: CallerIdentity = Depends(get_caller),
    service: TransferService = Depends(get_transfer_service),
):
    ensure_permission(caller, "delete")
    result = service.bulk_delete_transfers(caller, req.ids, req.capability_id)
    return {"success": True, **result.to_dict()}


# ─── SINGLE TRANSFER ────────────────────────────────────

@router.get("/{transfer_id}", dependencies=[Depends(rate_limited("download"))])
def get_transfer(transfer_id: str, service: TransferService = Depends(get_transfer_service)):
    return {"success": True, "transfer": service.get_public_transfer(transfer_id)}


@router.get("/{transfer_id}/stats", dependencies=[Depends(rate_limited("api"))])
def transfer_stats(
    transfer_id: str,
    caller: CallerIdentity = Depends(get_caller),
    service: TransferService = Depends(get_transfer_service),
    x_capability_id: Optional[str] = Header(None),
):
    ensure_permission(caller, "read")
    return {"success": True, "stats": service.download_stats(caller, transfer_id, x_capability_id)}


@router.patch("/{transfer_id}", dependencies=[Depends(csrf_protect), Depends(rate_limited("api"))])
def update_transfer(
    transfer_id: str,
    req: schemas.TransferUpdate,
    caller: CallerIdentity = Depends(get_caller),
    service: TransferService = Depends(get_transfer_service),
    x_capability_id: Optional[str] = Header(None),
):
    ensure_permission(caller, "write")
    if req.remove_password:
        password = None
    elif req.password:
        password = req.password
    else:
        password = UNSET
    transfer = service.update_transfer(
        caller, transfer_id,
        title=req.title if req.title is not None else UNSET,
        password=password,
        capability_id=x_capability_id,
    )
    return {"success": True, "transfer": serialize_transfer(transfer)}


@router.delete("/{transfer_id}", dependencies=[Depends(csrf_protect), Depends(rate_limited("api"))])
def delete_transfer(
    transfer_id: str,
    caller: CallerIdentity = Depends(get_caller),
    service: TransferService = Depends(get_transfer_service),
    x_capability_id: Optional[str] = Header(None),
):
    ensure_permission(caller, "delete")
    service.delete_transfer(caller, transfer_id, x_capability_id)
    return {"success": True, "message": "Transfer deleted"}


# ─── FILES IN A TRANSFER ────────────────────────────────

@router.post("/{transfer_id}/files", dependencies=[Depends(csrf_protect), Depends(rate_limited("upload"))])
def add_file(
    transfer_id: str,
    req: schemas.FileSpecIn,
    caller: CallerIdentity = Depends(get_caller),
    service: TransferService = Depends(get_transfer_service),
    x_capability_id: Optional[str] = Header(None),
):
    ensure_permission(caller, "write")
    slot = service.add_file(caller, transfer_id, _spec(req), x_capability_id)
    return {"success": True, "upload_slot": _slot(slot)}


@router.put(
    "/{transfer_id}/files/{file_id}/content",
    dependencies=[Depends(csrf_protect), Depends(rate_limited("upload"))],
)
def upload_content(
    transfer_id: str,
    file_id: str,
    file: UploadFile = File(...),
    caller: CallerIdentity = Depends(get_caller),
    service: TransferService = Depends(get_transfer_service),
    x_capability_id: Optional[str] = Header(None),
):
    ensure_permission(caller, "write")
    data = file.file.read()
    stored = service.upload_content(caller, transfer_id, file_id, data, x_capability_id)
    return {"success": True, "file_id": stored.id, "size": stored.size, "is_encrypted": stored.is_encrypted}


@router.post(
    "/{transfer_id}/files/{file_id}/download",
    dependencies=[Depends(csrf_protect), Depends(rate_limited("download"))],
)
def download_file(
    transfer_id: str,
    file_id: str,
    request: Request,
    req: Optional[schemas.DownloadRequest] = None,
    service: TransferService = Depends(get_transfer_service),
):
    result = service.secure_download(
        transfer_id,
        file_id,
        password=req.password if req else None,
        caller_key=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        country=request.headers.get("CF-IPCountry"),
    )
    if isinstance(result, DecryptedDownload):
        return StreamingResponse(
            result.chunks,
            media_type=result.mime_type,
            headers={
                "Content-Disposition": content_disposition(result.filename),
                "Content-Length": str(result.size),
                "Cache-Control": "no-store",
            },
        )
    return {"success": True, "download_url": result.url, "filename": result.filename}
