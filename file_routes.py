# file_routes.py: standalone library files

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from access import CallerIdentity, ensure_permission, get_caller, require_permission
from csrf import csrf_protect
from database import get_db
from dependencies import get_session_factory, get_storage, get_transfer_service
from library import library_download_locator, list_library, request_library_upload
from rate_limit import rate_limited
from storage import content_disposition
from transfers import DecryptedDownload, TransferService
from webhooks import dispatch_event
import schemas

router = APIRouter(prefix="/files", tags=["Files"])


@router.get("", dependencies=[Depends(rate_limited("api"))])
def list_files(
    caller: CallerIdentity = Depends(require_permission("read")),
    db: Session = Depends(get_db),
):
    return {"success": True, "files": list_library(db, caller)}


@router.post("/upload-url", dependencies=[Depends(csrf_protect), Depends(rate_limited("upload"))])
def upload_url(
    req: schemas.LibraryUploadRequest,
    request: Request,
    caller: CallerIdentity = Depends(require_permission("write")),
    db: Session = Depends(get_db),
):
    slot = request_library_upload(
        db, get_storage(request), caller, req.name, req.size, req.mime_type or "application/octet-stream"
    )
    return {
        "success": True,
        "file_id": slot.file_id,
        "upload_url": slot.upload_url,
        "storage_key": slot.storage_key,
    }


@router.post("/confirm-upload", dependencies=[Depends(csrf_protect), Depends(rate_limited("api"))])
def confirm_upload(
    req: schemas.FileIdRequest,
    caller: CallerIdentity = Depends(require_permission("write")),
    service: TransferService = Depends(get_transfer_service),
):
    result = service.confirm_upload(caller, file_id=req.file_id)
    return {"success": True, "confirmed": bool(result.confirmed_files), "counted_size": result.counted_size}


@router.post("/download-url", dependencies=[Depends(csrf_protect), Depends(rate_limited("download"))])
def download_url(
    req: schemas.FileIdRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    caller: CallerIdentity = Depends(require_permission("read")),
    db: Session = Depends(get_db),
):
    result = library_download_locator(db, get_storage(request), caller, req.file_id)
    background_tasks.add_task(
        dispatch_event, get_session_factory(request), caller.user_id, "file.downloaded",
        {"file_id": req.file_id, "name": result.filename},
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


@router.post("/bulk-delete", dependencies=[Depends(csrf_protect), Depends(rate_limited("sensitive"))])
def bulk_delete(
    req: schemas.BulkDeleteRequest,
    caller: CallerIdentity = Depends(get_caller),
    service: TransferService = Depends(get_transfer_service),
):
    ensure_permission(caller, "delete")
    result = service.bulk_delete_files(caller, req.ids, req.capability_id)
    return {"success": True, **result.to_dict()}


@router.delete("/{file_id}", dependencies=[Depends(csrf_protect), Depends(rate_limited("api"))])
def delete_file(
    file_id: str,
    caller: CallerIdentity = Depends(get_caller),
    service: TransferService = Depends(get_transfer_service),
    x_capability_id: Optional[str] = Header(None),
):
    ensure_permission(caller, "delete")
    service.delete_file(caller, file_id, x_capability_id)
    return {"success": True, "message": "File deleted"}
