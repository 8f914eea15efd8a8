from pydantic import BaseModel, EmailStr, Field
from typing import List, Optional


class FileSpecIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=1024)
    size: int = Field(..., ge=0)
    mime_type: Optional[str] = "application/octet-stream"
    encryption_key: Optional[str] = None   # base64, only for client-side encrypted bytes
    encryption_iv: Optional[str] = None


class TransferCreate(BaseModel):
    title: str
    expiry_days: Optional[int] = None
    password: Optional[str] = None
    recipient_email: Optional[str] = None
    message: Optional[str] = Field(None, max_length=5000)
    delivery_method: str = "link"
    sender_name: Optional[str] = None
    sender_email: Optional[str] = None     # anonymous senders: the verified address
    files: List[FileSpecIn] = []


class TransferUpdate(BaseModel):
    title: Optional[str] = None
    password: Optional[str] = None
    remove_password: bool = False


class ConfirmRequest(BaseModel):
    file_id: Optional[str] = None
    transfer_id: Optional[str] = None
    capability_id: Optional[str] = None


class VerifyPasswordRequest(BaseModel):
    transfer_id: str
    password: str = ""


class DownloadRequest(BaseModel):
    password: Optional[str] = None


class BulkDeleteRequest(BaseModel):
    ids: List[str]
    capability_id: Optional[str] = None


class LibraryUploadRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=1024)
    size: int = Field(..., ge=0)
    mime_type: Optional[str] = "application/octet-stream"


class FileIdRequest(BaseModel):
    file_id: str


class TwoFactorConfirm(BaseModel):
    session_id: str
    token: str


class TwoFactorToken(BaseModel):
    token: str


class TwoFactorVerify(BaseModel):
    user_id: str
    token: str


class EmailCodeRequest(BaseModel):
    email: str


class EmailCodeVerify(BaseModel):
    email: str
    code: str


class OtpVerify(BaseModel):
    code: str
    purpose: str = "login"


class ApiKeyCreate(BaseModel):
    name: str
    permissions: Optional[List[str]] = None
    expires_in_days: Optional[int] = None


class WebhookCreate(BaseModel):
    name: str
    url: str
    events: List[str]


class EnsureCustomerRequest(BaseModel):
    email: Optional[EmailStr] = None
