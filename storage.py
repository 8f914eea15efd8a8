"""
storage.py — S3-compatible object storage (Cloudflare R2) for FlyFile.

Clients upload and download directly against presigned URLs; the server only
touches bytes for encrypted files, which it must decrypt itself.
"""

import os
import time
import secrets
import logging
from urllib.parse import quote

import boto3
from botocore.exceptions import ClientError, BotoCoreError
from botocore.config import Config
from dotenv import load_dotenv

from errors import ExternalServiceError, NotFoundError
from file_validation import storage_safe_name

load_dotenv()

logger = logging.getLogger(__name__)

R2_ENDPOINT = os.getenv("R2_ENDPOINT", "http://localhost:9000")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "admin")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "StrongPassword123")
R2_BUCKET = os.getenv("R2_BUCKET", "flyfile")
R2_REGION = os.getenv("R2_REGION", "auto")

UPLOAD_URL_TTL = int(os.getenv("UPLOAD_URL_TTL", "3600"))
DOWNLOAD_URL_TTL = int(os.getenv("DOWNLOAD_URL_TTL", "3600"))

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


def _get_s3_client():
    return boto3.client(
        "s3",
        endpoint_url=R2_ENDPOINT,
        aws_access_key_id=R2_ACCESS_KEY_ID,
        aws_secret_access_key=R2_SECRET_ACCESS_KEY,
        config=Config(
            signature_version="s3v4",
            connect_timeout=5,
            read_timeout=30,
            retries={"max_attempts": 3, "mode": "standard"},
        ),
        region_name=R2_REGION,
    )


def generate_file_key(owner: str, filename: str) -> str:
    """`<owner>/<epoch ms>-<6 random chars>-<sanitized name>`"""
    timestamp = int(time.time() * 1000)
    suffix = secrets.token_hex(3)
    return f"{owner}/{timestamp}-{suffix}-{storage_safe_name(filename)}"


def content_disposition(filename: str) -> str:
    return f"attachment; filename=\"{quote(filename or 'download')}\"; filename*=UTF-8''{quote(filename or 'download')}"


class BlobStorage:

    def __init__(self, bucket: str = None, client=None):
        self.bucket = bucket or R2_BUCKET
        self._s3 = client

    @property
    def s3(self):
        # Created on first use
        if self._s3 is None:
            self._s3 = _get_s3_client()
        return self._s3

    def issue_upload_locator(self, key: str, content_type: str, ttl: int = None) -> str:
        try:
            return self.s3.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=ttl or UPLOAD_URL_TTL,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Presign PUT failed for {key}: {e}")
            raise ExternalServiceError("Could not prepare the upload") from e

    def issue_download_locator(self, key: str, ttl: int = None, filename: str = None) -> str:
        params = {"Bucket": self.bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = content_disposition(filename)
        try:
            return self.s3.generate_presigned_url("get_object", Params=params, ExpiresIn=ttl or DOWNLOAD_URL_TTL)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Presign GET failed for {key}: {e}")
            raise ExternalServiceError("Could not prepare the download") from e

    def put_bytes(self, key: str, data: bytes, content_type: str = "application/octet-stream"):
        try:
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"PUT failed for {key}: {e}")
            raise ExternalServiceError("Could not store the file") from e

    def fetch_bytes(self, key: str) -> bytes:
        try:
            response = self.s3.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                raise NotFoundError("File content not found") from e
            logger.error(f"GET failed for {key}: {e}")
            raise ExternalServiceError("Could not read the file") from e
        except BotoCoreError as e:
            logger.error(f"GET error for {key}: {e}")
            raise ExternalServiceError("Could not read the file") from e

    def delete_object(self, key: str) -> bool:
        """Best-effort: failures are logged and reported as False, never raised."""
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=key)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f"DELETE failed for {key}: {e}")
            return False

    def get_health(self) -> dict:
        try:
            self.s3.head_bucket(Bucket=self.bucket)
            return {"status": "healthy", "bucket": self.bucket}
        except (ClientError, BotoCoreError) as e:
            return {"status": "degraded", "bucket": self.bucket, "error": type(e).__name__}
