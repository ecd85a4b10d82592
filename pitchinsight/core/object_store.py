"""
Object storage for uploaded media.

Two backends: a local directory whose objects are served by the HTTP surface
behind HMAC-signed links, and an S3-compatible bucket using presigned GETs.
"""

import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import quote, urlencode

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from pitchinsight.core.constants import (
    DEFAULT_BUCKET, DEFAULT_STORAGE_ROOT, DEFAULT_PUBLIC_BASE_URL,
    SIGNED_URL_TTL_SEC,
)
from pitchinsight.core.error_codes import AccessError
from pitchinsight.core.security_utils import is_safe_object_path, sign_path

logger = logging.getLogger(__name__)


class ObjectStore(ABC):
    """Durable binary storage addressed by object path."""

    bucket: str = DEFAULT_BUCKET

    @abstractmethod
    def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store `data` at `path`; returns the storage path to persist."""

    @abstractmethod
    def create_signed_url(self, path: str, ttl_sec: int = SIGNED_URL_TTL_SEC) -> str:
        """Time-limited read URL. Raises AccessError on failure."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        ...

    def public_url(self, path: str) -> str | None:
        """Stable public URL, when the bucket is public."""
        return None

    def normalize_path(self, storage_path: str) -> str:
        """Strip a leading "<bucket>/" so legacy paths still resolve."""
        path = storage_path.lstrip('/')
        prefix = f"{self.bucket}/"
        if path.startswith(prefix):
            path = path[len(prefix):]
        return path


class LocalObjectStore(ObjectStore):
    """Filesystem-backed store; signed links point at GET /media/<path>."""

    def __init__(self, root: Path | None = None,
                 base_url: str = DEFAULT_PUBLIC_BASE_URL,
                 signing_secret: str | None = None,
                 bucket: str = DEFAULT_BUCKET,
                 public: bool = False):
        self.root = Path(root or DEFAULT_STORAGE_ROOT)
        self.base_url = base_url.rstrip('/')
        self.signing_secret = signing_secret
        self.bucket = bucket
        self.public = public

    def _resolve(self, path: str) -> Path:
        path = self.normalize_path(path)
        if not is_safe_object_path(path):
            raise AccessError(f"Unsafe object path: {path!r}")
        candidate = (self.root / path).resolve(strict=False)
        if not str(candidate).startswith(str(self.root.resolve(strict=False))):
            raise AccessError(f"Object path escapes storage root: {path!r}")
        return candidate

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        target = self._resolve(path)
        if target.exists():
            raise AccessError(f"Object already exists: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)
        logger.info("Stored %d bytes at %s/%s (%s)", len(data), self.bucket, path, content_type)
        return self.normalize_path(path)

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except AccessError:
            return False

    def read(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise AccessError(f"Object not found: {path}")
        return target.read_bytes()

    def public_url(self, path: str) -> str | None:
        if not self.public:
            return None
        return f"{self.base_url}/media/{quote(self.normalize_path(path))}"

    def create_signed_url(self, path: str, ttl_sec: int = SIGNED_URL_TTL_SEC) -> str:
        if not self.signing_secret:
            raise AccessError("Storage signing secret is not configured")
        path = self.normalize_path(path)
        if not self.exists(path):
            raise AccessError(f"Object {path} not found in bucket {self.bucket}")
        expires_at = int(time.time()) + int(ttl_sec)
        query = urlencode({
            'expires': expires_at,
            'signature': sign_path(self.signing_secret, path, expires_at),
        })
        return f"{self.base_url}/media/{quote(path)}?{query}"


class S3ObjectStore(ObjectStore):
    """S3-compatible bucket (AWS, R2, MinIO) via boto3."""

    def __init__(self, bucket: str, endpoint_url: str | None = None,
                 access_key: str | None = None, secret_key: str | None = None,
                 region: str = "auto", public_base_url: str | None = None,
                 client=None):
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip('/') if public_base_url else None
        self._client = client or self._make_client(endpoint_url, access_key,
                                                   secret_key, region)

    @staticmethod
    def _make_client(endpoint_url, access_key, secret_key, region):
        return boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        key = self.normalize_path(path)
        try:
            self._client.put_object(Bucket=self.bucket, Key=key, Body=data,
                                    ContentType=content_type,
                                    CacheControl="max-age=3600")
        except (BotoCoreError, ClientError) as e:
            raise AccessError(f"Upload to {self.bucket}/{key} failed: {e}") from e
        logger.info("Stored %d bytes at s3://%s/%s", len(data), self.bucket, key)
        return key

    def exists(self, path: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=self.normalize_path(path))
            return True
        except ClientError as e:
            code = (e.response.get("Error") or {}).get("Code")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise AccessError(f"Could not check object {path}: {e}") from e

    def public_url(self, path: str) -> str | None:
        if not self.public_base_url:
            return None
        return f"{self.public_base_url}/{quote(self.normalize_path(path))}"

    def create_signed_url(self, path: str, ttl_sec: int = SIGNED_URL_TTL_SEC) -> str:
        try:
            return self._client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": self.bucket, "Key": self.normalize_path(path)},
                ExpiresIn=int(ttl_sec),
            )
        except (BotoCoreError, ClientError) as e:
            raise AccessError(f"Could not sign URL for {path}: {e}") from e
