"""Object store port with S3 and local filesystem adapters.

All adapter methods are blocking; async callers wrap them in
``asyncio.to_thread``.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
from urllib.parse import quote

import boto3
from botocore.client import Config
from botocore.exceptions import ClientError

from config import settings


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size_bytes: int
    content_type: Optional[str]


class ObjectStoragePort(ABC):
    """Narrow multipart interface the upload pipeline relies on."""

    @abstractmethod
    def initiate_multipart(self, key: str, content_type: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def get_part_upload_target(self, key: str, upload_id: str, part_number: int, expires_seconds: int) -> Optional[str]:
        """Signed URL for a direct part PUT, or None when parts must be proxied through the API."""
        raise NotImplementedError

    @abstractmethod
    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        raise NotImplementedError

    @abstractmethod
    def complete_multipart(self, key: str, upload_id: str, parts: Sequence[Tuple[int, str]]) -> str:
        raise NotImplementedError

    @abstractmethod
    def abort_multipart(self, key: str, upload_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def stat_object(self, key: str) -> Optional[ObjectInfo]:
        raise NotImplementedError

    @abstractmethod
    def presign_download(self, key: str, expires_seconds: int = 900) -> str:
        raise NotImplementedError

    def object_exists(self, key: str) -> bool:
        return self.stat_object(key) is not None


class S3ObjectStorage(ObjectStoragePort):
    def __init__(self):
        session = boto3.session.Session(
            aws_access_key_id=settings.S3_ACCESS_KEY,
            aws_secret_access_key=settings.S3_SECRET_KEY,
            region_name=settings.S3_REGION,
        )
        self.s3 = session.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            config=Config(signature_version="s3v4"),
        )
        self.bucket = settings.S3_BUCKET

    def initiate_multipart(self, key: str, content_type: str) -> str:
        response = self.s3.create_multipart_upload(Bucket=self.bucket, Key=key, ContentType=content_type)
        return response["UploadId"]

    def get_part_upload_target(self, key: str, upload_id: str, part_number: int, expires_seconds: int) -> Optional[str]:
        return self.s3.generate_presigned_url(
            "upload_part",
            Params={"Bucket": self.bucket, "Key": key, "UploadId": upload_id, "PartNumber": part_number},
            ExpiresIn=expires_seconds,
        )

    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        response = self.s3.upload_part(
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data,
        )
        return response["ETag"].strip('"')

    def complete_multipart(self, key: str, upload_id: str, parts: Sequence[Tuple[int, str]]) -> str:
        self.s3.complete_multipart_upload(
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [{"ETag": etag, "PartNumber": number} for number, etag in sorted(parts)],
            },
        )
        return f"s3://{self.bucket}/{key}"

    def abort_multipart(self, key: str, upload_id: str) -> None:
        try:
            self.s3.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
        except ClientError as exc:
            # Already aborted or completed remotely.
            if exc.response.get("Error", {}).get("Code") != "NoSuchUpload":
                raise

    def stat_object(self, key: str) -> Optional[ObjectInfo]:
        try:
            response = self.s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in {"404", "NoSuchKey", "NotFound"}:
                return None
            raise
        return ObjectInfo(
            key=key,
            size_bytes=int(response.get("ContentLength") or 0),
            content_type=response.get("ContentType"),
        )

    def presign_download(self, key: str, expires_seconds: int = 900) -> str:
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_seconds,
        )


class LocalObjectStorage(ObjectStoragePort):
    """Filesystem-backed store for local development and tests. Parts are proxied through the API."""

    def __init__(self, root: Optional[str] = None):
        self.root = os.path.abspath(root or settings.LOCAL_STORAGE_ROOT)
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        safe = key.strip("/").replace("..", "")
        return os.path.join(self.root, safe)

    def _parts_dir(self, upload_id: str) -> str:
        return os.path.join(self.root, ".multipart", upload_id.replace("/", "_").replace("..", ""))

    def initiate_multipart(self, key: str, content_type: str) -> str:
        upload_id = uuid.uuid4().hex
        os.makedirs(self._parts_dir(upload_id), exist_ok=True)
        return upload_id

    def get_part_upload_target(self, key: str, upload_id: str, part_number: int, expires_seconds: int) -> Optional[str]:
        return None

    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        parts_dir = self._parts_dir(upload_id)
        if not os.path.isdir(parts_dir):
            raise FileNotFoundError(f"Multipart upload {upload_id} does not exist")
        with open(os.path.join(parts_dir, f"{int(part_number):05d}"), "wb") as f:
            f.write(data)
        return hashlib.md5(data).hexdigest()

    def complete_multipart(self, key: str, upload_id: str, parts: Sequence[Tuple[int, str]]) -> str:
        parts_dir = self._parts_dir(upload_id)
        target = self._path(key)
        if not os.path.isdir(parts_dir):
            # Completed earlier; the assembled object is the result.
            if os.path.exists(target):
                return f"file://{quote(target)}"
            raise FileNotFoundError(f"Multipart upload {upload_id} does not exist")
        part_paths: List[str] = []
        for number, _etag in sorted(parts):
            part_path = os.path.join(parts_dir, f"{int(number):05d}")
            if not os.path.exists(part_path):
                raise FileNotFoundError(f"Part {number} of upload {upload_id} was never stored")
            part_paths.append(part_path)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "wb") as out:
            for part_path in part_paths:
                with open(part_path, "rb") as part_file:
                    shutil.copyfileobj(part_file, out)
        shutil.rmtree(parts_dir, ignore_errors=True)
        return f"file://{quote(target)}"

    def abort_multipart(self, key: str, upload_id: str) -> None:
        shutil.rmtree(self._parts_dir(upload_id), ignore_errors=True)

    def stat_object(self, key: str) -> Optional[ObjectInfo]:
        path = self._path(key)
        if not os.path.isfile(path):
            return None
        return ObjectInfo(key=key, size_bytes=os.path.getsize(path), content_type=None)

    def presign_download(self, key: str, expires_seconds: int = 900) -> str:
        return f"file://{quote(self._path(key))}"


def get_object_storage() -> ObjectStoragePort:
    """Build the configured object store adapter."""
    if settings.OBJECT_STORAGE_PROVIDER == "s3":
        return S3ObjectStorage()
    return LocalObjectStorage()
