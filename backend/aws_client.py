"""AWS helpers for storing item images in S3."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

S3_DELETE_BATCH_SIZE = 1000


class AWSService:
    """S3 media store with the same upload/sign/delete surface as SupabaseService."""

    def __init__(
        self,
        bucket: str = "",
        region: str = "",
        connect_timeout_seconds: int = 3,
        read_timeout_seconds: int = 12,
        max_attempts: int = 2,
        s3_client: Optional[Any] = None,
    ) -> None:
        self.region = region or None
        self.bucket = bucket
        self.s3_client: Optional[Any] = s3_client
        if self.s3_client is None and self.bucket:
            self.s3_client = boto3.client(
                "s3",
                region_name=self.region,
                config=Config(
                    retries={"max_attempts": max_attempts, "mode": "standard"},
                    connect_timeout=connect_timeout_seconds,
                    read_timeout=read_timeout_seconds,
                ),
            )
        self.s3_enabled = bool(self.s3_client and self.bucket)

    def _require_client(self) -> Any:
        if not self.s3_enabled or not self.s3_client:
            raise RuntimeError("S3_IMAGES_BUCKET is not configured.")
        return self.s3_client

    def upload_image(self, path: str, data: bytes, content_type: str) -> str:
        """Upload bytes to S3 under `path`; an existing key is an error."""
        s3_client = self._require_client()
        try:
            s3_client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                IfNoneMatch="*",
            )
        except (BotoCoreError, ClientError) as exc:
            raise RuntimeError(f"S3 upload failed for bucket={self.bucket}, key={path}") from exc
        return path

    def create_signed_url(self, path: str, expires_in: int) -> str:
        s3_client = self._require_client()
        try:
            return s3_client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            raise RuntimeError(f"S3 presign failed for bucket={self.bucket}, key={path}") from exc

    def delete_image(self, path: str) -> None:
        self.delete_images([path])

    def delete_images(self, paths: Sequence[str]) -> None:
        if not paths:
            return
        s3_client = self._require_client()
        keys = list(paths)
        for start in range(0, len(keys), S3_DELETE_BATCH_SIZE):
            batch = keys[start:start + S3_DELETE_BATCH_SIZE]
            try:
                response = s3_client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            except (BotoCoreError, ClientError) as exc:
                raise RuntimeError(f"S3 delete failed for bucket={self.bucket}") from exc

            errors = response.get("Errors") or []
            if errors:
                failed = [error.get("Key") for error in errors]
                raise RuntimeError(f"S3 delete failed for keys={failed}")

    def health_snapshot(self) -> Dict[str, Any]:
        """Return non-sensitive service readiness flags."""
        return {
            "s3_enabled": self.s3_enabled,
            "images_bucket": self.bucket or None,
            "region": self.region,
        }
