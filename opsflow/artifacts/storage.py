from __future__ import annotations

from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from ..config import settings


class SpacesStorage:
    """Stage artifacts in DigitalOcean Spaces (S3 API), private ACL, presigned access."""

    def __init__(
        self,
        region: str = settings.spaces_region,
        bucket: str = settings.spaces_bucket,
        key: str = settings.spaces_key,
        secret: str = settings.spaces_secret,
    ):
        self.region = region
        self.bucket = bucket
        self.key = key
        self.secret = secret
        self._s3: Any = None

    def _get_s3(self):
        if self._s3 is None:
            missing = [
                k for k, v in {
                    "SPACES_REGION": self.region,
                    "SPACES_BUCKET": self.bucket,
                    "SPACES_KEY": self.key,
                    "SPACES_SECRET": self.secret,
                }.items() if not v
            ]
            if missing:
                raise RuntimeError(f"Missing Spaces env vars: {', '.join(missing)}")
            # Region endpoint, not the bucket endpoint: presigned URLs come out
            # virtual-hosted (https://{bucket}.{region}.digitaloceanspaces.com/{key}?...)
            region_endpoint = f"https://{self.region}.digitaloceanspaces.com"
            session = boto3.session.Session()
            self._s3 = session.client(
                "s3",
                region_name=self.region,
                endpoint_url=region_endpoint,
                aws_access_key_id=self.key,
                aws_secret_access_key=self.secret,
                config=Config(s3={"addressing_style": "virtual"}),
            )
        return self._s3

    def presign_put(self, key: str, content_type: str, expires_seconds: int = 600) -> str:
        return self._get_s3().generate_presigned_url(
            ClientMethod="put_object",
            Params={
                "Bucket": self.bucket,
                "Key": key,
                "ContentType": content_type,
                "ACL": "private",
            },
            ExpiresIn=expires_seconds,
        )

    def presign_get(self, key: str, expires_seconds: int = 300) -> str:
        return self._get_s3().generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_seconds,
        )

    def head_object(self, key: str) -> Optional[dict[str, Any]]:
        """HEAD object. Returns {"size_bytes": int, "content_type": str} or None if missing."""
        try:
            resp = self._get_s3().head_object(Bucket=self.bucket, Key=key)
            return {
                "size_bytes": resp["ContentLength"],
                "content_type": resp.get("ContentType"),
            }
        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey"):
                return None
            raise

    def delete_object(self, key: str) -> None:
        self._get_s3().delete_object(Bucket=self.bucket, Key=key)
