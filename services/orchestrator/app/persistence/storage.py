"""Artifact storage helpers (S3/MinIO or a local export directory)."""
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import aioboto3

from ..config import StorageSettings, get_settings


class ArtifactStorage:
    """Persist exports with content-hash identifiers and fetch ``s3://`` objects."""

    def __init__(self, settings: StorageSettings | None = None) -> None:
        self._settings = settings or get_settings().storage

    async def put_json(self, data: dict[str, Any], prefix: str = "exports") -> str:
        """Store JSON data and return content-hash reference."""
        payload = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
        return await self._put_bytes(payload, prefix=prefix, suffix=".json")

    async def _put_bytes(self, payload: bytes, prefix: str, suffix: str = "") -> str:
        digest = hashlib.sha256(payload).hexdigest()
        key = f"{prefix}/{digest}{suffix}"

        if not self._settings.s3_bucket:
            path = Path(self._settings.export_dir) / key
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload)
            return f"file://{path.resolve()}"

        session = aioboto3.Session()
        async with session.client(
            "s3",
            endpoint_url=self._settings.s3_endpoint,
            region_name=self._settings.s3_region,
        ) as client:
            await client.put_object(Bucket=self._settings.s3_bucket, Key=key, Body=payload)
        return f"s3://{self._settings.s3_bucket}/{key}"

    async def download(self, url: str, dest: Path) -> Path:
        """Copy the ``s3://bucket/key`` object to ``dest``."""
        parsed = urlparse(url)
        if parsed.scheme != "s3" or not parsed.netloc:
            raise ValueError(f"Not an s3 URL: {url}")
        session = aioboto3.Session()
        async with session.client(
            "s3",
            endpoint_url=self._settings.s3_endpoint,
            region_name=self._settings.s3_region,
        ) as client:
            response = await client.get_object(Bucket=parsed.netloc, Key=parsed.path.lstrip("/"))
            async with response["Body"] as stream:
                with open(dest, "wb") as handle:
                    while chunk := await stream.read(1 << 20):
                        handle.write(chunk)
        return dest


__all__ = ["ArtifactStorage"]
