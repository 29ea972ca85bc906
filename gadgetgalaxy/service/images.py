from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from gadgetgalaxy.logging import get_logger
from gadgetgalaxy.service.errors import UpstreamUnavailable, ValidationError

logger = get_logger(__name__)

IMAGE_FIELD = "image"
ALLOWED_CONTENT_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/svg+xml",
)


@dataclass(frozen=True)
class UploadedImage:
    public_id: str
    url: str


@dataclass(frozen=True)
class ImageUpload:
    """An image received from a multipart request, already read into memory."""

    filename: str
    content_type: Optional[str]
    data: bytes


def validate_upload(content_type: Optional[str], size: int, *, max_bytes: int) -> None:
    """Reject uploads the image host would never accept."""
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise ValidationError.for_field(
            IMAGE_FIELD,
            "Invalid file type. Allowed types are: " + ", ".join(ALLOWED_CONTENT_TYPES),
        )
    if size > max_bytes:
        limit_mb = max_bytes / (1024 * 1024)
        raise ValidationError.for_field(
            IMAGE_FIELD, f"File too large. Maximum size is {limit_mb:g}MB"
        )
    if size == 0:
        raise ValidationError.for_field(IMAGE_FIELD, "Uploaded file is empty")


class ImageHost:
    """Signed uploads to a Cloudinary-compatible image host."""

    def __init__(
        self,
        *,
        cloud_name: Optional[str],
        api_key: Optional[str],
        api_secret: Optional[str],
        base_url: str = "https://api.cloudinary.com/v1_1",
        folder: str = "gadget-galaxy/users",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.folder = folder
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    def _signature(self, params: Dict[str, str]) -> str:
        to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params))
        return hashlib.sha1((to_sign + (self.api_secret or "")).encode()).hexdigest()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=10.0),
            transport=self._transport,
        )

    async def _post(self, action: str, params: Dict[str, str], files: Optional[dict] = None) -> dict:
        if not self.is_configured:
            raise UpstreamUnavailable("Image upload is not configured")
        signed = {**params, "timestamp": str(int(time.time()))}
        form = {**signed, "api_key": self.api_key, "signature": self._signature(signed)}
        url = f"{self.base_url}/{self.cloud_name}/image/{action}"
        try:
            async with self._client() as client:
                response = await client.post(url, data=form, files=files)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "image_host_api_error",
                action=action,
                status_code=exc.response.status_code,
            )
            raise UpstreamUnavailable("Error uploading image") from exc
        except httpx.HTTPError as exc:
            logger.error("image_host_unreachable", action=action, error_type=type(exc).__name__, error=str(exc))
            raise UpstreamUnavailable("Error uploading image") from exc
        except ValueError as exc:
            logger.error("image_host_bad_response", action=action)
            raise UpstreamUnavailable("Error uploading image") from exc

    async def upload(self, data: bytes, *, filename: str, content_type: str) -> UploadedImage:
        public_id = f"user-{int(time.time() * 1000)}"
        body = await self._post(
            "upload",
            {
                "folder": self.folder,
                "public_id": public_id,
                "transformation": "c_fill,h_300,w_300/q_auto",
            },
            files={"file": (filename or "upload", data, content_type)},
        )
        try:
            uploaded = UploadedImage(public_id=body["public_id"], url=body["secure_url"])
        except (KeyError, TypeError) as exc:
            raise UpstreamUnavailable("Error uploading image") from exc
        logger.info("image_uploaded", public_id=uploaded.public_id, size=len(data))
        return uploaded

    async def delete(self, public_id: str) -> bool:
        """Best-effort removal of a replaced profile image."""
        try:
            body = await self._post("destroy", {"public_id": public_id})
        except UpstreamUnavailable:
            logger.warning("image_delete_failed", public_id=public_id)
            return False
        return body.get("result") == "ok"
