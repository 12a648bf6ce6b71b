from typing import Any, Iterable, NamedTuple
from urllib.parse import quote

import aiohttp

from .http_client import HttpServiceClient
from ..utils.config import Settings
from ..utils.errors import ExternalServiceError, ValidationError
from ..utils.logger import logger


class ImageFile(NamedTuple):
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class ImageBackendClient(HttpServiceClient):
    service_name = "Image API"

    @classmethod
    def from_settings(cls, settings: Settings) -> "ImageBackendClient":
        return cls(settings.image_api_base_url)

    async def upload(self, image: ImageFile) -> dict[str, Any]:
        form = aiohttp.FormData()
        form.add_field("image", image.content, filename=image.filename, content_type=image.content_type)
        data = self._checked(await self._request("POST", "api/images/upload", form=form), "upload failed")
        if not isinstance(data, dict):
            raise ExternalServiceError("upload failed", service="images")
        return data

    async def upload_multiple(self, images: Iterable[ImageFile]) -> list[dict[str, Any]]:
        files = list(images)
        if not files:
            raise ValidationError("at least one image is required")

        form = aiohttp.FormData()
        for image in files:
            form.add_field("images", image.content, filename=image.filename, content_type=image.content_type)
        data = self._checked(await self._request("POST", "api/images/upload-multiple", form=form), "upload failed")
        if not isinstance(data, list):
            raise ExternalServiceError("upload failed", service="images")
        return [item for item in data if isinstance(item, dict)]

    async def delete(self, filename: str) -> None:
        name = str(filename or "").strip()
        if not name or "/" in name:
            raise ValidationError("invalid image filename")
        self._checked(await self._request("DELETE", f"api/images/{quote(name)}"), "delete failed")

    def _checked(self, payload: Any, failure: str) -> Any:
        if not isinstance(payload, dict) or not payload.get("success"):
            logger.error(f"Image API {failure}: {payload!r:.300}")
            raise ExternalServiceError(failure, service="images")
        return payload.get("data")
