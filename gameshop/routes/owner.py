from aiohttp import web

from .base import BaseRoutes
from ..services.image_api import ImageFile
from ..utils.errors import ExternalServiceError, ValidationError
from ..utils.logger import logger
from ..utils.responses import ok, ok_list


class OwnerRoutes(BaseRoutes):
    """Catalog management and image proxying; every handler passes the owner gate first."""

    def register(self, router: web.UrlDispatcher) -> None:
        router.add_get("/api/owner/products", self.check_access)
        router.add_get("/api/owner/products/credentials", self.list_with_credentials)
        router.add_post("/api/owner/products", self.create_product)
        router.add_put("/api/owner/products/{code}", self.update_product)
        router.add_delete("/api/owner/products/{code}", self.delete_product)
        router.add_get("/api/owner/products/{code}/credentials", self.reveal_credentials)
        router.add_post("/api/owner/images/upload", self.upload_image)
        router.add_post("/api/owner/images/upload-multiple", self.upload_images)
        router.add_delete("/api/owner/images/{filename}", self.delete_image)

    async def check_access(self, request: web.Request):
        await self.services.gate.authorize_owner(self.ctx(request))
        return ok()

    async def list_with_credentials(self, request: web.Request):
        return ok_list(await self.services.catalog.list_with_credentials(self.ctx(request)))

    async def create_product(self, request: web.Request):
        ctx = self.ctx(request)
        await self.services.gate.authorize_owner(ctx)
        payload = await self._json_body(request)
        product = await self.services.catalog.create_product(payload, ctx)
        return ok(product, message="product created", status=201)

    async def update_product(self, request: web.Request):
        ctx = self.ctx(request)
        await self.services.gate.authorize_owner(ctx)
        payload = await self._json_body(request)
        product = await self.services.catalog.update_product(request.match_info["code"], payload, ctx)
        return ok(product, message="product updated")

    async def delete_product(self, request: web.Request):
        removed = await self.services.catalog.delete_product(request.match_info["code"], self.ctx(request))

        images = {str(name) for name in removed.get("images") or []}
        if removed.get("thumbnailImage"):
            images.add(str(removed["thumbnailImage"]))
        for image in images:
            filename = image.rstrip("/").rsplit("/", 1)[-1]
            try:
                await self.services.images.delete(filename)
            except (ExternalServiceError, ValidationError) as exc:
                logger.warning(f"Could not remove image {filename} of deleted product: {exc}")
        return ok(removed, message="product deleted")

    async def reveal_credentials(self, request: web.Request):
        credentials = await self.services.catalog.reveal_credentials(request.match_info["code"], self.ctx(request))
        return ok(credentials)

    async def upload_image(self, request: web.Request):
        await self.services.gate.authorize_owner(self.ctx(request))
        files = await self._read_images(request, "image")
        return ok(await self.services.images.upload(files[0]), status=201)

    async def upload_images(self, request: web.Request):
        await self.services.gate.authorize_owner(self.ctx(request))
        files = await self._read_images(request, "images")
        return ok_list(await self.services.images.upload_multiple(files))

    async def delete_image(self, request: web.Request):
        await self.services.gate.authorize_owner(self.ctx(request))
        await self.services.images.delete(request.match_info["filename"])
        return ok(message="image deleted")

    @staticmethod
    async def _read_images(request: web.Request, field_name: str) -> list[ImageFile]:
        if not request.content_type.startswith("multipart/"):
            raise ValidationError("multipart form data is required")

        files: list[ImageFile] = []
        reader = await request.multipart()
        while True:
            part = await reader.next()
            if part is None:
                break
            if part.name != field_name or not part.filename:
                continue
            content = await part.read(decode=False)
            files.append(
                ImageFile(
                    filename=part.filename,
                    content=bytes(content),
                    content_type=part.headers.get("Content-Type", "application/octet-stream"),
                )
            )
        if not files:
            raise ValidationError(f"no files found in field {field_name!r}")
        return files


def setup(server):
    OwnerRoutes(server).register(server.app.router)
