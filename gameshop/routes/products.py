import hmac

from aiohttp import web

from .base import BaseRoutes
from ..utils.constants import ProductType
from ..utils.errors import AuthError
from ..utils.logger import logger
from ..utils.responses import ok, ok_list


class ProductRoutes(BaseRoutes):
    def register(self, router: web.UrlDispatcher) -> None:
        router.add_get("/api/products", self.list_products)
        router.add_get("/api/products/available", self.list_available)
        router.add_get("/api/products/preorder", self.list_preorder)
        router.add_get("/api/products/{code}", self.get_product)

    async def list_products(self, request: web.Request):
        return ok_list(await self.services.catalog.list_public())

    async def list_available(self, request: web.Request):
        return ok_list(await self.services.catalog.list_public(ProductType.AVAILABLE))

    async def list_preorder(self, request: web.Request):
        return ok_list(await self.services.catalog.list_public(ProductType.PREORDER))

    async def get_product(self, request: web.Request):
        code = request.match_info.get("code", "")
        include_credentials = request.query.get("includeCredentials", "").strip().lower() == "true"
        if not include_credentials:
            return ok(await self.services.catalog.get_public(code))

        if not self._backend_key_matches(request.query.get("backendKey", "")):
            logger.warning(f"Rejected credentialed read of {code}: backend key mismatch")
            raise AuthError("unauthorized")
        self.ctx(request).backend = True
        return ok(await self.services.catalog.get_with_credentials(code))

    def _backend_key_matches(self, received_key: str) -> bool:
        expected = self.settings.backend_secret_key
        if not expected or not received_key:
            return False
        return hmac.compare_digest(received_key.encode("utf-8"), expected.encode("utf-8"))


def setup(server):
    ProductRoutes(server).register(server.app.router)
