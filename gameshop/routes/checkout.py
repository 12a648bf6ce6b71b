from aiohttp import web

from .base import BaseRoutes
from ..utils.errors import ShopError
from ..utils.responses import ok


class CheckoutRoutes(BaseRoutes):
    def register(self, router: web.UrlDispatcher) -> None:
        router.add_post("/api/checkout", self.start_checkout)
        router.add_get("/api/checkout/{orderId}", self.get_checkout)
        router.add_post("/api/checkout/{orderId}/refresh", self.refresh_checkout)
        router.add_delete("/api/checkout/{orderId}", self.cancel_checkout)

    async def start_checkout(self, request: web.Request):
        payload = await self._json_body(request)
        checkout = self.services.checkout
        session = await checkout.open_session(payload.get("productCode"), payload.get("email"))
        try:
            await checkout.confirm_order(session)
        except ShopError:
            checkout.teardown(session.order_id)
            raise
        return ok(session.to_dict(), status=201)

    async def get_checkout(self, request: web.Request):
        session = self.services.checkout.get(request.match_info["orderId"])
        return ok(session.to_dict())

    async def refresh_checkout(self, request: web.Request):
        checkout = self.services.checkout
        session = checkout.get(request.match_info["orderId"])
        await checkout.refresh(session)
        return ok(session.to_dict())

    async def cancel_checkout(self, request: web.Request):
        order_id = request.match_info["orderId"]
        self.services.checkout.get(order_id)
        self.services.checkout.teardown(order_id)
        return ok(message="checkout closed")


def setup(server):
    CheckoutRoutes(server).register(server.app.router)
