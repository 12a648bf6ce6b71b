from datetime import datetime, timezone

from aiohttp import web

from .base import BaseRoutes
from ..utils.responses import ok


class HealthRoutes(BaseRoutes):
    def register(self, router: web.UrlDispatcher) -> None:
        router.add_get("/api/health", self.health)

    async def health(self, request: web.Request):
        return ok(
            {
                "status": "ok",
                "time": datetime.now(timezone.utc).isoformat(),
                "activeCheckouts": len(self.services.checkout.sessions),
                "activePolls": self.services.checkout.active_poll_count,
            }
        )


def setup(server):
    HealthRoutes(server).register(server.app.router)
