from typing import TYPE_CHECKING, Any

from aiohttp import web

from ..services.identity import RequestContext
from ..utils.errors import ValidationError

if TYPE_CHECKING:
    from ..services.web_server import StorefrontServer


class BaseRoutes:
    """Shared plumbing for route modules; subclasses implement ``register``."""

    def __init__(self, server: "StorefrontServer"):
        self.server = server
        self.services = server.services
        self.settings = server.services.settings

    def register(self, router: web.UrlDispatcher) -> None:
        raise NotImplementedError

    @staticmethod
    def ctx(request: web.Request) -> RequestContext:
        return request.get("ctx") or RequestContext()

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("invalid json body") from None
        if not isinstance(body, dict):
            raise ValidationError("invalid json body")
        return body
