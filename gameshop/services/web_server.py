import fnmatch
import importlib
import pkgutil
from typing import Optional

from aiohttp import web

from .container import ShopServices
from .identity import RequestContext
from ..utils.errors import CooldownActive, ShopError
from ..utils.logger import logger
from ..utils.responses import fail

OWNER_UID_HEADER = "x-owner-uid"
ROUTES_PACKAGE = __name__.rsplit(".", 2)[0] + ".routes"


class StorefrontServer:
    def __init__(self, services: ShopServices):
        self.services = services
        settings = services.settings
        self.host = settings.host
        self.port = settings.port
        self.allowed_origins = settings.allowed_origins or ["http://localhost:3000"]

        self.app = web.Application(
            middlewares=[
                self._cors_middleware,
                self._error_middleware,
                self._context_middleware,
            ]
        )
        self.app.router.add_route("OPTIONS", "/{tail:.*}", self._handle_options)
        self.app.on_cleanup.append(self._on_cleanup)
        self.load_routes()

        self.runner: Optional[web.AppRunner] = None

    def load_routes(self) -> None:
        """Import every module in ``routes`` and call its ``setup(server)``."""
        package = importlib.import_module(ROUTES_PACKAGE)
        for module_info in sorted(pkgutil.iter_modules(package.__path__), key=lambda info: info.name):
            if module_info.name.startswith("_") or module_info.name == "base":
                continue
            extension_name = f"{ROUTES_PACKAGE}.{module_info.name}"
            module = importlib.import_module(extension_name)
            setup = getattr(module, "setup", None)
            if setup is None:
                logger.warning(f"Route module {extension_name} has no setup(); skipped")
                continue
            setup(self)
            logger.debug(f"Loaded route module: {extension_name}")

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except CooldownActive as exc:
            response = web.json_response(exc.to_payload(), status=exc.status)
            response.headers["Retry-After"] = str(exc.retry_after)
            return response
        except ShopError as exc:
            return web.json_response(exc.to_payload(), status=exc.status)
        except web.HTTPException as exc:
            if exc.status < 400:
                raise
            return fail(exc.status, exc.reason.lower())
        except Exception as exc:
            logger.exception(f"Storefront error on {request.path}: {exc}")
            return fail(500, "internal server error")

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler):
        response = await handler(request)
        self._apply_cors_headers(request, response)
        return response

    @web.middleware
    async def _context_middleware(self, request: web.Request, handler):
        principal_id = request.headers.get(OWNER_UID_HEADER, "").strip() or None
        ctx = RequestContext(principal_id=principal_id)
        if principal_id and request.method != "OPTIONS":
            ctx.role = await self.services.gate.role_of(principal_id)
        request["ctx"] = ctx
        return await handler(request)

    async def _handle_options(self, request: web.Request):
        return web.Response(status=204)

    def _apply_cors_headers(self, request: web.Request, response: web.StreamResponse) -> None:
        origin = request.headers.get("Origin")

        if "*" in self.allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = "*"
        else:
            response.headers["Vary"] = "Origin"
            if not origin or not self._is_origin_allowed(origin):
                return
            response.headers["Access-Control-Allow-Origin"] = origin

        response.headers["Access-Control-Allow-Methods"] = "GET,POST,DELETE,PUT,OPTIONS"
        request_headers = request.headers.get("Access-Control-Request-Headers")
        default_headers = f"Content-Type,Authorization,{OWNER_UID_HEADER}"
        response.headers["Access-Control-Allow-Headers"] = request_headers or default_headers

    def _is_origin_allowed(self, origin: str) -> bool:
        for allowed in self.allowed_origins:
            if allowed == origin:
                return True
            if "*" in allowed and fnmatch.fnmatch(origin, allowed):
                return True
        return False

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.services.checkout.shutdown()

    async def start(self) -> None:
        if self.runner is not None:
            return

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info(f"Storefront API listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        if self.runner is None:
            return

        await self.runner.cleanup()
        self.runner = None
        logger.info("Storefront API stopped.")
