from typing import Any, Optional

from aiohttp import web


def ok(
    data: Any = None,
    *,
    message: Optional[str] = None,
    count: Optional[int] = None,
    status: int = 200,
) -> web.Response:
    payload: dict[str, Any] = {"success": True}
    if data is not None:
        payload["data"] = data
    if message:
        payload["message"] = message
    if count is not None:
        payload["count"] = count
    return web.json_response(payload, status=status)


def ok_list(items: list[Any], *, message: Optional[str] = None) -> web.Response:
    return ok(items, message=message, count=len(items))


def fail(status: int, error: str, message: Optional[str] = None, **extra: Any) -> web.Response:
    payload: dict[str, Any] = {"success": False, "error": error, "message": message or error}
    payload.update(extra)
    return web.json_response(payload, status=status)
