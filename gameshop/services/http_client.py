import json
import asyncio
from typing import Any, Dict, Optional

import aiohttp

from ..utils.logger import logger


class HttpServiceClient:
    """Thin JSON client shared by the external backends (payment, images, mail)."""

    service_name = "backend"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        auth_header: str = "Authorization",
        auth_scheme: str = "Bearer",
        timeout_seconds: float = 15.0,
        max_retries: int = 1,
    ):
        self.base_url = (base_url or "").strip().rstrip("/")
        self.api_key = (api_key or "").strip()
        self.auth_header = auth_header
        self.auth_scheme = auth_scheme
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        form: Optional[aiohttp.FormData] = None,
    ) -> Any:
        if not self.base_url and not endpoint.startswith(("http://", "https://")):
            logger.warning(f"{self.service_name} base URL is not configured.")
            return None

        url = self._build_url(endpoint)
        headers = self._build_headers(json_body=form is None)
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                retries = max(0, self.max_retries)
                for attempt in range(retries + 1):
                    kwargs: Dict[str, Any] = {"headers": headers}
                    if form is not None:
                        kwargs["data"] = form
                    elif method.upper() == "GET" and data:
                        kwargs["params"] = data
                    elif data is not None:
                        kwargs["json"] = data

                    async with session.request(method.upper(), url, **kwargs) as response:
                        body = await response.text()

                        # Multipart bodies are consumed by the first attempt.
                        if response.status in (429, 502, 503, 504) and attempt < retries and form is None:
                            retry_after = self._to_float(response.headers.get("Retry-After"), default=0.5)
                            await asyncio.sleep(min(max(retry_after, 0.2), 5.0))
                            continue

                        if response.status < 200 or response.status >= 300:
                            logger.error(f"{self.service_name} error {response.status} at {url}: {body[:300]}")
                            return None

                        if not body:
                            return {}

                        try:
                            return json.loads(body)
                        except json.JSONDecodeError:
                            return body

                return None
        except Exception as exc:
            logger.error(f"{self.service_name} request failed ({method} {url}): {exc}")
            return None

    def _build_url(self, endpoint: str) -> str:
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _build_headers(self, json_body: bool = True) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if json_body:
            headers["Content-Type"] = "application/json"
        if not self.api_key:
            return headers

        value = self.api_key
        if self.auth_scheme:
            value = f"{self.auth_scheme} {self.api_key}"
        headers[self.auth_header] = value
        return headers

    @staticmethod
    def _unwrap(payload: Any) -> Any:
        """Return ``payload["data"]`` for enveloped responses, else the payload itself."""
        if isinstance(payload, dict) and isinstance(payload.get("data"), (dict, list)):
            return payload["data"]
        return payload

    @staticmethod
    def _to_float(value: Any, default: float) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return default
