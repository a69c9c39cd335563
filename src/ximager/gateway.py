from __future__ import annotations

import asyncio
import logging
import time
import uuid
from types import TracebackType
from typing import Any

import httpx

from .errors import ImagerError, SubmitError, TransportError, UploadError
from .models import AssetUpload
from .settings import EngineConfig, RuntimeSettings, default_engine_config
from .workflows import WorkflowLibrary

logger = logging.getLogger(__name__)


def generate_client_id() -> str:
    """Opaque per-submission id: epoch millis plus a random suffix."""
    return f"client_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def build_http_client(settings: RuntimeSettings) -> httpx.AsyncClient:
    timeout = settings.request_timeout_seconds
    return httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)))


class EngineGateway:
    """Async client for the engine's HTTP surface plus the local workflow library.

    The base URL is read from ``config`` on every request.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        library: WorkflowLibrary,
        *,
        config: EngineConfig | None = None,
    ) -> None:
        self.client = client
        self.library = library
        self.config = config if config is not None else default_engine_config()

    async def __aenter__(self) -> "EngineGateway":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.config.get_server_url()}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        error_cls: type[ImagerError] = TransportError,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request. Transport failures raise ``TransportError``; non-2xx raise ``error_cls``."""
        url = self._url(path)
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            reason = str(exc) or type(exc).__name__
            logger.error("Failed to reach %s: %s", url, reason)
            raise TransportError(f"Failed to {action}: {reason}") from exc
        if response.is_error:
            logger.error("HTTP %d from %s: %s", response.status_code, url, response.text[:500])
            raise error_cls(f"Failed to {action}: {response.reason_phrase}")
        return response

    @staticmethod
    def _json(response: httpx.Response, *, action: str, error_cls: type[ImagerError]) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise error_cls(f"Failed to {action}: invalid JSON response") from exc

    async def upload_asset(self, asset: AssetUpload) -> str:
        """Upload a reference image; returns the filename the engine assigned."""
        action = "upload image"
        response = await self._request(
            "POST",
            "/upload/image",
            action=action,
            error_cls=UploadError,
            files={"image": (asset.filename, asset.content, asset.content_type)},
            data={"overwrite": "true"},
        )
        payload = self._json(response, action=action, error_cls=UploadError)
        name = payload.get("name") if isinstance(payload, dict) else None
        if not isinstance(name, str) or not name:
            raise UploadError(f"Failed to {action}: response carried no filename")
        logger.debug("Uploaded %s as %s", asset.filename, name)
        return name

    async def submit_graph(self, graph: dict[str, Any], *, client_id: str | None = None) -> str:
        """Queue a patched graph; returns the engine's run id."""
        action = "queue prompt"
        response = await self._request(
            "POST",
            "/prompt",
            action=action,
            error_cls=SubmitError,
            json={"prompt": graph, "client_id": client_id or generate_client_id()},
        )
        payload = self._json(response, action=action, error_cls=SubmitError)
        prompt_id = payload.get("prompt_id") if isinstance(payload, dict) else None
        if not isinstance(prompt_id, str) or not prompt_id:
            detail = payload.get("error") if isinstance(payload, dict) else None
            raise SubmitError(f"Failed to {action}: {detail or 'response carried no prompt_id'}")
        return prompt_id

    async def fetch_result(self, run_id: str) -> dict[str, Any] | None:
        """History entry for ``run_id``, or None until it has an ``outputs`` section."""
        action = "get history"
        response = await self._request("GET", f"/history/{run_id}", action=action)
        payload = self._json(response, action=action, error_cls=TransportError)
        entry = payload.get(run_id) if isinstance(payload, dict) else None
        if not isinstance(entry, dict) or not isinstance(entry.get("outputs"), dict):
            return None
        return entry

    async def fetch_asset(self, filename: str, subfolder: str = "", kind: str = "output") -> bytes:
        response = await self._request(
            "GET",
            "/view",
            action="get image",
            params={"filename": filename, "subfolder": subfolder, "type": kind},
        )
        return response.content

    async def system_stats(self) -> dict[str, Any]:
        action = "get system stats"
        response = await self._request("GET", "/system_stats", action=action)
        payload = self._json(response, action=action, error_cls=TransportError)
        return payload if isinstance(payload, dict) else {}

    async def load_graph_template(self, name: str) -> dict[str, Any]:
        return await asyncio.to_thread(self.library.load, name)

    async def list_graph_templates(self) -> list[str]:
        return await asyncio.to_thread(self.library.list)
