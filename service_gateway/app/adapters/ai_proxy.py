"""
Pass-through proxy to the AI completion service behind the chat assistant.

The gateway holds the API key; the browser never sees it. Bodies are
forwarded unchanged and the upstream answer is streamed back as it arrives.
"""

from typing import Optional

import httpx
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from shared.config import BaseConfig
from shared.errors import AIServiceError
from shared.logging import get_logger


class AICompletionProxy:
    """Streams requests to the configured completion endpoint."""

    def __init__(self, config: BaseConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.logger = get_logger("gateway.ai_proxy")
        self._owns_http_client = http_client is None
        # Completions can stream for a while; only the connect phase is bounded tightly.
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout, connect=10.0, read=None)
        )

    @property
    def enabled(self) -> bool:
        return bool(self.config.openai_api_key)

    async def forward(self, body: bytes, content_type: Optional[str] = None) -> StreamingResponse:
        if not self.enabled:
            raise AIServiceError("AI assistant is not configured", status_code=503)

        request = self.http_client.build_request(
            "POST",
            self.config.ai_completion_url,
            content=body,
            headers={
                "Authorization": f"Bearer {self.config.openai_api_key}",
                "Content-Type": content_type or "application/json",
            },
        )

        try:
            upstream = await self.http_client.send(request, stream=True)
        except httpx.TransportError as e:
            self.logger.error("AI completion service unreachable", error=str(e))
            raise AIServiceError("AI assistant unavailable", status_code=503) from e

        self.logger.info("Proxying AI completion", status_code=upstream.status_code)
        return StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type", "application/json"),
            headers={"Cache-Control": "no-cache"},
            background=BackgroundTask(upstream.aclose),
        )

    async def aclose(self):
        if self._owns_http_client:
            await self.http_client.aclose()
