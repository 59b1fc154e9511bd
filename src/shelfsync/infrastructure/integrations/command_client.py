"""HTTP adapter for the backend command service.

Hey future me - the backend exposes every command as `POST /commands/{name}` with a
JSON body of arguments. Answers:
- 2xx with JSON body → the command result
- 2xx with empty body → None (fire-and-forget commands like apply-file-changes)
- 4xx/5xx → `{"error": "..."}` - we raise CommandError with that text

There's deliberately NO default timeout: apply-file-changes on a big batch can take
minutes, and the progress stream tells the UI what's going on meanwhile.
"""

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from shelfsync.config.settings import BackendSettings
from shelfsync.domain.exceptions import CommandError
from shelfsync.domain.ports import ICommandService

logger = logging.getLogger(__name__)


class HttpCommandService(ICommandService):
    """ICommandService over httpx.

    Usage:
        async with HttpCommandService(settings.backend) as commands:
            rows = await commands.invoke("list-file-changes", {"status": "pending"})
    """

    def __init__(
        self,
        settings: BackendSettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize command client.

        Args:
            settings: Backend settings (base_url, timeout)
            client: Optional pre-built client (shared pool, tests)
        """
        self.settings = settings
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=httpx.Timeout(self.settings.timeout),
                headers={"Accept": "application/json"},
            )
        return self._client

    async def invoke(self, command: str, args: Mapping[str, Any] | None = None) -> Any:
        """Run a backend command.

        Raises:
            CommandError: Transport failure, non-2xx answer, or undecodable body
        """
        client = await self._get_client()
        try:
            response = await client.post(f"/commands/{command}", json=dict(args or {}))
        except httpx.HTTPError as e:
            logger.warning("Command %s transport error: %s", command, e)
            raise CommandError(command, str(e) or type(e).__name__) from e

        if response.is_error:
            raise CommandError(
                command,
                self._error_text(response),
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise CommandError(
                command, "invalid JSON in response", status_code=response.status_code
            ) from e

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        if isinstance(body, str) and body:
            return body
        return f"HTTP {response.status_code}"

    async def close(self) -> None:
        """Close the HTTP client (only if we created it)."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpCommandService":
        await self._get_client()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
