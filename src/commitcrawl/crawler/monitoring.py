"""Kill-switch and error-reporting collaborators of the orchestrator."""

import json
import logging
import traceback
from typing import Optional, Protocol

import httpx

from commitcrawl.crawler.errors import PlatformError

logger = logging.getLogger(__name__)


class KillSwitch(Protocol):
    async def should_stop(self) -> bool:
        ...


class StaticKillSwitch:
    """Kill-switch with a fixed answer (no endpoint configured, tests)."""

    def __init__(self, stop: bool = False):
        self.stop = stop
        self.queries = 0

    async def should_stop(self) -> bool:
        self.queries += 1
        return self.stop


class HttpKillSwitch:
    """Asks a remote endpoint whether executions should stop.

    The endpoint receives an empty JSON object and answers with a JSON
    value; anything truthy means stop.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def should_stop(self) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.url, json={})
                response.raise_for_status()
                return bool(response.json())
            except httpx.HTTPError as e:
                raise PlatformError(f"Kill-switch query failed: {e}") from e
            except ValueError as e:
                raise PlatformError("Kill-switch returned malformed JSON") from e


class ErrorReporter(Protocol):
    async def capture(self, exc: BaseException, **context) -> None:
        ...


class LoggingErrorReporter:
    """Reports errors to the log with their traceback."""

    async def capture(self, exc: BaseException, **context) -> None:
        logger.error(
            "Execution failed: %s %s",
            exc,
            json.dumps(context, default=str, sort_keys=True),
            exc_info=(type(exc), exc, exc.__traceback__),
        )


class WebhookErrorReporter:
    """Posts failure alerts to a webhook, falling back to the log.

    Best-effort only: a broken webhook never masks the original error.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport
        self._fallback = LoggingErrorReporter()

    def _build_content(self, exc: BaseException, context: dict) -> str:
        lines = [f"[ERROR] commitcrawl execution failed: {type(exc).__name__}: {exc}"]
        for key, value in sorted(context.items()):
            lines.append(f"- {key}: {value}")
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        # Keep within typical webhook message limits
        lines.append(f"```{tb[-1500:]}```")
        return "\n".join(lines)

    async def capture(self, exc: BaseException, **context) -> None:
        await self._fallback.capture(exc, **context)
        payload = {"content": self._build_content(exc, context)}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Error webhook delivery failed: %s", e)
