import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from task_engine.actions.schemas import WebhookConfig
from task_engine.domain.action import ActionType
from task_engine.domain.condition import EvaluationContext
from task_engine.errors import ActionInvocationError

logger = logging.getLogger(__name__)


class WebhookActionHandler:
    """
    Action handler for calling webhooks using aiohttp.
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, timeout: Optional[aiohttp.ClientTimeout] = None):
        self._session = session
        self._timeout = timeout

    @staticmethod
    def supported_type() -> ActionType:
        return ActionType.WEBHOOK

    async def invoke(self, config: WebhookConfig, context: EvaluationContext, cancel_signal: asyncio.Event) -> Dict[str, Any]:
        """
        Make the HTTP request, giving up as soon as the cancel signal is set.

        Raises:
            ActionInvocationError: On connection errors or a non-2xx response.
        """
        if cancel_signal.is_set():
            raise ActionInvocationError(f"Webhook call to {config.url} was cancelled")
        request = asyncio.ensure_future(self._request(config))
        cancelled = asyncio.ensure_future(cancel_signal.wait())
        try:
            done, _ = await asyncio.wait({request, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
        if request not in done:
            request.cancel()
            raise ActionInvocationError(f"Webhook call to {config.url} was cancelled")
        return request.result()

    async def _request(self, config: WebhookConfig) -> Dict[str, Any]:
        try:
            if self._session is not None:
                return await self._send(self._session, config)
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                return await self._send(session, config)
        except ActionInvocationError:
            raise
        except Exception as e:
            raise ActionInvocationError(f"Unexpected error: {str(e)}", details={"url": config.url})

    async def _send(self, session: aiohttp.ClientSession, config: WebhookConfig) -> Dict[str, Any]:
        async with session.request(
            method=config.method,
            url=config.url,
            headers=config.headers,
            params=config.params,
            json=config.body
        ) as response:
            result: Dict[str, Any] = {
                "status": response.status,
                "headers": dict(response.headers),
                "body": await response.text()
            }
        if response.status >= 400:
            logger.debug("Webhook %s %s answered %s", config.method, config.url, response.status)
            raise ActionInvocationError(f"Webhook returned HTTP {response.status}", details=result)
        return result
