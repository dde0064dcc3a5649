import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from .errors import RpcError

log = logging.getLogger(__name__)


class ResearchClient:
    """Hands long-running questions to the research service.

    The answer is not returned here; the service later posts it to
    ``/api/webhook/research_response`` with the same beacon id.
    """

    def __init__(self, api_url: str, *, token: Optional[str] = None, timeout: float = 20.0):
        self.api_url = api_url
        self.token = token
        self.timeout = timeout

    async def trigger(self, beacon_id: str, text: str, history: str = "") -> Dict[str, Any]:
        body = {
            "prompt": f"{text.strip()} ---{{'beaconID':'{beacon_id}'}}",
            "session_name": f"Beacon Session {beacon_id}",
            "beacon_id": beacon_id,
        }
        if history:
            body["history"] = history
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.api_url, json=body, headers=headers) as resp:
                    raw = await resp.text()
                    if resp.status >= 400:
                        raise RpcError(f"research trigger failed: HTTP {resp.status}", {"body": raw[:200]})
                    log.info("research triggered for %s", beacon_id)
                    return {"status": resp.status, "body": raw[:200]}
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RpcError(f"research trigger failed: {exc or exc.__class__.__name__}") from exc
