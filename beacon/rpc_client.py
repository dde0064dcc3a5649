import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

log = logging.getLogger(__name__)

Tool = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class LocalRpcClient:
    """Calls tools registered in this process."""

    def __init__(self, tools: Optional[Dict[str, Tool]] = None):
        self.tools: Dict[str, Tool] = dict(tools or {})

    def register(self, name: str, tool: Tool) -> None:
        self.tools[name] = tool

    async def call(self, tool: str, args: Dict[str, Any]) -> Dict[str, Any]:
        handler = self.tools.get(tool)
        if handler is None:
            return {"status": "error", "details": f"Unknown tool {tool}."}
        try:
            return await handler(dict(args))
        except Exception as exc:
            log.exception("local tool %s failed: %s", tool, exc)
            return {"status": "error", "details": str(exc)}

    async def close(self) -> None:
        return None


class HttpRpcClient:
    """Calls tools on another beacon process over ``POST <base>/rpc/<tool>``."""

    def __init__(self, base_url: str, *, timeout: float = 30.0, token: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.token = token
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def call(self, tool: str, args: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        url = f"{self.base_url}/rpc/{tool}"
        try:
            session = await self._get_session()
            async with session.post(url, json=args, headers=headers) as resp:
                try:
                    data = await resp.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    data = None
                if not isinstance(data, dict):
                    return {"status": "error", "details": f"HTTP {resp.status} from {tool}"}
                return data
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            log.warning("rpc %s to %s failed: %s", tool, self.base_url, exc)
            return {"status": "error", "details": str(exc) or exc.__class__.__name__}

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
