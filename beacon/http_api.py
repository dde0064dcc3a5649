import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import web

log = logging.getLogger(__name__)

Tool = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]

TOOLS_KEY = web.AppKey("tools", dict)


async def _read_json(request: web.Request) -> Optional[Dict[str, Any]]:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


async def health(request: web.Request) -> web.Response:
    tools = request.app[TOOLS_KEY]
    return web.json_response({"status": "ok", "tools": sorted(tools)})


async def call_tool(request: web.Request) -> web.Response:
    name = request.match_info["tool"]
    tool = request.app[TOOLS_KEY].get(name)
    if tool is None:
        return web.json_response({"status": "error", "details": f"Unknown tool {name}."}, status=404)
    args = await _read_json(request)
    if args is None:
        return web.json_response({"status": "error", "details": "Body must be a JSON object."}, status=400)
    try:
        result = await tool(args)
    except Exception as exc:
        log.exception("tool %s raised: %s", name, exc)
        return web.json_response({"status": "error", "details": "internal error"}, status=500)
    return web.json_response(result)


async def research_webhook(request: web.Request) -> web.Response:
    tool = request.app[TOOLS_KEY].get("researchResponse")
    if tool is None:
        return web.json_response({"status": "error", "details": "research replies not handled here"}, status=404)
    args = await _read_json(request)
    if args is None:
        return web.json_response({"status": "error", "details": "Body must be a JSON object."}, status=400)
    result = await tool(args)
    if result.get("status") == "ok":
        return web.json_response(result)
    status = 404 if result.get("code") == "unknown_reference" else 400
    return web.json_response(result, status=status)


def create_app(tools: Dict[str, Tool]) -> web.Application:
    app = web.Application()
    app[TOOLS_KEY] = dict(tools)
    app.router.add_get("/health", health)
    app.router.add_post("/rpc/{tool}", call_tool)
    app.router.add_post("/api/webhook/research_response", research_webhook)
    return app


async def start_http(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("http api listening on %s:%s", host, port)
    return runner
