import asyncio
import logging
import os
import signal
import sys
from typing import Callable, Dict, List, Optional

from beacon.agents import AgentClient, load_prompts
from beacon.brain import BrainWorker
from beacon.bus import MessageBus
from beacon.config import Settings
from beacon.continuity import ConversationResolver
from beacon.delivery import DeliveryTracker
from beacon.http_api import create_app, start_http
from beacon.identity import IdentityWorker
from beacon.pending import IdempotencyCache, PendingConfirmationStore
from beacon.research import ResearchClient
from beacon.routing import RoutingContextStore
from beacon.rpc import BrainTools
from beacon.rpc_client import HttpRpcClient, LocalRpcClient
from beacon.store import BeaconStore
from beacon.summarizer import ConversationSummarizer
from beacon.wallet import MockWallet
from gateways.discord_bot import DiscordGateway
from gateways.remote import RemoteDispatcher
from gateways.telegram_bot import TelegramGateway

ROLES = ("brain", "identity", "all")

log = logging.getLogger("beacon")


def _role() -> str:
    role = sys.argv[1] if len(sys.argv) > 1 else os.getenv("BEACON_ROLE", "all")
    role = role.strip().lower()
    if role not in ROLES:
        raise SystemExit(f"Unknown role {role!r}; expected one of {', '.join(ROLES)}.")
    return role


def _gateways(
    settings: Settings,
    store: BeaconStore,
    tracker: DeliveryTracker,
    buses: Dict[str, MessageBus],
    router: Optional[Callable[[str], Optional[MessageBus]]] = None,
) -> List:
    shared = {"router": router, "outbound_buses": list(buses.values())}
    gateways = []
    if settings.telegram_token and settings.telegram_service in buses:
        gateways.append(
            TelegramGateway(
                settings.telegram_token,
                bus=buses[settings.telegram_service],
                store=store,
                tracker=tracker,
                gateway_id=settings.gateway_id,
                service=settings.telegram_service,
                **shared,
            )
        )
    if settings.discord_token and settings.discord_service in buses:
        gateways.append(
            DiscordGateway(
                settings.discord_token,
                guild_id=settings.discord_guild_id,
                bus=buses[settings.discord_service],
                store=store,
                tracker=tracker,
                gateway_id=settings.gateway_id,
                service=settings.discord_service,
                **shared,
            )
        )
    return gateways


async def main():
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s :: %(message)s",
    )
    role = _role()
    run_brain = role in ("brain", "all")
    run_identity = role in ("identity", "all")

    if run_brain and not settings.openai_api_key:
        raise SystemExit("Missing required environment variables.")
    if role == "brain" and not settings.identity_rpc_url:
        raise SystemExit("IDENTITY_RPC_URL is required when running the brain alone.")
    if role == "identity" and not settings.brain_rpc_url:
        raise SystemExit("BRAIN_RPC_URL is required when running identity alone.")

    store = BeaconStore(settings.sqlite_path)
    tracker = DeliveryTracker(store)
    routing = RoutingContextStore(settings.routing_capacity)
    buses: Dict[str, MessageBus] = {}
    if run_brain:
        buses["brain"] = MessageBus("brain")
    if run_identity:
        buses["identity"] = MessageBus("identity")

    brain_tools = BrainTools(store, routing, tracker, buses, gateway_id=settings.gateway_id)
    tools = {"receiveMessage": brain_tools.receive_message}
    if run_brain:
        tools.update(brain_tools.tools())

    if role == "all":
        brain_client = LocalRpcClient(brain_tools.tools())
        identity_client = LocalRpcClient()
    elif role == "brain":
        brain_client = None
        identity_client = HttpRpcClient(settings.identity_rpc_url, timeout=settings.agent_timeout)
    else:
        brain_client = HttpRpcClient(settings.brain_rpc_url, timeout=settings.agent_timeout)
        identity_client = None

    agents = None
    if run_brain:
        agents = AgentClient(
            api_key=settings.openai_api_key,
            model=settings.model,
            base_url=settings.openai_base_url,
            timeout=settings.agent_timeout,
            prompts=load_prompts(settings.prompts_override),
        )
        research = None
        if settings.research_api_url:
            research = ResearchClient(settings.research_api_url, token=settings.research_api_token)
        brain = BrainWorker(
            bus=buses["brain"],
            store=store,
            routing=routing,
            tracker=tracker,
            resolver=ConversationResolver(
                store, agents.classify_continuation, timeout=settings.agent_timeout
            ),
            summarizer=ConversationSummarizer(store, agents.summarize, timeout=settings.agent_timeout),
            agents=agents,
            identity=identity_client,
            research=research,
            sats_per_dollar=settings.sats_per_dollar,
            gateway_id=settings.gateway_id,
        )
        brain.start()

    pending = None
    identity = None

    def route_to_identity(sender: str) -> Optional[MessageBus]:
        # One transport serving both services: setup and confirmations go to identity.
        if identity.claims(sender) or not store.is_known_gateway_user(sender):
            return buses["identity"]
        return None

    router = route_to_identity if role == "all" else None
    gateways = _gateways(settings, store, tracker, buses, router)

    if run_identity:
        pending = PendingConfirmationStore(
            timeout=settings.confirm_timeout_seconds,
            sweep_interval=settings.sweep_interval_seconds,
        )
        identity = IdentityWorker(
            bus=buses["identity"],
            store=store,
            tracker=tracker,
            pending=pending,
            idempotency=IdempotencyCache(settings.idempotency_ttl_seconds),
            wallet=MockWallet(store),
            brain=brain_client,
            gateway_id=settings.gateway_id,
            auto_approve_seconds=settings.auto_approve_seconds,
            gateway_preference=settings.payment_gateway_preference,
            deliverable={gateway.gateway_type for gateway in gateways},
        )
        identity.start()
        pending.start()
        tools.update(identity.tools())
        if isinstance(identity_client, LocalRpcClient):
            for name, tool in identity.tools().items():
                identity_client.register(name, tool)

    dispatchers: List[RemoteDispatcher] = []
    if settings.remote_dispatch:
        for name, bus in buses.items():
            dispatcher = RemoteDispatcher(bus=bus, tracker=tracker, bot_type=name, timeout=settings.agent_timeout)
            dispatcher.start()
            dispatchers.append(dispatcher)

    runner = await start_http(create_app(tools), settings.http_host, settings.http_port)
    log.info("beacon %s listening on %s:%s", role, settings.http_host, settings.http_port)

    stop_event = asyncio.Event()

    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    gateway_tasks = [asyncio.create_task(gateway.start()) for gateway in gateways]

    await stop_event.wait()

    for gateway in gateways:
        try:
            await gateway.stop()
        except Exception as exc:
            log.warning("gateway %s did not stop cleanly: %s", gateway.gateway_type, exc)
    if gateway_tasks:
        await asyncio.wait(gateway_tasks, timeout=10)
    for task in gateway_tasks:
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            log.warning("gateway task ended with %s", exc)

    await runner.cleanup()
    if identity is not None:
        await identity.close()
    if pending is not None:
        await pending.stop()
    for bus in buses.values():
        await bus.drain()
    for dispatcher in dispatchers:
        await dispatcher.close()
    for client in (brain_client, identity_client):
        if client is not None:
            await client.close()
    if agents is not None:
        await agents.close()
    store.close()


if __name__ == "__main__":
    asyncio.run(main())
