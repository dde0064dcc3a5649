import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(key: str, default: bool = False) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in TRUTHY


def _env_int(key: str, default: int) -> int:
    raw = (os.getenv(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    raw = (os.getenv(key) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(key: str, default: str) -> List[str]:
    raw = os.getenv(key, default)
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    model: str = "gpt-4.1-mini"
    agent_timeout: float = 60.0
    prompts_override: Optional[str] = None
    sqlite_path: str = "data/beacon.sqlite"
    gateway_id: str = ""
    sats_per_dollar: int = 1000
    auto_approve_seconds: int = 0
    confirm_timeout_seconds: float = 300.0
    sweep_interval_seconds: float = 60.0
    idempotency_ttl_seconds: float = 300.0
    routing_capacity: int = 2000
    http_host: str = "0.0.0.0"
    http_port: int = 3009
    brain_rpc_url: Optional[str] = None
    identity_rpc_url: Optional[str] = None
    research_api_url: Optional[str] = None
    research_api_token: Optional[str] = None
    telegram_token: Optional[str] = None
    telegram_service: str = "brain"
    discord_token: Optional[str] = None
    discord_service: str = "brain"
    discord_guild_id: Optional[int] = None
    remote_dispatch: bool = True
    payment_gateway_preference: List[str] = field(
        default_factory=lambda: ["web", "whatsapp", "telegram", "discord"]
    )
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        guild_raw = (os.getenv("DISCORD_GUILD_ID") or "").strip()
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            model=os.getenv("MODEL", "gpt-4.1-mini"),
            agent_timeout=_env_float("AGENT_TIMEOUT_SECONDS", 60.0),
            prompts_override=os.getenv("PROMPTS_OVERRIDE") or None,
            sqlite_path=os.getenv("BEACON_SQLITE_PATH", "data/beacon.sqlite"),
            gateway_id=os.getenv("GATEWAY_ID", "").strip(),
            sats_per_dollar=_env_int("SATS_PER_DOLLAR", 1000) or 1000,
            auto_approve_seconds=max(0, _env_int("BEACON_AUTO", 0)),
            confirm_timeout_seconds=_env_float("CONFIRM_TIMEOUT_SECONDS", 300.0),
            sweep_interval_seconds=_env_float("SWEEP_INTERVAL_SECONDS", 60.0),
            idempotency_ttl_seconds=_env_float("IDEMPOTENCY_TTL_SECONDS", 300.0),
            routing_capacity=_env_int("ROUTING_CAPACITY", 2000),
            http_host=os.getenv("HTTP_HOST", "0.0.0.0"),
            http_port=_env_int("PORT", 3009),
            brain_rpc_url=os.getenv("BRAIN_RPC_URL") or None,
            identity_rpc_url=os.getenv("IDENTITY_RPC_URL") or None,
            research_api_url=os.getenv("RESEARCH_API_URL") or None,
            research_api_token=os.getenv("RESEARCH_API_TOKEN") or None,
            telegram_token=os.getenv("TELEGRAM_TOKEN") or None,
            telegram_service=os.getenv("TELEGRAM_SERVICE", "brain").strip().lower(),
            discord_token=os.getenv("DISCORD_TOKEN") or None,
            discord_service=os.getenv("DISCORD_SERVICE", "brain").strip().lower(),
            discord_guild_id=int(guild_raw) if guild_raw.isdigit() else None,
            remote_dispatch=_env_bool("REMOTE_DISPATCH", True),
            payment_gateway_preference=_env_list(
                "PAYMENT_GATEWAY_PREFERENCE", "web,whatsapp,telegram,discord"
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
