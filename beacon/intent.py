import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

log = logging.getLogger(__name__)

ROUTE_CONVERSATION = "conversation"
ROUTE_RESEARCH = "research"
ROUTE_SETTINGS = "settings"
ROUTE_WALLET = "wallet"
ROUTES = (ROUTE_CONVERSATION, ROUTE_RESEARCH, ROUTE_SETTINGS, ROUTE_WALLET)

MIN_CONFIDENCE = 50
WALLET_COMMANDS = ("/ls", "/addnick", "/nickls", "/nick", "/newgate")

LN_ADDRESS_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_USD_RE = re.compile(r"\$|\busd\b|\bdollars?\b")
_USD_AMOUNT_RE = re.compile(r"\$?\s*([0-9]+(?:\.[0-9]+)?)")
_NUMBER_RE = re.compile(r"([0-9][0-9_,.]*)")


@dataclass
class IntentRoute:
    type: str
    text: str
    reason: str = ""


def _strip_command(text: str, command: str) -> str:
    return text[len(command) :].strip()


def route_override(text: str) -> Optional[IntentRoute]:
    """Deterministic routes that never need a model call."""
    stripped = (text or "").strip()
    if not stripped:
        return IntentRoute(ROUTE_CONVERSATION, "", "empty")
    lowered = stripped.lower()
    head = lowered.split()[0]
    if head in WALLET_COMMANDS:
        return IntentRoute(ROUTE_WALLET, stripped, "command")
    if head == "/settings":
        return IntentRoute(ROUTE_SETTINGS, _strip_command(stripped, "/settings"), "command")
    if head == "/research":
        return IntentRoute(ROUTE_RESEARCH, _strip_command(stripped, "/research"), "command")
    if any(word == "wingman" for word in lowered.split()[:5]):
        return IntentRoute(ROUTE_RESEARCH, stripped, "wingman")
    return None


async def route_intent(
    text: str,
    classify: Optional[Callable[..., Awaitable[object]]] = None,
    history: str = "",
    min_confidence: int = MIN_CONFIDENCE,
) -> IntentRoute:
    override = route_override(text)
    if override is not None:
        return override
    if classify is None:
        return IntentRoute(ROUTE_CONVERSATION, text, "no classifier")
    try:
        decision = await classify(text, history)
    except Exception as exc:
        log.warning("intent classification failed: %s", exc)
        return IntentRoute(ROUTE_CONVERSATION, text, "classifier error")
    intent = getattr(decision, "intent", None)
    confidence = getattr(decision, "confidence", 0) or 0
    if intent not in ROUTES or confidence < min_confidence:
        return IntentRoute(ROUTE_CONVERSATION, text, "low confidence")
    return IntentRoute(intent, text, getattr(decision, "rationale", "") or "")


def parse_amount(raw: object, sats_per_dollar: int = 1000, currency: Optional[str] = None) -> Optional[int]:
    """Turn ``"$5"``, ``"5000 sats"``, ``"1,000"`` or a number into whole sats."""
    if raw is None:
        return None
    if isinstance(raw, bool):
        return None
    usd = (currency or "").strip().lower() in ("usd", "dollar", "dollars", "$")
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        lowered = str(raw).strip().lower()
        if not lowered:
            return None
        if _USD_RE.search(lowered):
            usd = True
            match = _USD_AMOUNT_RE.search(lowered)
            value = float(match.group(1)) if match else 0.0
        else:
            match = _NUMBER_RE.search(lowered)
            if not match:
                return None
            digits = re.sub(r"[,_]", "", match.group(1)).rstrip(".")
            try:
                value = float(digits) if digits else 0.0
            except ValueError:
                return None
    sats = round(value * sats_per_dollar) if usd else round(value)
    return int(sats) if sats > 0 else None


def normalize_ln_invoice(raw: str) -> str:
    """Clean up a pasted BOLT11 invoice. Returns the input unchanged if it doesn't look like one."""
    if not raw:
        return raw
    cleaned = str(raw).strip()
    if cleaned.lower().startswith("lightning:"):
        cleaned = cleaned[len("lightning:") :]
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in "\"'`":
        cleaned = cleaned[1:-1].strip()
    cleaned = re.sub(r"\s+", "", cleaned)
    cleaned = re.sub(r"[.,;:!?)]$", "", cleaned)
    cleaned = cleaned.lower()
    if not cleaned.startswith("lnbc"):
        return raw
    return cleaned


def is_ln_address(value: Optional[str]) -> bool:
    return bool(value) and bool(LN_ADDRESS_RE.match(value.strip()))


def is_bolt11(value: Optional[str]) -> bool:
    if not value:
        return False
    return bool(re.fullmatch(r"ln(bc|tb|bcrt)[0-9a-z]+", value.strip().lower())) and len(value.strip()) > 20
