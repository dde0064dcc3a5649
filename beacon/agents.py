import asyncio
import json
import logging
import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from openai import AsyncOpenAI

log = logging.getLogger(__name__)

DEFAULT_PROMPTS = Path(__file__).with_name("prompts.yaml")

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


def load_prompts(override_path: Optional[str] = None) -> Dict[str, str]:
    prompts: Dict[str, str] = {}
    for path in (DEFAULT_PROMPTS, Path(override_path) if override_path else None):
        if path is None or not path.exists():
            continue
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            log.warning("failed to read prompts %s: %s", path, exc)
            continue
        if isinstance(raw, dict):
            for key, value in raw.items():
                if isinstance(value, str) and value.strip():
                    prompts[str(key).strip().lower()] = value.strip()
    return prompts


def parse_json_block(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """Pull the first JSON object out of a model reply, tolerating code fences and chatter."""
    if not raw:
        return None
    text = _FENCE_RE.sub("", raw.strip()).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        log.debug("model JSON parse error: %s", raw)
        return None
    return data if isinstance(data, dict) else None


@dataclass
class IntentDecision:
    intent: str
    confidence: int
    rationale: str = ""


class AgentClient:
    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        prompts: Optional[Dict[str, str]] = None,
    ):
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.model = model
        self.timeout = timeout
        self.prompts = prompts if prompts is not None else load_prompts()

    async def close(self) -> None:
        await self.client.close()

    def _prompt(self, key: str, **values: Any) -> str:
        template = self.prompts.get(key, "")
        values.setdefault("today", date.today().strftime("%A %d %B %Y"))
        # Templates contain literal JSON braces, so only known placeholders are filled.
        for name, value in values.items():
            template = template.replace("{" + name + "}", str(value))
        return template

    async def _complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        history: str = "",
        temperature: float = 0.3,
    ) -> Optional[str]:
        messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
        if history.strip():
            messages.append({"role": "system", "content": f"Conversation so far:\n{history.strip()}"})
        messages.append({"role": "user", "content": user_prompt})
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=temperature,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            log.warning("model call timed out after %.0fs", self.timeout)
            return None
        except Exception as exc:
            log.debug("model call failed: %s", exc)
            return None
        return (response.choices[0].message.content or "").strip()

    async def classify_continuation(
        self, candidates: List[Dict[str, Any]], message: str
    ) -> Optional[Dict[str, Any]]:
        payload = {"message": message, "conversations": candidates}
        raw = await self._complete(
            self._prompt("continuation"),
            json.dumps(payload, ensure_ascii=False),
            temperature=0.2,
        )
        return parse_json_block(raw)

    async def summarize(self, previous_summary: Optional[str], transcript: str, max_chars: int) -> Optional[str]:
        parts = []
        if previous_summary:
            parts.append(f"Previous summary:\n{previous_summary}")
        parts.append(f"Messages (oldest first):\n{transcript}")
        parts.append(f"Write the updated summary in under {max_chars} characters.")
        raw = await self._complete(
            self._prompt("summarize", max_chars=max_chars),
            "\n\n".join(parts),
            temperature=0.3,
        )
        return raw or None

    async def classify_intent(self, message: str, context: str = "") -> Optional[IntentDecision]:
        raw = await self._complete(self._prompt("intent"), message, history=context, temperature=0.2)
        data = parse_json_block(raw)
        if not data:
            return None
        intent = str(data.get("intent") or "").strip().lower()
        try:
            confidence = int(float(data.get("confidence") or 0))
        except (TypeError, ValueError):
            confidence = 0
        if not intent:
            return None
        return IntentDecision(
            intent=intent,
            confidence=confidence,
            rationale=str(data.get("reasoning") or data.get("rationale") or ""),
        )

    async def extract_payment(self, message: str, context: str = "") -> Optional[Dict[str, Any]]:
        raw = await self._complete(self._prompt("payment"), message, history=context, temperature=0.2)
        data = parse_json_block(raw)
        if not data or not data.get("type"):
            return None
        if not isinstance(data.get("parameters"), dict):
            data["parameters"] = {}
        return data

    async def reply(self, message: str, history: str = "") -> str:
        raw = await self._complete(self._prompt("conversation"), message, history=history, temperature=0.6)
        if not raw:
            return "Sorry, I couldn't come up with a reply just now. Please try again."
        return raw
