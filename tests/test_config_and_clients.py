import pytest

from beacon.agents import load_prompts
from beacon.config import Settings
from beacon.pending import PaymentIntent
from beacon.rpc_client import LocalRpcClient
from beacon.wallet import MockWallet


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("BEACON_AUTO", "30")
    monkeypatch.setenv("PORT", "4000")
    monkeypatch.setenv("SATS_PER_DOLLAR", "not-a-number")
    monkeypatch.setenv("PAYMENT_GATEWAY_PREFERENCE", "Telegram, web")
    monkeypatch.setenv("DISCORD_GUILD_ID", "1234")
    monkeypatch.setenv("REMOTE_DISPATCH", "off")

    settings = Settings.from_env()
    assert settings.auto_approve_seconds == 30
    assert settings.http_port == 4000
    assert settings.sats_per_dollar == 1000
    assert settings.payment_gateway_preference == ["telegram", "web"]
    assert settings.discord_guild_id == 1234
    assert settings.remote_dispatch is False


def test_bundled_prompts_load(tmp_path):
    prompts = load_prompts()
    assert {"conversation", "continuation", "summarize", "intent", "payment"} <= set(prompts)

    override = tmp_path / "prompts.yaml"
    override.write_text("Conversation: |\n  You are a pirate.\n", encoding="utf-8")
    merged = load_prompts(str(override))
    assert merged["conversation"] == "You are a pirate."
    assert merged["intent"] == prompts["intent"]


@pytest.mark.asyncio
async def test_local_rpc_client_reports_errors():
    async def fine(args):
        return {"status": "ok", "args": args}

    async def broken(args):
        raise RuntimeError("nope")

    client = LocalRpcClient({"fine": fine})
    client.register("broken", broken)

    assert (await client.call("fine", {"a": 1}))["args"] == {"a": 1}
    assert await client.call("broken", {}) == {"status": "error", "details": "nope"}
    assert (await client.call("missing", {}))["details"] == "Unknown tool missing."


@pytest.mark.asyncio
async def test_mock_wallet(store):
    wallet = MockWallet(store, delay=0)
    result = await wallet.execute_payment(PaymentIntent(type="ln_address", ref_id="ref-1", amount=10))
    assert result.success
    assert result.receipt == "mock_receipt_ref-1"

    assert not (await wallet.get_ln_address("user-1")).success
    store.save_wallet("user-1", "me@wallet.test")
    assert (await wallet.get_ln_address("user-1")).value == "me@wallet.test"
    assert not (await wallet.create_invoice("user-1", 0)).success
