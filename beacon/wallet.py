import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .pending import PaymentIntent
from .store import BeaconStore

log = logging.getLogger(__name__)


@dataclass
class WalletResult:
    success: bool
    receipt: Optional[str] = None
    error: Optional[str] = None
    value: Optional[str] = None


class MockWallet:
    """Stand-in payment executor. Every payment succeeds after ``delay`` seconds."""

    def __init__(self, store: Optional[BeaconStore] = None, *, delay: float = 1.5, balance: int = 21000):
        self.store = store
        self.delay = delay
        self.balance = balance

    async def execute_payment(self, intent: PaymentIntent) -> WalletResult:
        log.info("mock payment %s for %s (%s)", intent.type, intent.ref_id, intent.ln_address or "invoice")
        if self.delay:
            await asyncio.sleep(self.delay)
        return WalletResult(success=True, receipt=f"mock_receipt_{intent.ref_id}")

    async def get_balance(self, user_id: str) -> WalletResult:
        return WalletResult(success=True, value=str(self.balance))

    async def create_invoice(self, user_id: str, amount: int) -> WalletResult:
        if amount <= 0:
            return WalletResult(success=False, error="Amount must be positive.")
        return WalletResult(success=True, value=f"lnbc{amount}n1mock{user_id.replace('-', '')[:16]}")

    async def get_ln_address(self, user_id: str) -> WalletResult:
        address = self.store.get_ln_address(user_id) if self.store else None
        if not address:
            return WalletResult(success=False, error="No Lightning address on file.")
        return WalletResult(success=True, value=address)
