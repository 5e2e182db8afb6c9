"""
Credit gate and ledger adapters.

The gate only authorizes. The dispatcher charges the ledger once per
successful item and re-reads the balance afterwards.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import aiohttp

from .pipeline_config import config
from .models import CreditAccount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationResult:
    ok: bool
    required: int = 0
    reason: Optional[str] = None
    shortfall: int = 0

    def to_dict(self) -> dict:
        return {
            'ok': self.ok,
            'required': self.required,
            'reason': self.reason,
            'shortfall': self.shortfall,
        }


class CreditGate:
    """Decides whether a batch may start; never mutates anything"""

    @staticmethod
    def required_credits(pending_count: int, item_cost: int) -> int:
        return max(0, pending_count) * max(0, item_cost)

    def authorize(self, pending_count: int, item_cost: int,
                  account: CreditAccount) -> AuthorizationResult:
        required = self.required_credits(pending_count, item_cost)
        if account.unlimited or account.balance >= required:
            return AuthorizationResult(ok=True, required=required)
        shortfall = required - account.balance
        return AuthorizationResult(
            ok=False,
            required=required,
            reason=f"Not enough credits. Need {required}, have {account.balance}",
            shortfall=shortfall,
        )


class CreditLedger(ABC):
    """External source of truth for the credit balance"""

    @abstractmethod
    async def get_account(self) -> CreditAccount:
        ...

    @abstractmethod
    async def charge(self, amount: int) -> CreditAccount:
        """Deduct credits for completed work; returns the new account state"""
        ...


class StaticCreditLedger(CreditLedger):
    """In-process ledger for development and tests"""

    def __init__(self, balance: int = 0, unlimited: bool = False):
        self.balance = balance
        self.unlimited = unlimited
        self._lock = asyncio.Lock()

    async def get_account(self) -> CreditAccount:
        return CreditAccount(balance=self.balance, unlimited=self.unlimited)

    async def charge(self, amount: int) -> CreditAccount:
        async with self._lock:
            if not self.unlimited:
                self.balance = max(0, self.balance - amount)
            return CreditAccount(balance=self.balance, unlimited=self.unlimited)


class HttpCreditLedger(CreditLedger):
    """
    Talks to a profile endpoint answering ``{"credits": int, "unlimited": bool}``.

    GET reads the account; POST ``{"amount": n}`` to the charge URL deducts
    credits and answers with the updated account.
    """

    def __init__(self, url: str, token: str = '', timeout: float = 10.0,
                 charge_url: str = ''):
        self.url = url
        self.charge_url = charge_url or url
        self.token = token
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _headers(self) -> dict:
        headers = {}
        if self.token:
            headers['Authorization'] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, url: str, payload: Optional[dict] = None) -> dict:
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.request(method, url, headers=self._headers(),
                                       json=payload) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise Exception(
                        f"Credit ledger request failed with status {resp.status}: {text[:500]}")
                return await resp.json()

    @staticmethod
    def _account(data: dict) -> CreditAccount:
        return CreditAccount(
            balance=int(data.get('credits', 0) or 0),
            unlimited=bool(data.get('unlimited', False)),
        )

    async def get_account(self) -> CreditAccount:
        return self._account(await self._request('GET', self.url))

    async def charge(self, amount: int) -> CreditAccount:
        data = await self._request('POST', self.charge_url, {'amount': amount})
        return self._account(data)


def create_ledger() -> CreditLedger:
    """Build the ledger selected by configuration"""
    if config.credit_ledger_url:
        logger.info("Using HTTP credit ledger at %s", config.credit_ledger_url)
        return HttpCreditLedger(config.credit_ledger_url, config.credit_ledger_token,
                                charge_url=config.credit_ledger_charge_url)
    return StaticCreditLedger(
        balance=config.default_credit_balance,
        unlimited=config.default_unlimited_credits,
    )
