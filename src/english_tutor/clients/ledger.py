import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

import httpx

from ..config import CREDITS_BALANCE_PATH, CREDITS_SETTLE_PATH, REQUEST_TIMEOUT_SECS
from ..engine.models import CreditOutcome, CreditTransaction
from ..errors import AuthExpiredError, SettlementFailedError, TransportError

logger = logging.getLogger(__name__)


class CreditLedger(ABC):
    """Credit balance collaborator consulted before and after each turn.

    ``settle`` must be safe to call again with the same turn id: the second
    call returns the transaction recorded by the first.
    """

    @abstractmethod
    async def balance(self) -> int:
        pass

    async def preflight(self, estimated_cost: int) -> bool:
        return await self.balance() >= estimated_cost

    @abstractmethod
    async def settle(self, turn_id: str, actual_cost: int) -> CreditTransaction:
        """Record the cost of a completed turn.

        Raises:
            SettlementFailedError: The ledger could not be updated.
        """

    async def close(self) -> None:
        pass


class InMemoryCreditLedger(CreditLedger):
    def __init__(self, initial_balance: int = 0) -> None:
        self._balance = initial_balance
        self._transactions: dict[str, CreditTransaction] = {}

    @property
    def transactions(self) -> list[CreditTransaction]:
        return list(self._transactions.values())

    async def balance(self) -> int:
        return self._balance

    async def settle(self, turn_id: str, actual_cost: int) -> CreditTransaction:
        existing = self._transactions.get(turn_id)
        if existing is not None:
            logger.info("Turn %s already settled, returning recorded transaction", turn_id)
            return existing

        if actual_cost > self._balance:
            outcome = CreditOutcome.REJECTED
        else:
            self._balance -= actual_cost
            outcome = CreditOutcome.APPLIED

        tx = CreditTransaction(
            turn_id=turn_id, cost=actual_cost, balance=self._balance, outcome=outcome
        )
        self._transactions[turn_id] = tx
        return tx


class HttpCreditLedger(CreditLedger):
    """Credit ledger backed by the tutor backend's credits API."""

    def __init__(
        self,
        base_url: str,
        token_provider: Callable[[], str | None],
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=REQUEST_TIMEOUT_SECS)
        self._settled: dict[str, CreditTransaction] = {}

    def _headers(self) -> dict[str, str]:
        token = self._token_provider()
        if not token:
            raise AuthExpiredError("no auth token available")
        return {"Authorization": f"Bearer {token}"}

    async def balance(self) -> int:
        try:
            response = await self._client.get(CREDITS_BALANCE_PATH, headers=self._headers())
        except httpx.HTTPError as e:
            raise TransportError(f"balance request failed: {e}") from e

        if response.status_code == 401:
            raise AuthExpiredError("backend rejected the bearer token")
        if response.status_code >= 400:
            raise TransportError(f"balance request failed with HTTP {response.status_code}")
        try:
            return int(response.json()["credits"])
        except (ValueError, TypeError, KeyError) as e:
            raise TransportError(f"unexpected balance response: {e}") from e

    async def settle(self, turn_id: str, actual_cost: int) -> CreditTransaction:
        if turn_id in self._settled:
            return self._settled[turn_id]

        try:
            headers = {**self._headers(), "Idempotency-Key": turn_id}
            response = await self._client.post(
                CREDITS_SETTLE_PATH,
                json={"turn_id": turn_id, "cost": actual_cost},
                headers=headers,
            )
            response.raise_for_status()
            data = response.json()
            tx = CreditTransaction(
                turn_id=turn_id,
                cost=actual_cost,
                balance=int(data["credits"]),
                outcome=CreditOutcome(data.get("outcome", CreditOutcome.APPLIED)),
            )
        except (
            httpx.HTTPError,
            AuthExpiredError,
            KeyError,
            ValueError,
            TypeError,
            AttributeError,
        ) as e:
            raise SettlementFailedError(f"settlement of turn {turn_id} failed: {e}") from e

        self._settled[turn_id] = tx
        return tx

    async def close(self) -> None:
        await self._client.aclose()
