from __future__ import annotations

from typing import Dict


class Bank:
    """Хранилище балансов (custody): кошельки участников, хранилище стейка и резерв наград.

    Сервис стейкинга сам деньги не двигает: он просит Bank.transfer и получает
    ValueError, если перевод невозможен.
    """

    def __init__(self) -> None:
        self._balances: Dict[str, int] = {}

    def airdrop(self, pubkey: str, amount: int) -> None:
        if amount <= 0:
            raise ValueError("amount must be > 0")
        self._balances[pubkey] = self._balances.get(pubkey, 0) + amount

    def transfer(self, from_pk: str, to_pk: str, amount: int) -> None:
        """Списать у отправителя, начислить получателю. Ничего не меняет при ошибке."""
        if amount <= 0:
            raise ValueError("amount must be > 0")
        bal = self._balances.get(from_pk, 0)
        if bal < amount:
            raise ValueError(f"insufficient funds on {from_pk}")
        self._balances[from_pk] = bal - amount
        self._balances[to_pk] = self._balances.get(to_pk, 0) + amount

    def balance_of(self, pubkey: str) -> int:
        return self._balances.get(pubkey, 0)

    def balances(self) -> Dict[str, int]:
        return dict(self._balances)
