from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from app.errors import InvalidAmount, NoClaimable, NoStake, StaleOrdinal, TransferFailure
from app.history import GlobalCheckpoint, GlobalStakeHistory, ParticipantAccount, StakeEvent
from app.rewards import AccrualInterval, accrual_intervals, claimable

# transfer(src, dst, amount); ValueError == отказ
TransferFn = Callable[[str, str, int], None]

logger = logging.getLogger("ledger.service")


@dataclass(frozen=True)
class StakeNotification:
    kind: str  # deposit | withdraw | claim
    participant: str
    amount: int
    time: int


Listener = Callable[[StakeNotification], None]


class LedgerService:
    """Единственный писатель историй стейка.

    Каждая мутирующая операция целиком выполняется под одним локом: проверки, перевод
    через внешний transfer, затем дописывание в обе истории. Перевод идёт ДО записи в
    истории, поэтому отказ перевода не оставляет следов в журналах.
    """

    def __init__(
        self,
        transfer: TransferFn,
        reward_rate: int = 1,
        vault_account: str = "stake-vault",
        reward_account: str = "reward-pool",
    ) -> None:
        if reward_rate < 0:
            raise ValueError("reward_rate must be >= 0")
        self._transfer = transfer
        self._reward_rate = int(reward_rate)
        self.vault_account = vault_account
        self.reward_account = reward_account
        self._accounts: Dict[str, ParticipantAccount] = {}
        self._global = GlobalStakeHistory()
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    @property
    def reward_rate(self) -> int:
        return self._reward_rate

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # ---------- внутреннее ----------
    def _notify(self, kind: str, participant: str, amount: int, now: int) -> None:
        note = StakeNotification(kind, participant, amount, now)
        for listener in list(self._listeners):
            # операция уже записана: сбой подписчика её не откатывает
            try:
                listener(note)
            except Exception:
                logger.exception("listener failed on %s for %s at %d", kind, participant, now)

    def _check_time(self, acct: Optional[ParticipantAccount], now: int) -> None:
        last = self._global.last_time()
        if last is not None and now < last:
            raise StaleOrdinal(details={"now": now, "last": last})
        if acct is not None and acct.claim_checkpoint is not None and now < acct.claim_checkpoint:
            raise StaleOrdinal(details={"now": now, "claim_checkpoint": acct.claim_checkpoint})

    def _move(self, src: str, dst: str, amount: int) -> None:
        try:
            self._transfer(src, dst, amount)
        except ValueError as e:
            raise TransferFailure(str(e), details={"from": src, "to": dst, "amount": amount}) from e

    def _record_total(self, now: int, delta: int) -> None:
        last = self._global.last_time()
        prev = self._global.total_at(last) if last is not None else 0
        self._global.record_total(now, prev + delta)

    # ---------- мутации ----------
    def deposit(self, participant: str, amount: int, now: int) -> int:
        if amount <= 0:
            raise InvalidAmount(details={"amount": amount})
        with self._lock:
            acct = self._accounts.get(participant)
            self._check_time(acct, now)
            self._move(participant, self.vault_account, amount)

            if acct is None:
                acct = ParticipantAccount()
                self._accounts[participant] = acct
            acct.history.record_change(now, acct.history.stake_at(now) + amount)
            self._record_total(now, amount)
        self._notify("deposit", participant, amount, now)
        return amount

    def withdraw(self, participant: str, now: int) -> int:
        """Снимает весь текущий стейк (частичного вывода нет)."""
        with self._lock:
            acct = self._accounts.get(participant)
            staked = acct.history.current_stake() if acct is not None else 0
            if staked == 0:
                raise NoStake()
            self._check_time(acct, now)
            self._move(self.vault_account, participant, staked)

            acct.history.record_change(now, 0)
            self._record_total(now, -staked)
        self._notify("withdraw", participant, staked, now)
        return staked

    def claim(self, participant: str, now: int) -> int:
        with self._lock:
            acct = self._accounts.get(participant)
            self._check_time(acct, now)
            amount = claimable(acct, self._global, self._reward_rate, now)
            if amount <= 0:
                raise NoClaimable(details={"now": now})
            self._move(self.reward_account, participant, amount)
            acct.claim_checkpoint = now
        self._notify("claim", participant, amount, now)
        return amount

    # ---------- чтение ----------
    def claimable(self, participant: str, now: int) -> int:
        with self._lock:
            return claimable(self._accounts.get(participant), self._global, self._reward_rate, now)

    def accrual_breakdown(self, participant: str, now: int) -> List[AccrualInterval]:
        with self._lock:
            acct = self._accounts.get(participant)
            return list(accrual_intervals(acct, self._global, self._reward_rate, now))

    def get_history(self, participant: str) -> Tuple[List[StakeEvent], Optional[int]]:
        with self._lock:
            acct = self._accounts.get(participant)
            if acct is None:
                return [], None
            return acct.history.events(), acct.claim_checkpoint

    def stake_at(self, participant: str, time: int) -> int:
        with self._lock:
            acct = self._accounts.get(participant)
            return acct.history.stake_at(time) if acct is not None else 0

    def current_stake(self, participant: str) -> int:
        with self._lock:
            acct = self._accounts.get(participant)
            return acct.history.current_stake() if acct is not None else 0

    def total_at(self, time: int) -> int:
        with self._lock:
            return self._global.total_at(time)

    def total_staked(self) -> int:
        with self._lock:
            return self._global.current_total()

    def checkpoints(self) -> List[GlobalCheckpoint]:
        with self._lock:
            return self._global.checkpoints()

    def participants(self) -> List[str]:
        with self._lock:
            return list(self._accounts)
