"""
Начисление награды по чекпоинтам.

Награда за интервал [b_i, b_{i+1}) = floor(длина * rate * stake(b_i) / total(b_i)),
где stake/total это значения, действующие в НАЧАЛЕ интервала (last-at-or-before b_i).
Границы: точка старта, все времена глобальных чекпоинтов строго между стартом и now, now.

Старт: claim_checkpoint участника; если он ещё ни разу не клеймил, то время его первого
события стейка (до него стейк всё равно нулевой, этот отрезок награды не даёт).
Остатки от деления не переносятся: каждый интервал округляется вниз отдельно.
Интервал с total == 0 ничего не даёт, награда за него сгорает.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List, Optional

from app.history import GlobalStakeHistory, ParticipantAccount


@dataclass(frozen=True)
class AccrualInterval:
    start: int
    end: int
    stake: int
    total: int
    reward: int


def accrual_start(account: Optional[ParticipantAccount]) -> Optional[int]:
    if account is None:
        return None
    if account.claim_checkpoint is not None:
        return account.claim_checkpoint
    return account.history.first_time()


def accrual_intervals(
    account: Optional[ParticipantAccount],
    global_history: GlobalStakeHistory,
    reward_rate: int,
    now: int,
) -> Iterator[AccrualInterval]:
    """Разбивка [start, now) на интервалы с постоянным соотношением stake/total."""
    start = accrual_start(account)
    if start is None or now <= start:
        return

    history = account.history
    boundaries: List[int] = [start]
    boundaries.extend(global_history.times_after(start, now))
    boundaries.append(now)

    for lo, hi in zip(boundaries, boundaries[1:]):
        stake = history.stake_at(lo)
        total = global_history.total_at(lo)
        if total == 0:
            reward = 0
        else:
            reward = (hi - lo) * reward_rate * stake // total
        yield AccrualInterval(lo, hi, stake, total, reward)


def claimable(
    account: Optional[ParticipantAccount],
    global_history: GlobalStakeHistory,
    reward_rate: int,
    now: int,
) -> int:
    return sum(iv.reward for iv in accrual_intervals(account, global_history, reward_rate, now))
