"""
Истории стейка: append-only журналы (time, amount), отсортированные по времени.

StakeHistory: уровень стейка одного участника, GlobalStakeHistory: сумма стейков всех
участников. Значение в записи это абсолютный уровень, действующий *начиная* с time (не дельта).
Поиск «последняя запись с time <= t» через bisect по колонке времён, O(log n).
"""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class StakeEvent:
    time: int
    amount: int


@dataclass(frozen=True)
class GlobalCheckpoint:
    time: int
    total_staked: int


class _Checkpoints:
    """Общая часть: параллельные массивы времён и значений."""

    def __init__(self) -> None:
        self._times: List[int] = []
        self._values: List[int] = []

    def __len__(self) -> int:
        return len(self._times)

    def _append(self, time: int, value: int) -> None:
        if value < 0:
            raise ValueError("amount must be >= 0")
        if self._times and time < self._times[-1]:
            raise ValueError(f"out-of-order time {time} < {self._times[-1]}")
        # одинаковое время допустимо: при поиске выигрывает последняя запись
        self._times.append(time)
        self._values.append(value)

    def _value_at(self, time: int) -> int:
        i = bisect_right(self._times, time)
        return self._values[i - 1] if i else 0

    def _last_value(self) -> int:
        return self._values[-1] if self._values else 0

    def last_time(self) -> Optional[int]:
        return self._times[-1] if self._times else None

    def first_time(self) -> Optional[int]:
        return self._times[0] if self._times else None


class StakeHistory(_Checkpoints):
    """Журнал уровней стейка одного участника."""

    def record_change(self, time: int, new_amount: int) -> None:
        self._append(time, new_amount)

    def stake_at(self, time: int) -> int:
        """Стейк, действовавший в момент time (0, если событий ещё не было)."""
        return self._value_at(time)

    def current_stake(self) -> int:
        return self._last_value()

    def events(self) -> List[StakeEvent]:
        return [StakeEvent(t, a) for t, a in zip(self._times, self._values)]


class GlobalStakeHistory(_Checkpoints):
    """Журнал суммарного стейка. Пишет только LedgerService."""

    def record_total(self, time: int, new_total: int) -> None:
        self._append(time, new_total)

    def total_at(self, time: int) -> int:
        return self._value_at(time)

    def current_total(self) -> int:
        return self._last_value()

    def times_after(self, start: int, end: int) -> List[int]:
        """Различные времена чекпоинтов t: start < t < end, по возрастанию."""
        lo = bisect_right(self._times, start)
        out: List[int] = []
        for t in self._times[lo:]:
            if t >= end:
                break
            if not out or out[-1] != t:
                out.append(t)
        return out

    def checkpoints(self) -> List[GlobalCheckpoint]:
        return [GlobalCheckpoint(t, v) for t, v in zip(self._times, self._values)]


@dataclass
class ParticipantAccount:
    """История участника + момент, до которого награда уже выплачена (None, если ни разу)."""

    history: StakeHistory = field(default_factory=StakeHistory)
    claim_checkpoint: Optional[int] = None
