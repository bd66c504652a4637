from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class StakingError(Exception):
    """Базовая ошибка стейкинга: код + причина (+ детали)."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class InvalidAmount(StakingError):
    def __init__(self, reason: str = "amount must be > 0", details: Any | None = None) -> None:
        super().__init__("invalid_amount", reason, details)


class NoStake(StakingError):
    def __init__(self, reason: str = "nothing staked", details: Any | None = None) -> None:
        super().__init__("no_stake", reason, details)


class NoClaimable(StakingError):
    def __init__(self, reason: str = "nothing to claim", details: Any | None = None) -> None:
        super().__init__("no_claimable", reason, details)


class TransferFailure(StakingError):
    def __init__(self, reason: str = "transfer declined", details: Any | None = None) -> None:
        super().__init__("transfer_failure", reason, details)


class StaleOrdinal(StakingError):
    """now меньше последнего записанного времени: история только растёт."""

    def __init__(self, reason: str = "time ordinal went backwards", details: Any | None = None) -> None:
        super().__init__("stale_ordinal", reason, details)
