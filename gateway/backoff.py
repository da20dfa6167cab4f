from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class BackoffSchedule:
    """Delay before delivery attempt N (1-based), in seconds.

    Attempt numbers past the end of the table reuse the last entry.
    """

    delays: Tuple[float, ...]

    def delay_for(self, attempt: int) -> float:
        index = min(max(attempt, 1) - 1, len(self.delays) - 1)
        return self.delays[index]


PRODUCTION_SCHEDULE = BackoffSchedule((0, 60, 300, 1800, 7200))
FAST_SCHEDULE = BackoffSchedule((0, 5, 10, 15, 20))


def schedule_for(settings) -> BackoffSchedule:
    return FAST_SCHEDULE if settings.webhook_fast_retries else PRODUCTION_SCHEDULE
