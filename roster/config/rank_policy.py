"""
Rank policy configuration.

Knobs that decide which attendance rows qualify for promotion and which
completed trainings satisfy a rank transition requirement.
"""
import os
from dataclasses import dataclass, field
from typing import FrozenSet

from roster.config.feature_flags import get_bool_env


def _csv_env(key: str, default: str) -> FrozenSet[str]:
    raw = os.getenv(key, default)
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class RankPolicy:
    """Attendance and training policy used by the rank subsystem."""

    qualifying_statuses: FrozenSet[str] = field(default_factory=lambda: frozenset({"present"}))
    main_ops_only: bool = True

    # A training flagged for retraining is treated as not completed unless enabled
    count_needs_retraining: bool = False
    count_hidden: bool = True

    history_page_size: int = 20

    @classmethod
    def from_env(cls) -> "RankPolicy":
        return cls(
            qualifying_statuses=_csv_env("QUALIFYING_ATTENDANCE_STATUSES", "present"),
            main_ops_only=get_bool_env("QUALIFYING_MAIN_OPS_ONLY", True),
            count_needs_retraining=get_bool_env("TRAINING_COUNT_NEEDS_RETRAINING", False),
            count_hidden=get_bool_env("TRAINING_COUNT_HIDDEN", True),
            history_page_size=int(os.getenv("RANK_HISTORY_PAGE_SIZE", "20")),
        )


rank_policy = RankPolicy.from_env()
