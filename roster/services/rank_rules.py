"""
roster/services/rank_rules.py
Rank transition rule engine.

Pure functions only: no session, no I/O. Given the same inputs they always
return the same result, which keeps eligibility decisions reproducible.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Set, Tuple

from roster.config.rank_policy import RankPolicy


class UnmetKind(str, Enum):
    ATTENDANCE = "attendance"
    TRAINING = "training"


@dataclass(frozen=True)
class UnmetRequirement:
    kind: UnmetKind
    # attendance: how many more qualifying attendances are needed
    shortfall: Optional[int] = None
    # training: id of the missing training
    training_id: Optional[int] = None

    def to_dict(self) -> dict:
        data = {"kind": self.kind.value}
        if self.shortfall is not None:
            data["shortfall"] = self.shortfall
        if self.training_id is not None:
            data["trainingId"] = self.training_id
        return data


@dataclass(frozen=True)
class TransitionDecision:
    eligible: bool
    unmet: Tuple[UnmetRequirement, ...] = field(default_factory=tuple)

    @property
    def attendance_met(self) -> bool:
        return not any(u.kind == UnmetKind.ATTENDANCE for u in self.unmet)

    @property
    def missing_training_ids(self) -> List[int]:
        return [u.training_id for u in self.unmet if u.kind == UnmetKind.TRAINING]

    def to_dict(self) -> dict:
        return {"eligible": self.eligible, "unmet": [u.to_dict() for u in self.unmet]}


def attendance_delta(total: int, previous_since_last_rank: Optional[int]) -> int:
    """Attendance accrued since the last rank change, floored at zero."""
    return max(0, total - (previous_since_last_rank or 0))


def evaluate_transition(
    delta: int,
    threshold: Optional[int],
    required_trainings: Iterable[int],
    completed_trainings: Iterable[int],
) -> TransitionDecision:
    """
    Decide whether a user may move to a target rank.

    Eligible when (threshold is None or delta >= threshold) and every required
    training id appears in completed_trainings. Unmet requirements are listed
    attendance first, then trainings in ascending id order.
    """
    unmet: List[UnmetRequirement] = []

    if threshold is not None and delta < threshold:
        unmet.append(UnmetRequirement(kind=UnmetKind.ATTENDANCE, shortfall=threshold - delta))

    completed = set(completed_trainings)
    for training_id in sorted(set(required_trainings)):
        if training_id not in completed:
            unmet.append(UnmetRequirement(kind=UnmetKind.TRAINING, training_id=training_id))

    return TransitionDecision(eligible=not unmet, unmet=tuple(unmet))


def completed_training_ids(records: Iterable, policy: RankPolicy) -> Set[int]:
    """
    Filter training completion records down to the ids that count as completed.

    Each record needs `training_id`, `needs_retraining` and `is_hidden` attributes.
    """
    completed = set()
    for record in records:
        if record.needs_retraining and not policy.count_needs_retraining:
            continue
        if record.is_hidden and not policy.count_hidden:
            continue
        completed.add(record.training_id)
    return completed


def highest_rank_for_attendance(ranks: Iterable, attendance: int):
    """
    Highest rank (by order_index) whose threshold is met by `attendance`.
    A rank with no threshold is always met. Returns None for an empty catalog.
    """
    best = None
    for rank in ranks:
        threshold = rank.attendance_required_since_last_rank
        if threshold is not None and attendance < threshold:
            continue
        if best is None or rank.order_index > best.order_index:
            best = rank
    return best
