"""Aggregate delivery statistics over a set of tracking sessions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .enums import TrackingStatus
from .tracking import TrackingSession


@dataclass(frozen=True)
class DeliveryStats:
    total_deliveries: int = 0
    completed_deliveries: int = 0
    cancelled_deliveries: int = 0
    average_delivery_time: Optional[float] = None  # minutes, completed only
    total_issues: int = 0
    on_time_deliveries: int = 0

    @property
    def completion_rate(self) -> float:
        if not self.total_deliveries:
            return 0.0
        return round(self.completed_deliveries / self.total_deliveries * 100, 1)

    @property
    def on_time_rate(self) -> float:
        if not self.completed_deliveries:
            return 0.0
        return round(self.on_time_deliveries / self.completed_deliveries * 100, 1)


def summarize_deliveries(sessions: Iterable[TrackingSession]) -> DeliveryStats:
    total = completed = cancelled = issues = on_time = 0
    durations: list[int] = []

    for session in sessions:
        total += 1
        issues += len(session.issues)
        if session.current_status is TrackingStatus.CANCELLED:
            cancelled += 1
            continue
        if session.current_status is not TrackingStatus.COMPLETED:
            continue

        completed += 1
        if session.total_delivery_time is not None:
            durations.append(session.total_delivery_time)
        if session.compute_metrics().on_time_performance:
            on_time += 1

    return DeliveryStats(
        total_deliveries=total,
        completed_deliveries=completed,
        cancelled_deliveries=cancelled,
        average_delivery_time=round(sum(durations) / len(durations), 1) if durations else None,
        total_issues=issues,
        on_time_deliveries=on_time,
    )
