"""Sub-ledger of problems reported during a delivery."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Iterable, Iterator, Optional

from .enums import IssueImpact, IssueSeverity, IssueType
from .exceptions import IssueNotFound


@dataclass(frozen=True)
class Issue:
    type: IssueType
    description: str
    reported_at: datetime
    severity: IssueSeverity = IssueSeverity.MEDIUM
    reported_by: Optional[int] = None
    impact_on_delivery: IssueImpact = IssueImpact.MINOR_DELAY
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None


class IssueTracker:
    """
    Ordered issues of one tracking session.

    Issues are never removed; resolving one swaps in a resolved copy at the
    same position so indexes stay stable for callers.
    """

    def __init__(self, issues: Iterable[Issue] = ()):
        self._issues: list[Issue] = list(issues)

    def report(
        self,
        issue_type: IssueType | str,
        description: str,
        reported_at: datetime,
        severity: IssueSeverity | str | None = None,
        reported_by: Optional[int] = None,
        impact_on_delivery: IssueImpact | str | None = None,
    ) -> Issue:
        if not description:
            raise ValueError("Issue description is required")
        issue = Issue(
            type=IssueType(issue_type),
            description=description,
            reported_at=reported_at,
            severity=IssueSeverity(severity) if severity else IssueSeverity.MEDIUM,
            reported_by=reported_by,
            impact_on_delivery=(
                IssueImpact(impact_on_delivery)
                if impact_on_delivery
                else IssueImpact.MINOR_DELAY
            ),
        )
        self._issues.append(issue)
        return issue

    def resolve(self, index: int, resolved_at: datetime, resolution: str | None = None) -> Issue:
        if not 0 <= index < len(self._issues):
            raise IssueNotFound(f"Issue {index} not found")
        issue = self._issues[index]
        if issue.resolved:
            raise ValueError(f"Issue {index} is already resolved")
        resolved = replace(issue, resolved=True, resolved_at=resolved_at, resolution=resolution)
        self._issues[index] = resolved
        return resolved

    @property
    def active(self) -> list[Issue]:
        return [i for i in self._issues if not i.resolved]

    @property
    def has_active(self) -> bool:
        return any(not i.resolved for i in self._issues)

    def to_list(self) -> list[Issue]:
        return list(self._issues)

    def __len__(self) -> int:
        return len(self._issues)

    def __iter__(self) -> Iterator[Issue]:
        return iter(list(self._issues))

    def __getitem__(self, index: int) -> Issue:
        return self._issues[index]
