from __future__ import annotations

from typing import Iterable


class FailureDomainStats:
    """Placement usage per failure domain.

    Only advises where the next replica should go; it never creates replicas.
    Ties are broken by list order: domains passed to the constructor first, in
    the order given, then domains first seen through `add`.
    """

    def __init__(self, domains: Iterable[str] = ()) -> None:
        self.list: list[str] = []
        self.usage: dict[str, int] = {}
        for fd in domains:
            if fd not in self.usage:
                self.list.append(fd)
                self.usage[fd] = 0

    def add(self, fd: str) -> None:
        if fd not in self.usage:
            self.list.append(fd)
            self.usage[fd] = 0
        self.usage[fd] += 1

    def select(self) -> str:
        if not self.list:
            return ""
        # min() keeps the first of equally used domains.
        return min(self.list, key=lambda fd: self.usage[fd])


def stats_for(domains: Iterable[str], used: Iterable[str | None]) -> FailureDomainStats:
    """Build usage stats from the offered domains and the domains replicas already occupy."""
    stats = FailureDomainStats(domains)
    for fd in used:
        if fd:
            stats.add(fd)
    return stats
