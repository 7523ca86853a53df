"""Aggregated contributor statistics."""

from dataclasses import dataclass, field
from typing import Any, Dict, Set


@dataclass
class RepoStats:
    """Commit counters of one author inside one repository."""

    commits: int = 0
    branches: Set[str] = field(default_factory=set)
    commit_dates: Dict[str, int] = field(default_factory=dict)

    def merge(self, other: "RepoStats") -> None:
        self.commits += other.commits
        self.branches |= other.branches
        for day, count in other.commit_dates.items():
            self.commit_dates[day] = self.commit_dates.get(day, 0) + count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commits": self.commits,
            "branches": sorted(self.branches),
            "commitDates": [
                {"date": day, "count": count}
                for day, count in sorted(self.commit_dates.items())
            ],
        }


@dataclass
class UserStats:
    """Commit counters of one author across repositories."""

    total_commits: int = 0
    repositories: Dict[str, RepoStats] = field(default_factory=dict)

    def repo(self, name: str) -> RepoStats:
        if name not in self.repositories:
            self.repositories[name] = RepoStats()
        return self.repositories[name]

    def merge(self, other: "UserStats") -> None:
        self.total_commits += other.total_commits
        for name, repo_stats in other.repositories.items():
            self.repo(name).merge(repo_stats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalCommits": self.total_commits,
            "repositories": {
                name: repo_stats.to_dict()
                for name, repo_stats in sorted(self.repositories.items())
            },
        }
