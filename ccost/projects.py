"""Project summaries for the `projects` command."""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

from ccost.usage import ProjectUsage

PROJECT_SORT_KEYS = ("name", "cost", "tokens")


@dataclass
class ProjectSummary:
    project_name: str
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    cost_usd: float
    message_count: int
    model_count: int

    @classmethod
    def from_usage(cls, usage: ProjectUsage) -> "ProjectSummary":
        return cls(
            project_name=usage.project_name,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_creation_tokens=usage.cache_creation_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            cost_usd=usage.cost_usd,
            message_count=usage.message_count,
            model_count=len(usage.models),
        )

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["total_tokens"] = self.total_tokens
        return d


def sort_projects(summaries: Iterable[ProjectSummary], sort_by: str = "name") -> List[ProjectSummary]:
    """name ascending; cost and tokens descending with ties by name."""
    if sort_by == "name":
        return sorted(summaries, key=lambda s: s.project_name)
    if sort_by == "cost":
        return sorted(summaries, key=lambda s: (-s.cost_usd, s.project_name))
    if sort_by == "tokens":
        return sorted(summaries, key=lambda s: (-s.total_tokens, s.project_name))
    raise ValueError(f"Unknown sort key: {sort_by}")


def summarize_projects(projects: Iterable[ProjectUsage], sort_by: str = "name") -> List[ProjectSummary]:
    return sort_projects((ProjectSummary.from_usage(p) for p in projects), sort_by)


@dataclass
class ProjectStatistics:
    total_projects: int = 0
    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_messages: int = 0
    total_models: int = 0
    highest_cost_project: Optional[str] = None
    most_active_project: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def project_statistics(summaries: List[ProjectSummary]) -> ProjectStatistics:
    if not summaries:
        return ProjectStatistics()
    highest = min(summaries, key=lambda s: (-s.cost_usd, s.project_name))
    busiest = min(summaries, key=lambda s: (-s.message_count, s.project_name))
    return ProjectStatistics(
        total_projects=len(summaries),
        total_cost=sum(s.cost_usd for s in summaries),
        total_input_tokens=sum(s.input_tokens for s in summaries),
        total_output_tokens=sum(s.output_tokens for s in summaries),
        total_messages=sum(s.message_count for s in summaries),
        total_models=sum(s.model_count for s in summaries),
        highest_cost_project=highest.project_name,
        most_active_project=busiest.project_name,
    )
