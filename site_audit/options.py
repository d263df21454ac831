"""Typed audit configuration, status enums and issue summaries."""

import enum
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Iterable, Mapping, Optional

from site_audit.errors import InvalidOptions

DEFAULT_USER_AGENT = "SEO SaaS Auditor/1.0"


class AuditStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (AuditStatus.COMPLETED, AuditStatus.FAILED)


class Frequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class JobType:
    """Queue job-type tags."""

    RUN_AUDIT = "run-audit"
    SCHEDULE_AUDIT = "schedule-audit"
    GENERATE_REPORT = "generate-report"
    CHECK_SCHEDULES = "check-audit-schedules"


# camelCase keys sent by the web client -> field names
_ALIASES = {
    "maxPages": "max_pages",
    "maxDepth": "max_depth",
    "includeSitemap": "include_sitemap",
    "includeRobots": "include_robots",
    "crawlSingleUrl": "crawl_single_url",
    "followPatterns": "follow_patterns",
    "ignorePatterns": "ignore_patterns",
    "userAgent": "user_agent",
    "useJavascript": "use_javascript",
}

_BOOL_FIELDS = ("include_sitemap", "include_robots", "crawl_single_url", "use_javascript")


def _coerce_patterns(name: str, value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, Iterable):
        raise InvalidOptions(f"{name} must be a list of patterns")
    patterns = []
    for item in value:
        # Pattern lists may hold {"id": ..., "pattern": "/blog/*"} objects.
        if isinstance(item, Mapping):
            item = item.get("pattern")
        if not isinstance(item, str) or not item.strip():
            raise InvalidOptions(f"{name} contains an invalid pattern: {item!r}")
        patterns.append(item.strip())
    return tuple(patterns)


@dataclass(frozen=True)
class AuditOptions:
    """Crawl configuration stored on every audit and schedule."""

    max_pages: int = 100
    max_depth: int = 3
    include_sitemap: bool = True
    include_robots: bool = True
    crawl_single_url: bool = False
    follow_patterns: tuple[str, ...] = ()
    ignore_patterns: tuple[str, ...] = ()
    user_agent: str = DEFAULT_USER_AGENT
    use_javascript: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.max_pages, bool) or not isinstance(self.max_pages, int) or self.max_pages < 1:
            raise InvalidOptions(f"max_pages must be a positive integer, got {self.max_pages!r}")
        if isinstance(self.max_depth, bool) or not isinstance(self.max_depth, int) or self.max_depth < 0:
            raise InvalidOptions(f"max_depth must be a non-negative integer, got {self.max_depth!r}")
        for name in _BOOL_FIELDS:
            if not isinstance(getattr(self, name), bool):
                raise InvalidOptions(f"{name} must be a boolean")
        if not isinstance(self.user_agent, str) or not self.user_agent.strip():
            raise InvalidOptions("user_agent must be a non-empty string")
        object.__setattr__(self, "follow_patterns", _coerce_patterns("follow_patterns", self.follow_patterns))
        object.__setattr__(self, "ignore_patterns", _coerce_patterns("ignore_patterns", self.ignore_patterns))

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}

    @staticmethod
    def normalise_keys(data: Mapping[str, Any]) -> dict[str, Any]:
        """Map camelCase aliases onto field names."""
        return {_ALIASES.get(key, key): value for key, value in data.items()}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "AuditOptions":
        """Build validated options from a JSON-like mapping.

        Missing keys take their defaults, ``None`` values are treated as
        missing and unknown keys are rejected.
        """
        if data is None:
            return cls()
        if isinstance(data, AuditOptions):
            return data
        if not isinstance(data, Mapping):
            raise InvalidOptions(f"options must be a mapping, got {type(data).__name__}")
        normalised = cls.normalise_keys(data)
        unknown = set(normalised) - cls.field_names()
        if unknown:
            raise InvalidOptions(f"Unknown audit options: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in normalised.items() if v is not None})

    def merge(self, changes: Mapping[str, Any]) -> "AuditOptions":
        """Return a copy with *changes* applied and validated."""
        normalised = self.normalise_keys(changes)
        unknown = set(normalised) - self.field_names()
        if unknown:
            raise InvalidOptions(f"Unknown audit options: {', '.join(sorted(unknown))}")
        return replace(self, **normalised)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["follow_patterns"] = list(self.follow_patterns)
        data["ignore_patterns"] = list(self.ignore_patterns)
        return data


@dataclass
class IssuesSummary:
    """Issue counts by severity."""

    critical: int = 0
    warning: int = 0
    info: int = 0
    total: int = 0

    @classmethod
    def from_issues(cls, issues: Iterable[Mapping[str, Any]]) -> "IssuesSummary":
        summary = cls()
        for issue in issues:
            severity = str(issue.get("severity", "info")).lower()
            if severity in ("critical", "error", "error_severity"):
                summary.critical += 1
            elif severity == "warning":
                summary.warning += 1
            else:
                summary.info += 1
            summary.total += 1
        return summary

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def empty_issues_summary() -> dict[str, int]:
    return IssuesSummary().to_dict()


