"""Free-tier usage limits.

These mirror the constraints enforced by the backend, so the caller can
warn before a write the server would reject.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class UsageLimits:
    clubs_per_user: int = 1
    participants_per_club: int = 30
    sessions_per_club: int = 10
    club_memberships_per_user: int = 5


DEFAULT_LIMITS = UsageLimits()

WARNING_RATIO = 0.8


@dataclass
class ClubUsage:
    """Counts for one club."""

    participants: int = 0
    sessions: int = 0


def has_reached_club_limit(clubs_owned: int, limits: UsageLimits = DEFAULT_LIMITS) -> bool:
    return clubs_owned >= limits.clubs_per_user


def has_reached_participants_limit(count: int, limits: UsageLimits = DEFAULT_LIMITS) -> bool:
    return count >= limits.participants_per_club


def has_reached_sessions_limit(count: int, limits: UsageLimits = DEFAULT_LIMITS) -> bool:
    return count >= limits.sessions_per_club


def usage_percentage(current: int, limit: int) -> float:
    """Share of a limit in use, capped at 100."""
    if limit <= 0:
        return 100.0
    return min(current / limit * 100, 100.0)


def should_warn(current: int, limit: int) -> bool:
    """True once usage reaches 80% of the limit."""
    return current >= limit * WARNING_RATIO
