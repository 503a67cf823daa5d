"""Anonymous interaction quota for the movie assistant."""

from __future__ import annotations

from enum import Enum


class Admission(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class InteractionGovernor:
    """Caps model calls for anonymous viewers; signed-in users are unlimited.

    The governor only decides. Callers bump their counter after a model call
    succeeds, so failed calls never consume quota.
    """

    def __init__(self, limit: int = 5):
        if limit < 0:
            raise ValueError("limit must not be negative")
        self.limit = limit

    def admit(self, is_authenticated: bool, count_so_far: int) -> Admission:
        if not is_authenticated and count_so_far >= self.limit:
            return Admission.DENY
        return Admission.ALLOW

    def remaining(self, is_authenticated: bool, count_so_far: int) -> int | None:
        if is_authenticated:
            return None
        return max(self.limit - count_so_far, 0)
