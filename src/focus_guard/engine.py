"""
Block decision engine.

Combines block rules and bypasses for a single resource at a single instant
into one verdict plus the instant at which that verdict should be re-checked.
Everything here is a pure function of its arguments.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Union

from focus_guard.schema import ActiveTimer, BlockRule, BypassRule


class Decision(str, Enum):
    BLOCK = "BLOCK"
    ALLOW = "ALLOW"


@dataclass(frozen=True)
class BlockReason:
    rule_id: str


@dataclass(frozen=True)
class BypassReason:
    bypass_id: str
    blocked_by_rule_id: str | None = None


@dataclass(frozen=True)
class NoReason:
    pass


NO_REASON = NoReason()

Reason = Union[BlockReason, BypassReason, NoReason]


@dataclass(frozen=True)
class DecisionResult:
    decision: Decision
    reason: Reason
    next_evaluation_time_millis: int | None = None

    def __post_init__(self):
        if self.decision is Decision.BLOCK:
            assert isinstance(self.reason, BlockReason), "BLOCK decision requires a block reason"
            assert (
                self.next_evaluation_time_millis is not None
            ), "BLOCK decision requires a next evaluation time"
        else:
            assert not isinstance(
                self.reason, BlockReason
            ), "ALLOW decision must not carry a block reason"

    @property
    def is_blocked(self) -> bool:
        return self.decision is Decision.BLOCK


def sort_rules(rules: Iterable[BlockRule]) -> list[BlockRule]:
    """Orders rules by descending priority, then ascending id."""
    return sorted(rules, key=lambda rule: rule.sort_key)


def find_active_bypass(
    resource_id: str, now_ms: int, bypasses: Iterable[BypassRule]
) -> BypassRule | None:
    """First bypass for `resource_id` active at `now_ms`, in snapshot order."""
    return next(
        (b for b in bypasses if b.resource_id == resource_id and b.is_active(now_ms)),
        None,
    )


def find_blocking_rule(
    resource_id: str, now_ms: int, sorted_rules: Iterable[BlockRule]
) -> BlockRule | None:
    return next((r for r in sorted_rules if r.is_blocked(resource_id, now_ms)), None)


def calculate_next_evaluation_time(
    resource_id: str | None, now_ms: int, rules: Iterable[BlockRule]
) -> int | None:
    """
    Earliest instant after `now_ms` at which any applicable rule changes state.

    Args:
        resource_id: Only rules targeting this resource are considered. None
            considers every rule.
        now_ms: Reference instant.
        rules: Rules to scan, in any order.

    Returns:
        The minimum next boundary across the rules, or None if no rule will
        change state again.
    """
    next_time: int | None = None
    for rule in rules:
        if resource_id is not None and resource_id not in rule.target_apps:
            continue
        boundary = rule.window.next_boundary(now_ms)
        if boundary is None:
            continue
        if next_time is None or boundary < next_time:
            next_time = boundary
    return next_time


def evaluate(
    resource_id: str,
    now_ms: int,
    rules: Sequence[BlockRule],
    bypasses: Sequence[BypassRule],
) -> DecisionResult:
    """
    Resolves rules and bypasses for one resource into a verdict.

    An active bypass always wins and reports the rule it overrides, if any.
    Without a bypass, any matching rule blocks until the next rule boundary.
    """
    sorted_rules = sort_rules(rules)
    bypass = find_active_bypass(resource_id, now_ms, bypasses)
    blocking_rule = find_blocking_rule(resource_id, now_ms, sorted_rules)

    if bypass is not None:
        return DecisionResult(
            decision=Decision.ALLOW,
            reason=BypassReason(
                bypass.id, blocking_rule.id if blocking_rule is not None else None
            ),
            next_evaluation_time_millis=bypass.expires_at_millis,
        )

    if blocking_rule is not None:
        return DecisionResult(
            decision=Decision.BLOCK,
            reason=BlockReason(blocking_rule.id),
            next_evaluation_time_millis=calculate_next_evaluation_time(
                resource_id, now_ms, sorted_rules
            ),
        )

    return DecisionResult(decision=Decision.ALLOW, reason=NO_REASON)


def next_snapshot_evaluation(
    rules: Iterable[BlockRule], bypasses: Iterable[BypassRule], now_ms: int
) -> int | None:
    """
    When does any rule or bypass in the snapshot next change state?

    Used to arm the wake-up timer: rule boundaries for every resource, the
    start of bypasses granted for the future and the expiry of active ones.
    """
    candidates: list[int] = []
    rule_boundary = calculate_next_evaluation_time(None, now_ms, rules)
    if rule_boundary is not None:
        candidates.append(rule_boundary)
    for bypass in bypasses:
        if now_ms < bypass.granted_at_millis:
            candidates.append(bypass.granted_at_millis)
        elif bypass.is_active(now_ms):
            candidates.append(bypass.expires_at_millis)
    return min(candidates, default=None)


def blocked_resources(
    now_ms: int, rules: Iterable[BlockRule], timers: Iterable[ActiveTimer]
) -> frozenset[str]:
    """Resources blocked right now by an active rule window or an active timer."""
    blocked: set[str] = set()
    for rule in rules:
        if rule.window.evaluate(now_ms):
            blocked.update(rule.target_apps)
    for timer in timers:
        if timer.is_active(now_ms):
            blocked.update(timer.blocked_packages)
    return frozenset(blocked)
