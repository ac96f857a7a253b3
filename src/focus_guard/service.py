"""
Command surface shared by the CLI and the daemon.

Every mutating operation reports success as a plain bool, so the boundary
layer decides how to present a refusal.
"""

import json
import uuid
from collections.abc import Iterable
from typing import Any

from loguru import logger
from pydantic import ValidationError

from focus_guard import engine
from focus_guard.repository import BlockRepository
from focus_guard.schema import ActiveTimer, BlockRule, BypassRule, TimerMode
from focus_guard.utils.time import Clock, now_millis


def parse_rule_batch(text: str) -> list[BlockRule] | None:
    """
    Parses a JSON array of flat rule documents.

    Returns None when the document itself is not a JSON array. Individual
    entries that fail validation are logged and skipped; the rest are kept.
    A missing `id` gets a fresh uuid4 and a missing `priority` defaults to 0.
    """
    try:
        items = json.loads(text)
    except (TypeError, ValueError) as e:
        logger.warning(f"Rule batch is not valid JSON: {e}")
        return None
    if not isinstance(items, list):
        logger.warning("Rule batch must be a JSON array")
        return None

    rules = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            logger.warning(f"Skipping rule #{index}: not an object")
            continue
        item = {"id": str(uuid.uuid4()), **item}
        try:
            rules.append(BlockRule.from_wire(item))
        except (ValidationError, TypeError, ValueError) as e:
            logger.warning(f"Skipping rule #{index} ({item.get('id')}): {e}")
    return rules


class BlockerService:
    def __init__(
        self,
        repository: BlockRepository,
        clock: Clock = now_millis,
        bypass_duration_ms: int = 2 * 60 * 1000,
        max_timer_minutes: int | None = None,
    ):
        self.repository = repository
        self.clock = clock
        self.bypass_duration_ms = bypass_duration_ms
        self.max_timer_minutes = max_timer_minutes

    @classmethod
    def from_settings(cls, settings, repository: BlockRepository, clock: Clock = now_millis):
        return cls(
            repository,
            clock,
            bypass_duration_ms=settings.bypass_duration_ms,
            max_timer_minutes=settings.max_timer_minutes,
        )

    # Rules

    def is_locked(self, now_ms: int | None = None) -> bool:
        """True while any rule window is open or any bypass is running."""
        now_ms = self.clock() if now_ms is None else now_ms
        snapshot = self.repository.snapshot()
        return any(rule.window.evaluate(now_ms) for rule in snapshot.block_rules) or any(
            b.is_active(now_ms) for b in snapshot.bypasses
        )

    def save_block_rules(self, text: str) -> bool:
        """Replaces the rule set from a JSON batch. Refused while a block is in force."""
        rules = parse_rule_batch(text)
        if rules is None:
            return False
        with self.repository.locked():
            if self.is_locked():
                logger.warning("Refusing to replace rules while a block or bypass is active")
                return False
            self.repository.save_block_rules(rules)
        return True

    def add_rule(self, rule: BlockRule) -> bool:
        with self.repository.locked():
            rules = self.repository.get_all_block_rules()
            if any(r.id == rule.id for r in rules):
                logger.warning(f"Rule {rule.id} already exists")
                return False
            self.repository.save_block_rules(rules + (rule,))
        logger.info(f"Added rule {rule.id} ({rule.window.type}) for {sorted(rule.target_apps)}")
        return True

    def remove_rule(self, rule_id: str) -> bool:
        """Removes a rule unless its window is open right now."""
        now_ms = self.clock()
        with self.repository.locked():
            rules = self.repository.get_all_block_rules()
            target = next((r for r in rules if r.id == rule_id), None)
            if target is None:
                return False
            if target.window.evaluate(now_ms):
                logger.warning(f"Refusing to remove rule {rule_id} while it is blocking")
                return False
            self.repository.save_block_rules(r for r in rules if r.id != rule_id)
        logger.info(f"Removed rule {rule_id}")
        return True

    def list_rules(self) -> list[BlockRule]:
        return engine.sort_rules(self.repository.get_all_block_rules())

    def check(self, resource_id: str) -> engine.DecisionResult:
        snapshot = self.repository.snapshot()
        return engine.evaluate(resource_id, self.clock(), snapshot.block_rules, snapshot.bypasses)

    # Bypass

    def request_emergency_bypass(self, resource_id: str) -> bool:
        """
        Grants a short bypass for one resource, or `*` for every timer.

        Only one bypass may run at a time. Timers blocking the resource are
        paused for the bypass duration.
        """
        if not resource_id or not resource_id.strip():
            return False

        now_ms = self.clock()
        with self.repository.locked():
            self.repository.clear_expired_bypasses(now_ms)
            self.repository.clear_expired_timers(now_ms)

            if any(b.is_active(now_ms) for b in self.repository.get_all_bypasses()):
                logger.warning("A bypass is already active")
                return False

            bypass = BypassRule(
                id=str(uuid.uuid4()),
                resource_id=resource_id,
                granted_at_millis=now_ms,
                duration_millis=self.bypass_duration_ms,
            )
            self.repository.add_bypass(bypass)
            self.repository.pause_timers_for(resource_id, bypass.expires_at_millis, now_ms)
        logger.info(f"Emergency bypass granted for {resource_id} until {bypass.expires_at_millis}")
        return True

    # Timers

    def _start_timer(self, minutes: int, packages: Iterable[str], mode: TimerMode) -> bool:
        if minutes <= 0:
            return False
        if self.max_timer_minutes is not None and minutes > self.max_timer_minutes:
            logger.warning(
                f"Timer of {minutes}m exceeds the maximum of {self.max_timer_minutes}m"
            )
            return False
        now_ms = self.clock()
        timer = ActiveTimer(
            id=str(uuid.uuid4()),
            start_time_millis=now_ms,
            duration_minutes=minutes,
            blocked_packages=tuple(packages),
            mode=mode,
        )
        saved = self.repository.save_active_timer(timer, now_ms)
        if saved:
            logger.info(f"Started {mode.value} timer {timer.id} for {minutes}m")
        return saved

    def start_focus_timer(self, minutes: int, packages: Iterable[str]) -> bool:
        packages = [p for p in packages if p]
        if not packages:
            return False
        return self._start_timer(minutes, packages, TimerMode.FOCUS)

    def start_pomodoro_focus(self, minutes: int) -> bool:
        return self._start_timer(minutes, (), TimerMode.POMODORO_FOCUS)

    def start_pomodoro_break(self, minutes: int) -> bool:
        return self._start_timer(minutes, (), TimerMode.POMODORO_BREAK)

    def get_active_timers(self) -> list[dict[str, Any]]:
        """Live timers, paused ones included, with their remaining seconds."""
        now_ms = self.clock()
        self.repository.clear_expired_timers(now_ms)
        return [
            {
                **timer.to_wire(),
                "remainingSeconds": timer.get_remaining_seconds(now_ms),
                "paused": timer.is_paused(now_ms),
            }
            for timer in self.repository.get_all_timers()
        ]

    # Status

    def get_block_status(self) -> dict[str, Any]:
        now_ms = self.clock()
        self.repository.clear_expired_bypasses(now_ms)
        self.repository.clear_expired_timers(now_ms)

        snapshot = self.repository.snapshot()
        timers = [t for t in snapshot.active_timers if t.is_active(now_ms)]
        blocked = engine.blocked_resources(now_ms, snapshot.block_rules, timers)
        rule_active = any(rule.window.evaluate(now_ms) for rule in snapshot.block_rules)

        return {
            "isBlockActive": rule_active or bool(timers),
            "blockedApps": sorted(blocked),
            "bypassActive": any(b.is_active(now_ms) for b in snapshot.bypasses),
        }
