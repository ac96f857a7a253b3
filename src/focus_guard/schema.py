from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from focus_guard.temporal import (
    DAY_MILLIS,
    MINUTE_MILLIS,
    clock_millis,
    daily_active,
    next_daily_boundary,
    next_one_time_boundary,
    next_weekday_boundary,
    one_time_active,
    weekday_active,
)

# Python attributes are snake_case, the persisted document is camelCase.
WIRE_CONFIG = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

DEFAULT_BYPASS_MILLIS = 2 * MINUTE_MILLIS
MAX_BYPASS_MILLIS = DAY_MILLIS


def _not_blank(value: str, what: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{what} must not be blank")
    return value


class OneTimeWindow(BaseModel):
    """An absolute [start, end) range in epoch milliseconds."""

    model_config = WIRE_CONFIG

    type: Literal["ONE_TIME"] = "ONE_TIME"
    start_time_millis: int
    end_time_millis: int

    @model_validator(mode="after")
    def _check_range(self):
        if self.start_time_millis >= self.end_time_millis:
            raise ValueError("Start time must be before end time")
        return self

    def evaluate(self, now_ms: int) -> bool:
        return one_time_active(now_ms, self.start_time_millis, self.end_time_millis)

    def next_boundary(self, now_ms: int) -> int | None:
        return next_one_time_boundary(now_ms, self.start_time_millis, self.end_time_millis)


class DailyWindow(BaseModel):
    """A wall-clock window repeating every day, wrapping past midnight when start > end."""

    model_config = WIRE_CONFIG

    type: Literal["DAILY"] = "DAILY"
    start_hour: int = Field(ge=0, le=23)
    start_minute: int = Field(ge=0, le=59)
    end_hour: int = Field(ge=0, le=23)
    end_minute: int = Field(ge=0, le=59)
    timezone_offset_millis: int = 0

    @property
    def start_millis(self) -> int:
        return clock_millis(self.start_hour, self.start_minute)

    @property
    def end_millis(self) -> int:
        return clock_millis(self.end_hour, self.end_minute)

    def evaluate(self, now_ms: int) -> bool:
        return daily_active(
            now_ms, self.start_millis, self.end_millis, self.timezone_offset_millis
        )

    def next_boundary(self, now_ms: int) -> int | None:
        return next_daily_boundary(
            now_ms, self.start_millis, self.end_millis, self.timezone_offset_millis
        )


class WeekdayWindow(BaseModel):
    """A daily window that only applies on the days set in `weekday_mask`."""

    model_config = WIRE_CONFIG

    type: Literal["WEEKDAY"] = "WEEKDAY"
    weekday_mask: int = Field(ge=1, le=127)
    start_hour: int = Field(ge=0, le=23)
    start_minute: int = Field(ge=0, le=59)
    end_hour: int = Field(ge=0, le=23)
    end_minute: int = Field(ge=0, le=59)
    timezone_offset_millis: int = 0

    @property
    def start_millis(self) -> int:
        return clock_millis(self.start_hour, self.start_minute)

    @property
    def end_millis(self) -> int:
        return clock_millis(self.end_hour, self.end_minute)

    def evaluate(self, now_ms: int) -> bool:
        return weekday_active(
            now_ms,
            self.weekday_mask,
            self.start_millis,
            self.end_millis,
            self.timezone_offset_millis,
        )

    def next_boundary(self, now_ms: int) -> int | None:
        return next_weekday_boundary(
            now_ms,
            self.weekday_mask,
            self.start_millis,
            self.end_millis,
            self.timezone_offset_millis,
        )


RuleWindow = Annotated[
    Union[OneTimeWindow, DailyWindow, WeekdayWindow], Field(discriminator="type")
]


class BlockRule(BaseModel):
    """A prioritized time window over a set of applications."""

    model_config = WIRE_CONFIG

    id: str
    target_apps: frozenset[str]
    window: RuleWindow
    priority: int = Field(default=0, ge=0)

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        return _not_blank(value, "Rule ID")

    @field_validator("target_apps")
    @classmethod
    def _check_targets(cls, value: frozenset[str]) -> frozenset[str]:
        if not value:
            raise ValueError("Target apps set must not be empty")
        return value

    @property
    def sort_key(self) -> tuple[int, str]:
        """Higher priority first, ties broken by ascending id."""
        return (-self.priority, self.id)

    def is_blocked(self, resource_id: str, now_ms: int) -> bool:
        if resource_id not in self.target_apps:
            return False
        return self.window.evaluate(now_ms)

    def to_wire(self) -> dict[str, Any]:
        """Flat document form: rule fields and window fields side by side."""
        return {
            "id": self.id,
            "targetApps": sorted(self.target_apps),
            "priority": self.priority,
            **self.window.model_dump(mode="json", by_alias=True),
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "BlockRule":
        # The window model picks its own fields out of the flat document.
        return cls(
            id=data.get("id"),
            target_apps=data.get("targetApps"),
            priority=data.get("priority", 0),
            window=data,
        )


class BypassRule(BaseModel):
    """A time-bounded unconditional allow for one application."""

    model_config = WIRE_CONFIG

    id: str
    resource_id: str
    granted_at_millis: int = Field(ge=0)
    duration_millis: int = Field(default=DEFAULT_BYPASS_MILLIS, gt=0, le=MAX_BYPASS_MILLIS)

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        return _not_blank(value, "Bypass ID")

    @field_validator("resource_id")
    @classmethod
    def _check_resource(cls, value: str) -> str:
        return _not_blank(value, "Resource ID")

    @property
    def expires_at_millis(self) -> int:
        return self.granted_at_millis + self.duration_millis

    def is_active(self, now_ms: int) -> bool:
        return self.granted_at_millis <= now_ms < self.expires_at_millis

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at_millis


class TimerMode(str, Enum):
    FOCUS = "FOCUS"
    POMODORO_FOCUS = "POMODORO_FOCUS"
    POMODORO_BREAK = "POMODORO_BREAK"


POMODORO_MODES = frozenset({TimerMode.POMODORO_FOCUS, TimerMode.POMODORO_BREAK})


class ActiveTimer(BaseModel):
    """A countdown that hard-blocks its packages until it ends or is consumed."""

    model_config = WIRE_CONFIG

    id: str
    start_time_millis: int = Field(ge=0)
    duration_minutes: int = Field(gt=0)
    blocked_packages: tuple[str, ...] = ()
    mode: TimerMode = TimerMode.FOCUS
    paused_until_millis: int | None = None

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        return _not_blank(value, "Timer ID")

    @field_validator("mode", mode="before")
    @classmethod
    def _lenient_mode(cls, value: Any) -> Any:
        if isinstance(value, TimerMode):
            return value
        try:
            return TimerMode(str(value))
        except ValueError:
            return TimerMode.FOCUS

    @property
    def duration_millis(self) -> int:
        return self.duration_minutes * MINUTE_MILLIS

    @property
    def end_time_millis(self) -> int:
        return self.start_time_millis + self.duration_millis

    def get_remaining_seconds(self, now_ms: int) -> int:
        return max(0, (self.end_time_millis - now_ms) // 1000)

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.end_time_millis

    def is_paused(self, now_ms: int) -> bool:
        return self.paused_until_millis is not None and now_ms < self.paused_until_millis

    def is_active(self, now_ms: int) -> bool:
        if self.is_paused(now_ms):
            return False
        return self.start_time_millis <= now_ms < self.end_time_millis

    def paused_until(self, until_ms: int) -> "ActiveTimer":
        """Returns a copy paused until `until_ms`; the end time is unchanged."""
        return self.model_copy(update={"paused_until_millis": until_ms})

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class BlockSnapshot(BaseModel):
    """The whole persisted state: rules, bypasses and timers."""

    model_config = WIRE_CONFIG

    block_rules: tuple[BlockRule, ...] = ()
    bypasses: tuple[BypassRule, ...] = ()
    active_timers: tuple[ActiveTimer, ...] = ()

    def replace(self, **changes) -> "BlockSnapshot":
        data = {
            "block_rules": self.block_rules,
            "bypasses": self.bypasses,
            "active_timers": self.active_timers,
        }
        data.update(changes)
        return BlockSnapshot(**data)

    def to_wire(self) -> dict[str, Any]:
        return {
            "blockRules": [rule.to_wire() for rule in self.block_rules],
            "bypasses": [b.model_dump(mode="json", by_alias=True) for b in self.bypasses],
            "activeTimers": [timer.to_wire() for timer in self.active_timers],
        }

    @classmethod
    def from_wire(cls, document: Any) -> "BlockSnapshot":
        """
        Parses a persisted document.

        `blockRules` and `bypasses` are required; a missing `activeTimers`
        array is read as empty for files written before timers existed.
        """
        if not isinstance(document, dict):
            raise ValueError("Snapshot root must be an object")
        rules = [BlockRule.from_wire(item) for item in document["blockRules"]]
        bypasses = [BypassRule.model_validate(item) for item in document["bypasses"]]
        timers = [
            ActiveTimer.model_validate(item)
            for item in document.get("activeTimers") or []
        ]
        return cls(block_rules=rules, bypasses=bypasses, active_timers=timers)
