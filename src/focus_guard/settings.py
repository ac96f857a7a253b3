import json
from pathlib import Path

from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from focus_guard.utils.paths import get_default_data_dir, get_default_log_dir


class Settings(BaseSettings):
    """Application-wide settings managed via .env and config.json."""

    app_name: str = "focus_guard"
    debug: bool = Field(default=False, description="Master toggle for verbose logging")

    # Paths
    data_dir: Path = Field(default_factory=get_default_data_dir)
    log_dir: Path = Field(default_factory=get_default_log_dir)

    def model_post_init(self, __context):
        self.data_dir = self.data_dir.resolve()
        self.log_dir = self.log_dir.resolve()

    @property
    def store_file(self) -> Path:
        return self.data_dir / "block_store.json"

    @property
    def state_file(self) -> Path:
        return self.data_dir / "state.json"

    @property
    def config_file(self) -> Path:
        return self.data_dir / "config.json"

    # Enforcement timing (milliseconds)
    cooldown_ms: int = Field(default=500, ge=0)
    home_delay_ms: int = Field(default=200, ge=0)
    kill_delay_ms: int = Field(default=500, ge=0)
    min_kill_interval_ms: int = Field(default=2000, ge=0)
    overlay_timeout_ms: int = Field(default=2000, gt=0)

    # Bypass and timers
    bypass_duration_ms: int = Field(default=2 * 60 * 1000, gt=0, le=24 * 60 * 60 * 1000)
    max_timer_minutes: int = Field(
        default=240, gt=0, description="Guardrail against accidental day-long timers"
    )

    # Daemon loop
    monitor_interval_seconds: int = Field(default=30, gt=0)
    poll_interval_ms: int = Field(default=250, gt=0)

    # Foreground classification
    home_resources: list[str] = ["gnome-shell", "plasmashell", "xfdesktop", "nautilus-desktop"]
    ignored_resources: list[str] = [
        "focusguard",
        "focus_guard",
        "gnome-screensaver",
        "xfce4-panel",
        "lxpanel",
    ]

    # Overlay text
    overlay_message: str = "This app is blocked right now."
    pomodoro_message: str = "Pomodoro timer is running"
    show_popup: bool = Field(
        default=False, description="Also open a full-screen terminal banner on block"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FOCUS_GUARD_",
        extra="ignore",
        validate_assignment=True,
    )

    def save(self):
        """Persist the tunables to config.json; paths stay environment-driven."""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        payload = self.model_dump(mode="json", exclude={"data_dir", "log_dir"})
        self.config_file.write_text(json.dumps(payload, indent=4))


_config_cache: tuple[float, Settings] | None = None


def load_settings() -> Settings:
    """Environment settings overlaid with config.json, cached on its mtime."""
    global _config_cache

    base = Settings()
    try:
        mtime = base.config_file.stat().st_mtime
    except FileNotFoundError:
        _config_cache = None
        return base

    if _config_cache is not None and _config_cache[0] == mtime:
        return _config_cache[1]

    try:
        overrides = json.loads(base.config_file.read_text())
        merged = Settings(**{**base.model_dump(), **overrides})
    except (OSError, ValueError, TypeError) as e:
        logger.warning(f"Ignoring unreadable {base.config_file}: {e}")
        return base

    _config_cache = (mtime, merged)
    return merged


settings = load_settings()
