from pathlib import Path

from platformdirs import user_data_dir, user_log_dir

APP_DIR_NAME = "focus_guard"


def get_project_root() -> Path | None:
    """Returns the project root when running from a dev checkout, else None."""
    # Both markers are required so an installed copy that happens to sit four
    # levels below some unrelated pyproject.toml is not mistaken for a checkout.
    potential_root = Path(__file__).resolve().parent.parent.parent.parent
    if (potential_root / "pyproject.toml").exists() and (potential_root / ".git").exists():
        return potential_root
    return None


def get_default_data_dir() -> Path:
    """Where the block store, config.json and daemon state live."""
    root = get_project_root()
    if root:
        return root / "outputs"
    return Path(user_data_dir(appname=APP_DIR_NAME))


def get_default_log_dir() -> Path:
    root = get_project_root()
    if root:
        return root / "outputs"
    return Path(user_log_dir(appname=APP_DIR_NAME))
