from pathlib import Path
import os
import tomllib

# Canonical default config location (used by `noteladder init`)
DEFAULT_CONFIG_PATH = "~/.config/noteladder/config.toml"

DEFAULT_REMINDER_TIMES = {"weekly": "Sun 20:00", "monthly": "1 20:00", "yearly": "01-01 20:00"}

_WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _resolve_config_path(path: str | None) -> Path:
    """
    Resolve the configuration file path in priority order:
    1) Explicit path argument (if provided)
    2) NOTELADDER_CONFIG environment variable (if set)
    3) ./config.toml in current working directory
    4) ~/.config/noteladder/config.toml
    Raises FileNotFoundError with guidance if not found.
    """
    candidates: list[Path] = []
    if path:
        candidates.append(Path(path).expanduser())
    env_path = os.getenv("NOTELADDER_CONFIG")
    if env_path:
        candidates.append(Path(env_path).expanduser())
    candidates.append(Path("config.toml").absolute())
    candidates.append(Path(DEFAULT_CONFIG_PATH).expanduser())
    for p in candidates:
        if p.is_file():
            return p
    raise FileNotFoundError(
        "No config.toml found. Set NOTELADDER_CONFIG, place a config.toml in the working directory, "
        "or run 'noteladder init' to create one at ~/.config/noteladder/config.toml."
    )


def parse_weekday(value) -> int:
    """
    Accept 0..6 (Monday=0) or a three-letter day name; return 0..6.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid first_weekday: {value!r}")
    if isinstance(value, int):
        if 0 <= value <= 6:
            return value
        raise ValueError(f"invalid first_weekday: {value!r}")
    name = str(value).strip().lower()[:3]
    if name in _WEEKDAYS:
        return _WEEKDAYS.index(name)
    raise ValueError(f"invalid first_weekday: {value!r}")


class Settings:
    def __init__(self, data: dict):
        self.data_dir    = Path(data.get("data_dir", "~/.local/share/noteladder")).expanduser()
        self.exports_dir = Path(data.get("exports_dir", self.data_dir / "exports")).expanduser()
        self.first_weekday = parse_weekday(data.get("first_weekday", "mon"))
        self.timezone: str | None = data.get("timezone") or None
        # Whether a completed review falls back to in_progress when a revoked
        # decision drops it below its total.
        self.reopen_completed = bool(data.get("reopen_completed", False))
        self.reminder_times = {**DEFAULT_REMINDER_TIMES, **(data.get("reminder_times") or {})}

    @property
    def state_dir(self) -> Path:
        return self.data_dir.expanduser()

    @property
    def db_path(self) -> Path:
        return self.state_dir / "noteladder.db"


def load_settings(path: str | None = None) -> Settings:
    cfg_path = _resolve_config_path(path)
    with open(cfg_path, "rb") as f:
        cfg = tomllib.load(f)
    s = Settings(cfg)
    s.state_dir.mkdir(parents=True, exist_ok=True)
    return s
