# config.py
from dataclasses import dataclass, fields

# Keys read from the store's config table (see `importctl config set`)
CONFIG_KEYS = {
    "poll_interval": float,
    "max_retries": int,
    "concurrent_jobs": int,
}


@dataclass(frozen=True)
class SchedulerConfig:
    poll_interval: float = 5.0   # seconds between poll ticks
    max_retries: int = 3         # failed attempts before a job is given up
    concurrent_jobs: int = 2     # ceiling on jobs executing at once

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval}")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.concurrent_jobs < 1:
            raise ValueError(f"concurrent_jobs must be at least 1, got {self.concurrent_jobs}")

    @classmethod
    def from_storage(cls, db, **overrides):
        """
        Build a config from the store's config table.
        Explicit overrides (e.g. CLI options) win; None means "not given".
        """
        values = {}
        for f in fields(cls):
            if overrides.get(f.name) is not None:
                values[f.name] = CONFIG_KEYS[f.name](overrides[f.name])
                continue
            raw = db.get_config(f.name)
            if raw is None:
                continue
            try:
                values[f.name] = CONFIG_KEYS[f.name](raw)
            except ValueError as e:
                raise ValueError(f"Invalid config value for '{f.name}': {raw!r}") from e
        return cls(**values)
