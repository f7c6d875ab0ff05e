from __future__ import annotations

from dataclasses import dataclass
import os

from judging_node.db.session import database_url

DEFAULT_CATEGORIES = ("personality", "walking", "attire", "language", "overall")


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("true", "1", "yes")


@dataclass(frozen=True)
class RuntimeSettings:
    countdown_seconds: int
    tick_interval_seconds: float
    api_host: str
    api_port: int
    live_notify: bool

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            countdown_seconds=int(os.getenv("COUNTDOWN_SECONDS", "10")),
            tick_interval_seconds=float(os.getenv("COUNTDOWN_TICK_SECONDS", "1.0")),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=int(os.getenv("API_PORT", "8000")),
            live_notify=_flag("LIVE_NOTIFY", database_url().startswith("postgresql")),
        )


@dataclass(frozen=True)
class ScoringSettings:
    categories: tuple[str, ...] = DEFAULT_CATEGORIES
    min_score: int = 1
    max_score: int = 15

    @classmethod
    def from_env(cls) -> "ScoringSettings":
        raw = os.getenv("SCORE_CATEGORIES", "").strip()
        categories = tuple(c.strip() for c in raw.split(",") if c.strip()) if raw else DEFAULT_CATEGORIES
        return cls(
            categories=categories,
            min_score=int(os.getenv("SCORE_MIN", "1")),
            max_score=int(os.getenv("SCORE_MAX", "15")),
        )
