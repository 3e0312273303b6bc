import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


BATCH_POLICIES = ("continue", "atomic")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass
class Settings:
    """
    Runtime settings, read from the environment (and `.env` via python-dotenv,
    which main.py loads before anything else).
    """
    data_dir: Path = field(default_factory=lambda: Path("data"))
    gemini_api_key: Optional[str] = None
    assessment_model: str = "gemini-2.5-flash"
    assessment_timeout_seconds: int = 30
    assessment_batch_policy: str = "continue"
    change_reason_max_length: int = 200
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8022

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        if self.assessment_batch_policy not in BATCH_POLICIES:
            raise ValueError(
                f"ASSESSMENT_BATCH_POLICY must be one of {BATCH_POLICIES}, "
                f"got {self.assessment_batch_policy!r}"
            )
        if self.assessment_timeout_seconds <= 0:
            raise ValueError("ASSESSMENT_TIMEOUT_SECONDS must be positive")
        if self.change_reason_max_length <= 0:
            raise ValueError("CHANGE_REASON_MAX_LENGTH must be positive")

    # ── database files (one per transactional domain) ────────────────

    @property
    def quests_db_path(self) -> Path:
        return self.data_dir / "quests.db"

    @property
    def schedule_db_path(self) -> Path:
        return self.data_dir / "schedule.db"

    @property
    def tasks_db_path(self) -> Path:
        return self.data_dir / "tasks.db"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            data_dir=Path(os.getenv("DATA_DIR", "data")),
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            assessment_model=os.getenv("ASSESSMENT_MODEL", "gemini-2.5-flash"),
            assessment_timeout_seconds=_int_env("ASSESSMENT_TIMEOUT_SECONDS", 30),
            assessment_batch_policy=os.getenv("ASSESSMENT_BATCH_POLICY", "continue").strip().lower(),
            change_reason_max_length=_int_env("CHANGE_REASON_MAX_LENGTH", 200),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_int_env("PORT", 8022),
        )
