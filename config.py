import os
from enum import Enum
from functools import lru_cache
from pathlib import Path


class BudgetGuard(str, Enum):
    serializable = "serializable"
    advisory_lock = "advisory_lock"
    none = "none"


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        budget_guard: BudgetGuard,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.budget_guard = budget_guard
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_budget_guard(value: str) -> BudgetGuard:
    try:
        return BudgetGuard(value.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(g.value for g in BudgetGuard)
        raise ValueError(
            f"LEDGER_BUDGET_GUARD must be one of {allowed}, got {value!r}"
        ) from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    budget_guard = _parse_budget_guard(
        os.getenv("LEDGER_BUDGET_GUARD", BudgetGuard.advisory_lock.value)
    )
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        budget_guard=budget_guard,
        log_level=log_level,
    )
