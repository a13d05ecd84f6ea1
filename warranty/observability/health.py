from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from warranty.database import engine


def check_database_health() -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def check_batch_runner_health() -> Dict[str, Any]:
    """Report the batch runs executing in this process."""
    from warranty.services.batch_engine import active_runs

    runs = active_runs()
    return {"status": "UP", "active_runs": len(runs), "batch_ids": sorted(runs)}
