"""SQL statement logging hooked into SQLAlchemy cursor events.

Statements are logged at debug level. Parameters are only logged when
explicitly authorised since mirror rows carry customer data.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger("crm_mirror.sql")


def install_sql_logger(engine: AsyncEngine, *, with_params: bool = False) -> None:
    """Attach a before_cursor_execute listener logging every statement."""

    @event.listens_for(engine.sync_engine, "before_cursor_execute")
    def log_statement(
        conn: Any,
        cursor: Any,
        statement: str,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        if with_params and parameters:
            logger.debug("sql.execute", sql=statement, params=repr(parameters))
        else:
            logger.debug("sql.execute", sql=statement)
