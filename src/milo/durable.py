"""Durable steps for long-running job executions.

Each named step's result is stored against the execution as soon as the
step finishes. If the process dies mid-run, the dispatcher re-claims the job
once its lease expires and re-enters the same execution: completed steps
return their stored result instead of running again.
"""

import logging
from pathlib import Path
from typing import Any, Callable

from . import db

logger = logging.getLogger("milo.durable")


class DurableRun:
    def __init__(self, db_path: Path, execution_id: str):
        self.db_path = db_path
        self.execution_id = execution_id
        with db.get_db(db_path) as conn:
            self._completed = db.get_execution_steps(conn, execution_id)
        if self._completed:
            logger.info(
                "Resuming execution %s with %d completed step(s): %s",
                execution_id, len(self._completed), ", ".join(sorted(self._completed)),
            )

    @property
    def resumed(self) -> bool:
        return bool(self._completed)

    def completed(self, name: str) -> bool:
        return name in self._completed

    def step(self, name: str, fn: Callable[[], Any]) -> Any:
        """Run ``fn`` once per execution. Its result must be JSON-serializable."""
        if name in self._completed:
            logger.debug("Step %s of execution %s already done, skipping", name, self.execution_id)
            return self._completed[name]

        result = fn()
        with db.get_db(self.db_path) as conn:
            db.record_execution_step(conn, self.execution_id, name, result, db.utcnow())
        self._completed[name] = result
        return result
