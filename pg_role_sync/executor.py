"""
Plan serialization and application.

The script artifact is always written. Outside dry-run mode each statement is
then applied on its own; a statement that fails (for example a role left over
from a previous run) is logged and the remaining statements still run.
"""

import os
import logging
from typing import List

from pg_role_sync.catalog import CatalogError
from pg_role_sync.statements import Plan, Outcome

logger = logging.getLogger(__name__)

SCRIPT_HEADER = '\\set ON_ERROR_STOP off'


def serialize_plan(plan: Plan) -> str:
    """Render a plan as one SQL statement per line, in plan order."""
    return ''.join(statement.to_sql() + '\n' for statement in plan.statements)


def render_script(plan: Plan) -> str:
    """Render the psql script artifact: the error-tolerance directive followed by the plan."""
    return SCRIPT_HEADER + '\n' + serialize_plan(plan)


class ExecutionReport:
    """Counts and failures from applying a plan."""

    def __init__(self, dry_run: bool):
        self.dry_run = dry_run
        self.applied = 0
        self.failures: List[Outcome] = []

    @property
    def failed(self) -> int:
        return len(self.failures)


class StatementExecutor:
    """Writes the script artifact and, unless dry-running, applies the plan."""

    def __init__(self, catalog, script_path: str):
        self.catalog = catalog
        self.script_path = script_path

    def _open_script(self):
        script_dir = os.path.dirname(self.script_path)
        if script_dir:
            os.makedirs(script_dir, exist_ok=True)
        return open(self.script_path, 'w', encoding='utf-8')

    def reset_script(self):
        """Truncate the script artifact so a failed run never leaves an older plan behind."""
        with self._open_script():
            pass
        logger.debug(f"Truncated script artifact {self.script_path}")

    def write_script(self, plan: Plan):
        with self._open_script() as f:
            f.write(render_script(plan))
        logger.info(f"Wrote {len(plan.statements)} statements to {self.script_path}")

    def execute(self, plan: Plan, dry_run: bool = False) -> ExecutionReport:
        """
        Write the script artifact and apply the plan.

        Args:
            plan: Plan to apply
            dry_run: Only write the script artifact

        Returns:
            ExecutionReport with applied and failed statement counts
        """
        report = ExecutionReport(dry_run)
        self.write_script(plan)

        if dry_run:
            logger.info("Dry run: no statements applied")
            return report

        for statement in plan.statements:
            sql = statement.to_sql()
            try:
                self.catalog.execute(sql)
                report.applied += 1
            except CatalogError as e:
                logger.error(f"Statement failed, continuing: {sql}: {e}")
                report.failures.append(Outcome(sql, Outcome.FAILED, str(e)))

        logger.info(f"Applied {report.applied} statements, {report.failed} failed")
        return report
