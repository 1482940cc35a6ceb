"""
Outcome reporting: one log line per task plus aggregate counts.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from fleet_deploy.models import DeploymentSummary, Outcome, OutcomeStatus

logger = logging.getLogger("fleet_deploy.reporter")


def format_table(headers: List[str], rows: List[List[str]], max_col_width: int = 40) -> str:
    """Format a simple ASCII table for CLI output."""
    if not rows:
        return "(no results)"

    truncated_rows = []
    for row in rows:
        truncated_rows.append([
            val[:max_col_width - 3] + "..." if len(val) > max_col_width else val
            for val in row
        ])

    col_widths = [len(h) for h in headers]
    for row in truncated_rows:
        for i, val in enumerate(row):
            if i < len(col_widths):
                col_widths[i] = max(col_widths[i], len(val))

    fmt = "  ".join(f"{{:<{w}}}" for w in col_widths)
    lines = [fmt.format(*headers)]
    lines.append("  ".join("-" * w for w in col_widths))
    for row in truncated_rows:
        while len(row) < len(headers):
            row.append("")
        lines.append(fmt.format(*row))

    return "\n".join(lines)


class OutcomeReporter:
    """Turns a list of outcomes into log lines and a DeploymentSummary."""

    @staticmethod
    def describe(outcome: Outcome) -> str:
        text = f"{outcome.device_serial} / {outcome.package_id}: {outcome.status.value}"
        if outcome.reason:
            text += f" ({outcome.reason})"
        if outcome.aborted_run:
            text += " [aborted run]"
        return text

    def summarize(
        self,
        outcomes: Sequence[Outcome],
        aborted: bool = False,
        total_tasks: Optional[int] = None,
    ) -> DeploymentSummary:
        summary = DeploymentSummary(aborted=aborted)

        for outcome in outcomes:
            line = self.describe(outcome)
            if outcome.status == OutcomeStatus.SUCCESS:
                summary.succeeded += 1
                logger.info(line)
            elif outcome.status == OutcomeStatus.SKIPPED:
                summary.skipped += 1
                logger.warning(line)
            else:
                summary.failed += 1
                logger.error(line)

        if total_tasks is not None:
            summary.not_scheduled = max(0, total_tasks - summary.total)

        if summary.ok:
            logger.info(
                "App deployment completed! %d succeeded, %d skipped",
                summary.succeeded, summary.skipped,
            )
        else:
            logger.error(
                "Deployment finished with failures: %d succeeded, %d failed, %d skipped%s",
                summary.succeeded, summary.failed, summary.skipped,
                f", {summary.not_scheduled} not scheduled" if summary.not_scheduled else "",
            )
        return summary

    @staticmethod
    def render_table(outcomes: Sequence[Outcome]) -> str:
        headers = ["Device", "Package", "Outcome", "Attempts", "Reason"]
        rows = [
            [
                o.device_serial,
                o.package_id,
                o.status.value,
                str(o.attempts),
                o.reason,
            ]
            for o in outcomes
        ]
        return format_table(headers, rows, max_col_width=60)
