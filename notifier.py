"""
Slack notifications for the asset rotation runs.

Every run reports through `notify(event)`: analysis summaries (with the
changes waiting for approval), execution sweeps (partial replaces listed
on their own) and run-level errors. Without a webhook the message is
only logged.
"""

import os
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests

from change_executor import ExecutionSummary
from change_requests import ApprovalMode, ChangeStatus
from decision_engine import AnalysisSummary

logger = logging.getLogger("Notifier")

MAX_LISTED_CHANGES = 10


@dataclass
class RunError:
    """A run that could not do its work at all."""
    stage: str
    message: str
    details: List[str] = field(default_factory=list)
    occurred_at: str = field(default_factory=lambda: datetime.now().isoformat())


def format_analysis(summary: AnalysisSummary) -> str:
    mode = " [DRY RUN]" if summary.dry_run else ""
    if summary.query_failed:
        lines = [f":x: Asset analysis failed{mode}: no campaign could be queried."]
    elif summary.no_action_needed:
        return (f":white_check_mark: Asset analysis{mode}: no action needed "
                f"({summary.campaigns_analyzed} campaigns, {summary.assets_evaluated} assets checked).")
    else:
        lines = [
            f":bar_chart: Asset analysis{mode}: {summary.campaigns_analyzed} campaigns, "
            f"{summary.assets_evaluated} assets checked",
            f"• Auto-executed: {summary.auto_executed}",
            f"• Pending approval: {summary.pending_approval}",
            f"• Failed: {summary.auto_failed}",
        ]
        if summary.auto_deferred:
            lines.append(f"• Deferred to next sweep: {summary.auto_deferred}")

    if summary.partials:
        lines.append(f":warning: PARTIAL REPLACE on {len(summary.partials)} changes "
                     f"(old and new asset both live): {', '.join(summary.partials)}")

    pending = [c for c in summary.changes
               if c.approval_mode == ApprovalMode.PENDING and c.status == ChangeStatus.PENDING]
    if pending:
        lines.append("*Awaiting approval:*")
        for change in pending[:MAX_LISTED_CHANGES]:
            lines.append(f"  `{change.change_id}` {change.action.value} {change.asset_type.value} "
                         f"on ad {change.ad_id}: {change.reason}")
        if len(pending) > MAX_LISTED_CHANGES:
            lines.append(f"  ... and {len(pending) - MAX_LISTED_CHANGES} more")

    if summary.errors:
        lines.append(f"*Errors ({len(summary.errors)}):*")
        lines.extend(f"  {e}" for e in summary.errors[:MAX_LISTED_CHANGES])
    return "\n".join(lines)


def format_execution(summary: ExecutionSummary) -> str:
    mode = " [DRY RUN]" if summary.dry_run else ""
    if summary.no_action_needed:
        return f":white_check_mark: Execution sweep{mode}: no action needed (nothing approved or queued)."

    lines = [
        f":gear: Execution sweep{mode}: {summary.processed} changes processed",
        f"• Executed: {summary.executed}",
        f"• Failed: {summary.failed}",
    ]
    if summary.deferred:
        lines.append(f"• Deferred (retry next sweep): {summary.deferred}")
    if summary.timed_out:
        lines.append(f":hourglass: Budget spent, {summary.remaining} changes left for the next sweep")
    if summary.partials:
        lines.append(f":warning: PARTIAL REPLACE on {len(summary.partials)} changes "
                     f"(old and new asset both live): {', '.join(summary.partials)}")
    if summary.errors:
        lines.append(f"*Errors ({len(summary.errors)}):*")
        lines.extend(f"  {e}" for e in summary.errors[:MAX_LISTED_CHANGES])
    return "\n".join(lines)


def format_error(error: RunError) -> str:
    lines = [f":rotating_light: Asset rotation {error.stage} aborted: {error.message}"]
    lines.extend(f"  {d}" for d in error.details[:MAX_LISTED_CHANGES])
    return "\n".join(lines)


class SlackNotifier:
    """Sends run reports to a Slack channel via an incoming webhook."""

    def __init__(self, webhook_url: Optional[str] = None):
        self.webhook_url = webhook_url or os.getenv("SLACK_WEBHOOK_URL")
        self.enabled = bool(self.webhook_url)

        if self.enabled:
            parsed = urlparse(self.webhook_url)
            if not all([parsed.scheme, parsed.netloc]):
                logger.error(f"Invalid Slack webhook URL format: {self.webhook_url}")
                self.enabled = False
        else:
            logger.info("Slack notifications disabled (no webhook URL configured)")

    def send_message(self, text: str, blocks: Optional[List[Dict[str, Any]]] = None) -> bool:
        if not self.enabled:
            return False

        payload = {"text": text}
        if blocks:
            payload["blocks"] = blocks

        try:
            response = requests.post(
                self.webhook_url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=10,
            )
            response.raise_for_status()
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send Slack notification: {e}")
            return False

    def notify(self, event) -> bool:
        """Report an AnalysisSummary, ExecutionSummary or RunError."""
        if isinstance(event, AnalysisSummary):
            text = format_analysis(event)
        elif isinstance(event, ExecutionSummary):
            text = format_execution(event)
        elif isinstance(event, RunError):
            text = format_error(event)
        else:
            raise TypeError(f"Cannot notify about {type(event).__name__}")

        for line in text.splitlines():
            logger.info(line)
        return self.send_message(text)
