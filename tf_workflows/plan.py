"""Interpret Terraform plans: counts, per-resource actions and downtime risk."""

from __future__ import annotations

import logging
import re
from typing import Any

from tf_workflows.models import ChangeAction, DowntimeReport, PlanSummary, ResourceChange

logger = logging.getLogger(__name__)

# Resource header lines in human-readable plan output, e.g.
#   # module.web.aws_instance.main[0] will be created
#   # aws_instance.web is tainted, so must be replaced
#   # aws_db_instance.main will be replaced, as requested
_HEADER_RE = re.compile(
    r"^\s*# (?P<address>\S+) (?P<verb>will be created|will be updated in-place|"
    r"will be destroyed|(?:is tainted, so )?must be replaced|will be replaced\b.*|"
    r"will be read during apply)"
)

_VERB_ACTIONS: dict[str, ChangeAction] = {
    "will be created": ChangeAction.CREATE,
    "will be updated in-place": ChangeAction.UPDATE,
    "will be destroyed": ChangeAction.DELETE,
    "will be read during apply": ChangeAction.READ,
}


def _verb_action(verb: str) -> ChangeAction:
    if verb.endswith("must be replaced") or verb.startswith("will be replaced"):
        return ChangeAction.REPLACE
    return _VERB_ACTIONS[verb]


_PLAN_LINE_RE = re.compile(
    r"Plan:\s+(?:(?P<import>\d+) to import,\s+)?(?P<add>\d+) to add,\s+"
    r"(?P<change>\d+) to change,\s+(?P<destroy>\d+) to destroy"
)

_SUMMARY_LINE_RE = re.compile(
    r"Plan:|^  # |will be created|will be updated|will be destroyed|must be replaced|will be replaced"
)

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


def _actions_to_change(actions: list[str]) -> ChangeAction:
    """Map the JSON ``change.actions`` list onto a single action."""
    if set(actions) == {"delete", "create"}:
        return ChangeAction.REPLACE
    if actions == ["create"]:
        return ChangeAction.CREATE
    if actions == ["update"]:
        return ChangeAction.UPDATE
    if actions == ["delete"]:
        return ChangeAction.DELETE
    if actions == ["read"]:
        return ChangeAction.READ
    return ChangeAction.NO_OP


def parse_plan_json(doc: dict[str, Any]) -> PlanSummary:
    """Build a summary from ``terraform show -json <planfile>`` output."""
    changes: list[ResourceChange] = []
    to_import = 0

    for rc in doc.get("resource_changes", []) or []:
        change = rc.get("change", {}) or {}
        action = _actions_to_change(list(change.get("actions", [])))
        if change.get("importing"):
            to_import += 1
        if action == ChangeAction.NO_OP:
            continue
        changes.append(ResourceChange(address=rc.get("address", ""), action=action))

    summary = PlanSummary(changes=changes, to_import=to_import)
    for c in changes:
        if c.action == ChangeAction.CREATE:
            summary.to_add += 1
        elif c.action == ChangeAction.UPDATE:
            summary.to_change += 1
        elif c.action == ChangeAction.DELETE:
            summary.to_destroy += 1
        elif c.action == ChangeAction.REPLACE:
            summary.to_add += 1
            summary.to_destroy += 1
    return summary


def parse_plan_text(text: str) -> PlanSummary:
    """Build a summary from human-readable plan output.

    Counts come from the ``Plan:`` line when present; the per-resource list
    comes from the ``# <address> will be …`` headers.
    """
    text = _ANSI_RE.sub("", text)
    changes: list[ResourceChange] = []
    for line in text.splitlines():
        m = _HEADER_RE.match(line)
        if m:
            changes.append(
                ResourceChange(address=m.group("address"), action=_verb_action(m.group("verb")))
            )

    summary = PlanSummary(changes=changes)
    m = _PLAN_LINE_RE.search(text)
    if m:
        summary.to_add = int(m.group("add"))
        summary.to_change = int(m.group("change"))
        summary.to_destroy = int(m.group("destroy"))
        summary.to_import = int(m.group("import") or 0)
    else:
        # "No changes." output has no Plan: line
        summary.to_add = len(summary.addresses(ChangeAction.CREATE)) + len(
            summary.addresses(ChangeAction.REPLACE)
        )
        summary.to_change = len(summary.addresses(ChangeAction.UPDATE))
        summary.to_destroy = len(summary.addresses(ChangeAction.DELETE)) + len(
            summary.addresses(ChangeAction.REPLACE)
        )
    return summary


def plan_headline(text: str) -> str:
    """Return the ``Plan: …`` line, or an empty string."""
    for line in _ANSI_RE.sub("", text).splitlines():
        if line.strip().startswith("Plan:"):
            return line.strip()
    return ""


def summary_lines(text: str, limit: int = 20) -> list[str]:
    """Pick the lines worth showing before an apply confirmation."""
    lines = [
        line
        for line in _ANSI_RE.sub("", text).splitlines()
        if _SUMMARY_LINE_RE.search(line)
    ]
    return lines[:limit]


def assess_downtime(summary: PlanSummary, headline: str = "") -> DowntimeReport:
    """Report destroyed and replaced resources (the ones that cause downtime)."""
    report = DowntimeReport(
        destroyed=summary.addresses(ChangeAction.DELETE),
        replaced=summary.addresses(ChangeAction.REPLACE),
        created=summary.addresses(ChangeAction.CREATE),
        to_destroy=summary.to_destroy,
        headline=headline or summary.headline,
    )
    if not report.safe:
        logger.info(
            "Plan would destroy %d and replace %d resources",
            len(report.destroyed),
            len(report.replaced),
        )
    return report
