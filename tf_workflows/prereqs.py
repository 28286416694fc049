"""Workstation prerequisites: tool presence, Terraform version, hooks, repo layout."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Callable

from tf_workflows.aws import caller_account_id
from tf_workflows.errors import PrerequisiteError
from tf_workflows.models import ToolStatus
from tf_workflows.terraform import CommandResult, run_command

logger = logging.getLogger(__name__)

# (tool, required, install hint)
TOOLS: list[tuple[str, bool, str]] = [
    ("terraform", True, "brew install terraform"),
    ("aws", False, "brew install awscli"),
    ("pre-commit", False, "brew install pre-commit"),
    ("tflint", False, "brew install tflint"),
    ("tfsec", False, "brew install tfsec"),
    ("infracost", False, "brew install infracost"),
]

PROJECTS_DIR = "projects"
PROJECTS_TYPO_DIR = "projecdts"


def check_tools(tools: list[tuple[str, bool, str]] | None = None) -> list[ToolStatus]:
    """Look up each tool on the PATH."""
    statuses: list[ToolStatus] = []
    for name, required, hint in tools or TOOLS:
        statuses.append(ToolStatus(
            name=name,
            path=shutil.which(name) or "",
            required=required,
            hint=hint,
        ))
    return statuses


def _version_tuple(version: str) -> tuple[int, ...]:
    parts: list[int] = []
    for piece in version.strip().lstrip("v").split("-")[0].split("."):
        digits = "".join(ch for ch in piece if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def terraform_version_ok(found: str, required: str) -> bool:
    """True when *found* is at least *required* (dotted numeric comparison)."""
    if not found:
        return False
    have, need = _version_tuple(found), _version_tuple(required)
    width = max(len(have), len(need))
    return have + (0,) * (width - len(have)) >= need + (0,) * (width - len(need))


def check_aws_credentials(session: Any) -> str | None:
    """Return the account id, or None when no usable credentials are configured."""
    try:
        return caller_account_id(session)
    except PrerequisiteError as exc:
        logger.info("AWS credentials check failed: %s", exc)
        return None


def install_hooks(root: Path, statuses: list[ToolStatus] | None = None) -> dict[str, CommandResult]:
    """Run ``pre-commit install`` and ``tflint --init`` for the tools that exist."""
    installed = {s.name for s in statuses or check_tools() if s.installed}
    results: dict[str, CommandResult] = {}
    if "pre-commit" in installed:
        results["pre-commit"] = run_command(["pre-commit", "install"], cwd=root, timeout=120)
    if "tflint" in installed:
        results["tflint"] = run_command(["tflint", "--init"], cwd=root, timeout=300)
    return results


def fix_projects_typo(root: Path, confirm: Callable[[str], bool]) -> str:
    """Rename a mistyped ``projecdts`` directory to ``projects``.

    Returns one of ``renamed``, ``declined``, ``conflict``, ``ok`` or ``missing``.
    """
    typo = root / PROJECTS_TYPO_DIR
    projects = root / PROJECTS_DIR
    if typo.is_dir():
        if not confirm(f"Rename '{PROJECTS_TYPO_DIR}' to '{PROJECTS_DIR}'?"):
            return "declined"
        if projects.exists():
            return "conflict"
        typo.rename(projects)
        logger.info("Renamed %s -> %s", typo, projects)
        return "renamed"
    if projects.is_dir():
        return "ok"
    return "missing"
