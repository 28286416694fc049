"""Terraform interaction via ``terraform`` subprocess calls.

All state and plan work is delegated to the Terraform binary the operator
has installed, so backend configuration, locking and provider plugins behave
exactly as they do on the command line.

Safety:
  • Non-zero exits never raise here; callers inspect ``CommandResult.ok``.
  • Timeouts and a missing binary are reported as ``returncode == -1``.
  • All commands are logged for auditability.
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tf_workflows.errors import TerraformError
from tf_workflows.models import PlanOutcome

logger = logging.getLogger(__name__)

# Maximum output we'll capture from terraform (state pulls can be large).
_MAX_OUTPUT_BYTES = 4 * 1024 * 1024  # 4 MB


@dataclass
class CommandResult:
    """Result of a terraform command execution."""

    command: str
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def summary(self) -> str:
        if self.ok:
            return self.stdout[:2000] if len(self.stdout) > 2000 else self.stdout
        return f"ERROR (rc={self.returncode}): {self.stderr[:1000]}"


def run_command(
    cmd: list[str],
    cwd: Path | str | None = None,
    input: str | None = None,
    timeout: int = 600,
) -> CommandResult:
    """Run an external command and capture its output as a ``CommandResult``."""
    cmd_str = shlex.join(cmd)
    logger.info("exec: %s (cwd=%s)", cmd_str, cwd or ".")

    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            input=input,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        # Truncate very large output
        return CommandResult(
            command=cmd_str,
            returncode=proc.returncode,
            stdout=proc.stdout[:_MAX_OUTPUT_BYTES],
            stderr=proc.stderr[:_MAX_OUTPUT_BYTES],
        )
    except subprocess.TimeoutExpired:
        return CommandResult(
            command=cmd_str,
            returncode=-1,
            stdout="",
            stderr=f"Command timed out after {timeout}s",
        )
    except FileNotFoundError:
        return CommandResult(
            command=cmd_str,
            returncode=-1,
            stdout="",
            stderr=f"{cmd[0]} not found. Is it installed and on the PATH?",
        )


@dataclass
class TerraformClient:
    """Interface to a Terraform root module via the ``terraform`` CLI.

    Parameters
    ----------
    working_dir : Path
        Root module directory; every command runs with this as its cwd.
    binary : str
        Terraform executable name or path.
    timeout : int
        Seconds before a command is killed.
    """

    working_dir: Path = field(default_factory=Path.cwd)
    binary: str = "terraform"
    timeout: int = 600

    def __post_init__(self) -> None:
        self.working_dir = Path(self.working_dir)

    # ── Low-level executor ────────────────────────────────────────────────

    def _run(
        self,
        args: list[str],
        input: str | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        """Run a terraform command and return the result."""
        return run_command(
            [self.binary, *args],
            cwd=self.working_dir,
            input=input,
            timeout=timeout or self.timeout,
        )

    # ── Setup / validation ────────────────────────────────────────────────

    def version(self) -> str:
        """Return the installed Terraform version, or an empty string."""
        result = self._run(["version", "-json"], timeout=30)
        if not result.ok:
            return ""
        try:
            return json.loads(result.stdout).get("terraform_version", "")
        except json.JSONDecodeError:
            return ""

    def init(
        self,
        backend_config: str | Path | None = None,
        backend: bool = True,
    ) -> CommandResult:
        args = ["init", "-input=false"]
        if not backend:
            args.append("-backend=false")
        elif backend_config:
            args.append(f"-backend-config={backend_config}")
        return self._run(args)

    def fmt(self, check: bool = False, recursive: bool = True) -> CommandResult:
        args = ["fmt"]
        if check:
            args.append("-check")
        if recursive:
            args.append("-recursive")
        return self._run(args, timeout=60)

    def validate(self) -> CommandResult:
        return self._run(["validate"], timeout=120)

    # ── Plan / apply ──────────────────────────────────────────────────────

    def plan(
        self,
        out: str | Path | None = None,
        variables: dict[str, str] | None = None,
        replace: list[str] | None = None,
        detailed_exitcode: bool = False,
        destroy: bool = False,
        no_color: bool = False,
    ) -> tuple[PlanOutcome, CommandResult]:
        """Run ``terraform plan`` and classify the outcome.

        Without ``-detailed-exitcode`` a successful plan is reported as
        ``CHANGES`` because Terraform does not say whether anything differs.
        """
        args = ["plan", "-input=false"]
        if out:
            args.append(f"-out={out}")
        for key, value in (variables or {}).items():
            args.append(f"-var={key}={value}")
        for address in replace or []:
            args.append(f"-replace={address}")
        if destroy:
            args.append("-destroy")
        if detailed_exitcode:
            args.append("-detailed-exitcode")
        if no_color:
            args.append("-no-color")

        result = self._run(args)
        if detailed_exitcode:
            outcome = PlanOutcome.from_exit_code(result.returncode)
        else:
            outcome = PlanOutcome.CHANGES if result.ok else PlanOutcome.ERROR
        return outcome, result

    def show(self, plan_file: str | Path, json_output: bool = False) -> CommandResult:
        args = ["show", "-no-color"]
        if json_output:
            args.append("-json")
        args.append(str(plan_file))
        return self._run(args, timeout=120)

    def show_json(self, plan_file: str | Path) -> dict[str, Any]:
        """Return the parsed ``terraform show -json`` document for a plan file."""
        result = self.show(plan_file, json_output=True)
        if not result.ok:
            return {}
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning("terraform show -json returned invalid JSON for %s", plan_file)
            return {}

    def apply(self, plan_file: str | Path) -> CommandResult:
        return self._run(["apply", "-input=false", str(plan_file)])

    # ── State ─────────────────────────────────────────────────────────────

    def state_list(self) -> list[str]:
        """Addresses in state. Raises ``TerraformError`` when terraform fails."""
        result = self._run(["state", "list"], timeout=120)
        if not result.ok:
            raise TerraformError("terraform state list failed", result)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def state_show(self, address: str) -> CommandResult:
        return self._run(["state", "show", "-no-color", address], timeout=120)

    def state_mv(self, source: str, destination: str) -> CommandResult:
        return self._run(["state", "mv", source, destination], timeout=120)

    def state_rm(self, address: str) -> CommandResult:
        return self._run(["state", "rm", address], timeout=120)

    def state_pull(self) -> CommandResult:
        return self._run(["state", "pull"], timeout=300)

    def state_push(self, state_file: str | Path) -> CommandResult:
        content = Path(state_file).read_text(encoding="utf-8")
        return self._run(["state", "push", "-"], input=content, timeout=300)

    def import_resource(self, address: str, resource_id: str) -> CommandResult:
        return self._run(["import", "-input=false", address, resource_id])

    # ── Workspaces ────────────────────────────────────────────────────────

    def workspace_list(self) -> list[str]:
        result = self._run(["workspace", "list"], timeout=60)
        if not result.ok:
            return []
        names: list[str] = []
        for line in result.stdout.splitlines():
            name = line.strip().lstrip("*").strip()
            if name:
                names.append(name)
        return names

    def workspace_show(self) -> str:
        result = self._run(["workspace", "show"], timeout=60)
        return result.stdout.strip() if result.ok else ""

    def workspace_select(self, name: str) -> CommandResult:
        return self._run(["workspace", "select", name], timeout=60)

    def workspace_new(self, name: str) -> CommandResult:
        return self._run(["workspace", "new", name], timeout=60)

    # ── Convenience helpers ───────────────────────────────────────────────

    @property
    def initialized(self) -> bool:
        return (self.working_dir / ".terraform").is_dir()
