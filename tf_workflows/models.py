"""Pydantic models for plans, workflow outcomes, audits and bootstrap results."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field


# ──────────────────────────── Plans ───────────────────────────────────────────


class PlanOutcome(str, Enum):
    """Meaning of ``terraform plan -detailed-exitcode``."""

    NO_CHANGES = "no-changes"
    ERROR = "error"
    CHANGES = "changes"

    @classmethod
    def from_exit_code(cls, code: int) -> PlanOutcome:
        if code == 0:
            return cls.NO_CHANGES
        if code == 2:
            return cls.CHANGES
        return cls.ERROR


class ChangeAction(str, Enum):
    """Per-resource action in a plan."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"
    READ = "read"
    NO_OP = "no-op"


class ResourceChange(BaseModel):
    """A single resource address and what the plan will do to it."""

    address: str
    action: ChangeAction


class PlanSummary(BaseModel):
    """Aggregated counts for a plan, as shown on the ``Plan:`` line."""

    to_add: int = 0
    to_change: int = 0
    to_destroy: int = 0
    to_import: int = 0
    changes: list[ResourceChange] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.to_add or self.to_change or self.to_destroy or self.to_import)

    def addresses(self, action: ChangeAction) -> list[str]:
        return [c.address for c in self.changes if c.action == action]

    @property
    def headline(self) -> str:
        text = f"Plan: {self.to_add} to add, {self.to_change} to change, {self.to_destroy} to destroy."
        if self.to_import:
            text = f"Plan: {self.to_import} to import, " + text[len("Plan: "):]
        return text


class DowntimeReport(BaseModel):
    """Resources a plan would destroy, replace or create."""

    destroyed: list[str] = Field(default_factory=list)
    replaced: list[str] = Field(default_factory=list)
    created: list[str] = Field(default_factory=list)
    to_destroy: int = 0
    headline: str = ""

    @property
    def safe(self) -> bool:
        return not self.destroyed and not self.replaced and self.to_destroy == 0


class PlanArtifacts(BaseModel):
    """The binary plan and its text / JSON exports."""

    plan_file: Path
    text_file: Path | None = None
    json_file: Path | None = None

    def files(self) -> list[Path]:
        return [p for p in (self.plan_file, self.text_file, self.json_file) if p is not None]


# ──────────────────────────── Workflow outcomes ───────────────────────────────


class WorkflowStatus(str, Enum):
    """How a workflow ended."""

    APPLIED = "applied"
    NO_CHANGES = "no-changes"
    CANCELLED = "cancelled"
    FAILED = "failed"


class DeployResult(BaseModel):
    """Outcome of a plan-file deployment."""

    environment: str
    timestamp: str
    status: WorkflowStatus
    summary: PlanSummary = Field(default_factory=PlanSummary)
    artifacts: PlanArtifacts | None = None
    archived_to: Path | None = None
    git_tag: str = ""
    cost_estimate: str = ""


class WorkspaceResult(BaseModel):
    """Outcome of a workspace deployment."""

    workspace: str
    created: bool = False
    status: WorkflowStatus
    summary: PlanSummary = Field(default_factory=PlanSummary)


class ReplaceResult(BaseModel):
    """Outcome of forced resource replacement."""

    addresses: list[str]
    status: WorkflowStatus
    plan_file: Path | None = None


class StateStats(BaseModel):
    """Statistics of a pulled state snapshot."""

    path: Path
    resources: int = 0
    size_bytes: int = 0


class LayerResult(BaseModel):
    """Outcome of one layer in a layered apply."""

    layer: str
    status: WorkflowStatus
    summary: PlanSummary = Field(default_factory=PlanSummary)


# ──────────────────────────── Bootstrap ───────────────────────────────────────


class BackendConfig(BaseModel):
    """An S3 backend block (or backend-config file) for Terraform state."""

    bucket: str = ""
    key: str = ""
    region: str = ""
    dynamodb_table: str = ""
    encrypt: bool = False


class EnsureResult(BaseModel):
    """Result of an idempotent create-if-missing call."""

    name: str
    created: bool
    detail: str = ""


class BootstrapResult(BaseModel):
    """Outcome of provisioning the remote-state backend."""

    account_id: str
    region: str
    bucket: EnsureResult
    table: EnsureResult
    key_pair: EnsureResult | None = None
    updated_files: list[Path] = Field(default_factory=list)
    status: WorkflowStatus = WorkflowStatus.APPLIED


# ──────────────────────────── Security audit ──────────────────────────────────


class Severity(str, Enum):
    ISSUE = "issue"
    WARNING = "warning"
    OK = "ok"


class Finding(BaseModel):
    """One observation made by a security-audit check."""

    check: str
    severity: Severity
    message: str
    path: str = ""
    details: list[str] = Field(default_factory=list)


class AuditReport(BaseModel):
    """All findings of a security audit run."""

    root: str
    findings: list[Finding] = Field(default_factory=list)
    remote_backends: int = 0
    local_backends: int = 0

    @property
    def issues(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == Severity.ISSUE]

    @property
    def warnings(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == Severity.WARNING]

    @property
    def issue_count(self) -> int:
        return len(self.issues)

    @property
    def status(self) -> str:
        return "GOOD" if self.issue_count == 0 else "NEEDS ATTENTION"

    def by_check(self, check: str) -> list[Finding]:
        return [f for f in self.findings if f.check == check]


# ──────────────────────────── Prerequisites ───────────────────────────────────


class ToolStatus(BaseModel):
    """Presence of a CLI tool on the PATH."""

    name: str
    path: str = ""
    required: bool = False
    hint: str = ""

    @property
    def installed(self) -> bool:
        return bool(self.path)
