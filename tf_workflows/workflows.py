"""Workflow core — the guarded procedures that drive Terraform and AWS.

Each workflow mirrors one operator procedure (plan-file deploys, workspace
deploys, forced replacement, state surgery, backend bootstrap, layered
applies).  They print progress through a rich ``Console``, ask for
confirmation through an injected ``confirm`` callable, and return a result
model.  A declined confirmation is a normal outcome (``CANCELLED``), not an
error; failures raise ``WorkflowError`` subclasses.
"""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from git import Repo as GitRepo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from rich.console import Console

from tf_workflows import aws
from tf_workflows.backend import update_backend_files
from tf_workflows.config import Settings
from tf_workflows.errors import PrerequisiteError, ResourceNotFoundError, TerraformError, WorkflowError
from tf_workflows.history import DeploymentHistory, current_operator
from tf_workflows.layers import apply_order, destroy_order, discover_layers, validate_layers
from tf_workflows.models import (
    BootstrapResult,
    DeployResult,
    DowntimeReport,
    LayerResult,
    PlanArtifacts,
    PlanOutcome,
    PlanSummary,
    ReplaceResult,
    StateStats,
    WorkflowStatus,
    WorkspaceResult,
)
from tf_workflows.plan import assess_downtime, parse_plan_json, parse_plan_text, plan_headline, summary_lines
from tf_workflows.terraform import TerraformClient, run_command

logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
BOOTSTRAP_PLAN = "bootstrap.tfplan"


def timestamp() -> str:
    return datetime.now().strftime(TIMESTAMP_FORMAT)


def _deny(prompt: str) -> bool:
    return False


@dataclass
class WorkflowContext:
    """Everything a workflow needs besides its own arguments."""

    client: TerraformClient
    settings: Settings = field(default_factory=Settings)
    confirm: Confirm = _deny
    console: Console = field(default_factory=Console)
    history: DeploymentHistory | None = None

    @property
    def workdir(self) -> Path:
        return self.client.working_dir


def _require_ok(result: Any, what: str) -> None:
    if not result.ok:
        raise TerraformError(f"{what} failed", result)


def _summarize(ctx: WorkflowContext, plan_file: Path) -> tuple[PlanSummary, str]:
    """Return the parsed summary and human-readable text of a saved plan."""
    shown = ctx.client.show(plan_file)
    text = shown.stdout if shown.ok else ""
    doc = ctx.client.show_json(plan_file)
    summary = parse_plan_json(doc) if doc else parse_plan_text(text)
    return summary, text


def _print_summary(ctx: WorkflowContext, summary: PlanSummary, text: str) -> None:
    lines = summary_lines(text) if text else []
    if not lines:
        lines = [summary.headline]
    for line in lines:
        ctx.console.print(f"  {line}", markup=False, highlight=False)


def _remove(path: Path) -> None:
    if path.exists():
        path.unlink()


# ══════════════════════════════════════════════════════════════════════════════
#  PLAN-FILE DEPLOYMENT
# ══════════════════════════════════════════════════════════════════════════════


def estimate_cost(plan_json: Path) -> str:
    """Run ``infracost breakdown`` on an exported plan; empty when unavailable."""
    if not shutil.which("infracost"):
        return ""
    result = run_command(
        ["infracost", "breakdown", "--path", str(plan_json), "--format", "table"],
        cwd=plan_json.parent,
        timeout=300,
    )
    if not result.ok:
        logger.warning("Cost estimation unavailable: %s", result.summary)
        return ""
    return result.stdout


def tag_deployment(workdir: Path, tag: str, message: str) -> bool:
    """Create an annotated git tag for a deployment. Returns False when not possible."""
    try:
        repo = GitRepo(workdir, search_parent_directories=True)
        repo.create_tag(tag, message=message)
    except (InvalidGitRepositoryError, NoSuchPathError):
        logger.debug("%s is not inside a git repository; skipping tag", workdir)
        return False
    except GitCommandError as exc:
        logger.warning("Failed to create git tag %s: %s", tag, exc)
        return False
    logger.info("Git tag created: %s", tag)
    return True


def deploy_with_plan(ctx: WorkflowContext, environment: str = "dev", ts: str = "") -> DeployResult:
    """Format, validate, plan to a file, export, confirm, apply, archive and tag."""
    ts = ts or timestamp()
    workdir = ctx.workdir
    plan_file = workdir / f"tfplan-{ts}"
    text_file = workdir / f"plan-{ts}.txt"
    json_file = workdir / f"plan-{ts}.json"
    artifacts = PlanArtifacts(plan_file=plan_file, text_file=text_file, json_file=json_file)
    console = ctx.console

    # ── Step 1: Format ────────────────────────────────────────────────
    console.print("[bold]Step 1:[/bold] Checking format…")
    if not ctx.client.fmt(check=True, recursive=True).ok:
        console.print("  [yellow]Format issues found. Auto-fixing…[/yellow]")
        _require_ok(ctx.client.fmt(recursive=True), "terraform fmt")
    console.print("  [green]✓[/green] Format check passed")

    # ── Step 2: Validate ──────────────────────────────────────────────
    console.print("[bold]Step 2:[/bold] Validating configuration…")
    _require_ok(ctx.client.validate(), "terraform validate")
    console.print("  [green]✓[/green] Validation passed")

    # ── Step 3: Plan ──────────────────────────────────────────────────
    console.print("[bold]Step 3:[/bold] Generating plan…")
    outcome, result = ctx.client.plan(
        out=artifacts.plan_file.name,
        variables={"environment": environment},
        detailed_exitcode=True,
    )
    if outcome == PlanOutcome.ERROR:
        raise TerraformError("Error during planning", result)
    if outcome == PlanOutcome.NO_CHANGES:
        console.print("  [green]✓[/green] No changes detected")
        _remove(artifacts.plan_file)
        return DeployResult(environment=environment, timestamp=ts, status=WorkflowStatus.NO_CHANGES)
    console.print(f"  [green]✓[/green] Plan generated: {artifacts.plan_file.name}")

    # ── Step 4: Export ────────────────────────────────────────────────
    console.print("[bold]Step 4:[/bold] Exporting plan…")
    shown = ctx.client.show(artifacts.plan_file)
    _require_ok(shown, "terraform show")
    doc = ctx.client.show_json(artifacts.plan_file)
    text_file.write_text(shown.stdout, encoding="utf-8")
    json_file.write_text(json.dumps(doc, indent=2), encoding="utf-8")
    console.print(f"  Text: {text_file.name}")
    console.print(f"  JSON: {json_file.name}")

    # ── Step 5: Summary ───────────────────────────────────────────────
    summary = parse_plan_json(doc) if doc else parse_plan_text(shown.stdout)
    console.print("[bold]Step 5:[/bold] Plan summary")
    _print_summary(ctx, summary, shown.stdout)

    # ── Step 6: Cost ──────────────────────────────────────────────────
    cost = estimate_cost(json_file)
    if cost:
        console.print("[bold]Step 6:[/bold] Cost estimation")
        console.print(cost, markup=False, highlight=False)

    result_model = DeployResult(
        environment=environment,
        timestamp=ts,
        status=WorkflowStatus.CANCELLED,
        summary=summary,
        artifacts=artifacts,
        cost_estimate=cost,
    )

    # ── Step 7: Confirm ───────────────────────────────────────────────
    if not ctx.confirm("Do you want to apply this plan?"):
        console.print("[yellow]Deployment cancelled.[/yellow] Plan files saved for review:")
        for path in artifacts.files():
            console.print(f"  - {path.name}")
        return result_model

    # ── Step 8: Apply ─────────────────────────────────────────────────
    console.print("[bold]Step 8:[/bold] Applying plan…")
    applied = ctx.client.apply(artifacts.plan_file)
    if not applied.ok:
        if ctx.history is not None:
            ctx.history.record(environment, WorkflowStatus.FAILED.value, summary,
                               plan_file=artifacts.plan_file.name)
        raise TerraformError("Deployment failed", applied)

    archive = ctx.settings.resolved_plans_dir
    archive.mkdir(parents=True, exist_ok=True)
    for path in artifacts.files():
        shutil.move(str(path), str(archive / path.name))
    result_model.archived_to = archive
    result_model.status = WorkflowStatus.APPLIED
    console.print("[green bold]Deployment successful![/green bold]")
    console.print(f"  Plan files archived to: {archive}")

    tag = f"deploy-{ts}"
    if tag_deployment(workdir, tag, f"Deployed to {environment} by {current_operator()}"):
        result_model.git_tag = tag
        console.print(f"  Git tag created: {tag}")

    if ctx.history is not None:
        ctx.history.record(
            environment,
            WorkflowStatus.APPLIED.value,
            summary,
            workspace=ctx.client.workspace_show() or "default",
            plan_file=artifacts.plan_file.name,
            git_tag=result_model.git_tag,
        )
    return result_model


# ══════════════════════════════════════════════════════════════════════════════
#  WORKSPACE DEPLOYMENT
# ══════════════════════════════════════════════════════════════════════════════


def deploy_to_workspace(ctx: WorkflowContext, name: str) -> WorkspaceResult:
    """Select or create a workspace, then plan, confirm and apply in it."""
    if not name:
        raise WorkflowError("Workspace name is required")
    console = ctx.console

    existing = ctx.client.workspace_list()
    created = name not in existing
    if created:
        console.print(f"Creating new workspace '{name}'…")
        _require_ok(ctx.client.workspace_new(name), f"terraform workspace new {name}")
    else:
        console.print(f"Workspace '{name}' exists, selecting…")
        _require_ok(ctx.client.workspace_select(name), f"terraform workspace select {name}")
    console.print(f"Current workspace: [bold]{ctx.client.workspace_show() or name}[/bold]")

    if not ctx.client.initialized:
        console.print("Initializing Terraform…")
        _require_ok(ctx.client.init(), "terraform init")

    plan_file = ctx.workdir / f"tfplan-{name}"
    outcome, result = ctx.client.plan(out=plan_file.name)
    if outcome == PlanOutcome.ERROR:
        raise TerraformError(f"Planning in workspace '{name}' failed", result)

    summary, text = _summarize(ctx, plan_file)
    headline = plan_headline(text)
    console.print(f"Summary: {headline or 'No changes'}", markup=False)

    if not ctx.confirm(f"Apply changes to workspace '{name}'?"):
        console.print("[yellow]Deployment cancelled.[/yellow]")
        _remove(plan_file)
        return WorkspaceResult(workspace=name, created=created, status=WorkflowStatus.CANCELLED,
                               summary=summary)

    applied = ctx.client.apply(plan_file)
    if not applied.ok:
        raise TerraformError(f"Apply in workspace '{name}' failed", applied)
    _remove(plan_file)

    if ctx.history is not None:
        ctx.history.record(name, WorkflowStatus.APPLIED.value, summary, workspace=name)
    console.print(f"[green bold]Deployment to workspace '{name}' successful![/green bold]")
    return WorkspaceResult(workspace=name, created=created, status=WorkflowStatus.APPLIED,
                           summary=summary)


# ══════════════════════════════════════════════════════════════════════════════
#  FORCED REPLACEMENT
# ══════════════════════════════════════════════════════════════════════════════


def replace_resources(ctx: WorkflowContext, addresses: list[str], ts: str = "") -> ReplaceResult:
    """Destroy and recreate specific resources via ``plan -replace``."""
    if not addresses:
        raise WorkflowError("At least one resource address is required")

    available = ctx.client.state_list()
    for address in addresses:
        if address not in available:
            raise ResourceNotFoundError(address, available)
        ctx.console.print(f"Will replace: [bold]{address}[/bold]")

    ctx.console.print("[yellow]This will destroy and recreate the specified resource(s)![/yellow]")
    plan_file = ctx.workdir / f"tfplan-replace-{ts or timestamp()}"
    outcome, result = ctx.client.plan(out=plan_file.name, replace=addresses)
    if outcome == PlanOutcome.ERROR:
        raise TerraformError("Replacement plan failed", result)

    if not ctx.confirm("Proceed with replacement?"):
        ctx.console.print("[yellow]Replacement cancelled.[/yellow]")
        _remove(plan_file)
        return ReplaceResult(addresses=addresses, status=WorkflowStatus.CANCELLED)

    applied = ctx.client.apply(plan_file)
    if not applied.ok:
        ctx.console.print(f"[red]Replacement failed![/red] Plan file saved: {plan_file.name}")
        raise TerraformError("Replacement failed", applied)

    _remove(plan_file)
    ctx.console.print("[green bold]Replacement successful![/green bold]")
    return ReplaceResult(addresses=addresses, status=WorkflowStatus.APPLIED)


# ══════════════════════════════════════════════════════════════════════════════
#  STATE MANAGEMENT
# ══════════════════════════════════════════════════════════════════════════════


class StateManager:
    """State surgery with an automatic backup before every mutation."""

    def __init__(self, ctx: WorkflowContext) -> None:
        self.ctx = ctx

    @property
    def client(self) -> TerraformClient:
        return self.ctx.client

    def backup(self, ts: str = "") -> Path:
        """Pull the current state into ``state-backup-<ts>.tfstate``."""
        path = self.ctx.workdir / f"state-backup-{ts or timestamp()}.tfstate"
        self.ctx.console.print("[yellow]Backing up state…[/yellow]")
        pulled = self.client.state_pull()
        if not pulled.ok:
            raise TerraformError("Backup failed", pulled)
        path.write_text(pulled.stdout, encoding="utf-8")
        self.ctx.console.print(f"[green]✓[/green] State backed up to: {path.name}")
        return path

    def list(self) -> list[str]:
        return self.client.state_list()

    def show(self, address: str) -> str:
        result = self.client.state_show(address)
        _require_ok(result, f"terraform state show {address}")
        return result.stdout

    def move(self, source: str, destination: str) -> WorkflowStatus:
        self.backup()
        self.ctx.console.print(f"Moving resource in state:\n  From: {source}\n  To:   {destination}")
        if not self.ctx.confirm("Continue?"):
            return WorkflowStatus.CANCELLED
        _require_ok(self.client.state_mv(source, destination), "terraform state mv")
        return WorkflowStatus.APPLIED

    def remove(self, address: str) -> WorkflowStatus:
        self.backup()
        self.ctx.console.print(
            "[red]WARNING: This will remove the resource from state.[/red]\n"
            "[yellow]The resource will still exist in AWS![/yellow]"
        )
        self.ctx.console.print(f"Resource: {address}")
        if not self.ctx.confirm("Are you sure?"):
            return WorkflowStatus.CANCELLED
        _require_ok(self.client.state_rm(address), "terraform state rm")
        return WorkflowStatus.APPLIED

    def import_resource(self, address: str, resource_id: str) -> WorkflowStatus:
        self.ctx.console.print(f"Importing resource:\n  Address: {address}\n  ID:      {resource_id}")
        _require_ok(self.client.import_resource(address, resource_id), "terraform import")
        return WorkflowStatus.APPLIED

    def pull(self, ts: str = "") -> StateStats:
        """Pull remote state to ``terraform-state-<ts>.tfstate`` and report its size."""
        path = self.ctx.workdir / f"terraform-state-{ts or timestamp()}.tfstate"
        pulled = self.client.state_pull()
        _require_ok(pulled, "terraform state pull")
        path.write_text(pulled.stdout, encoding="utf-8")
        try:
            resources = len(json.loads(pulled.stdout).get("resources", []))
        except json.JSONDecodeError:
            resources = 0
        return StateStats(path=path, resources=resources, size_bytes=path.stat().st_size)

    def push(self, state_file: Path) -> WorkflowStatus:
        state_file = Path(state_file)
        if not state_file.is_file():
            raise WorkflowError(f"File not found: {state_file}")
        self.backup()
        self.ctx.console.print("[red bold]DANGER: This will replace remote state![/red bold]")
        self.ctx.console.print(f"State file: {state_file}")
        if not self.ctx.confirm("Are you ABSOLUTELY sure?"):
            return WorkflowStatus.CANCELLED
        _require_ok(self.client.state_push(state_file), "terraform state push")
        return WorkflowStatus.APPLIED


# ══════════════════════════════════════════════════════════════════════════════
#  DOWNTIME CHECK
# ══════════════════════════════════════════════════════════════════════════════


def verify_no_downtime(ctx: WorkflowContext) -> DowntimeReport:
    """Plan without saving and report destroyed / replaced resources."""
    outcome, result = ctx.client.plan(no_color=True)
    if outcome == PlanOutcome.ERROR:
        raise TerraformError("terraform plan failed", result)
    return assess_downtime(parse_plan_text(result.stdout), plan_headline(result.stdout))


# ══════════════════════════════════════════════════════════════════════════════
#  BACKEND BOOTSTRAP
# ══════════════════════════════════════════════════════════════════════════════


def bootstrap_backend(
    ctx: WorkflowContext,
    session: Any,
    identifier: str,
    region: str = "",
    table: str = "",
    key_pair: str = "",
    key_dir: Path | None = None,
    extra_backend_files: list[Path] | None = None,
) -> BootstrapResult | None:
    """Create the state bucket and lock table, then point backend files at them.

    Returns None when the operator declines.
    """
    region = region or ctx.settings.aws_region
    table = table or ctx.settings.lock_table
    console = ctx.console

    account_id = aws.caller_account_id(session)
    console.print(f"[green]✓[/green] AWS Account: {account_id}")
    bucket = aws.state_bucket_name(identifier, account_id)

    console.print(f"Configuration:\n  Region: {region}\n  Bucket: {bucket}\n  Table:  {table}")
    if not ctx.confirm("Create these resources?"):
        console.print("Aborted.")
        return None

    bucket_result = aws.ensure_state_bucket(session, bucket, region)
    console.print(
        f"[green]✓[/green] Bucket {'created' if bucket_result.created else 'already exists'}: {bucket}"
    )
    table_result = aws.ensure_lock_table(session, table, region)
    console.print(
        f"[green]✓[/green] Table {'created' if table_result.created else 'already exists'}: {table}"
    )

    key_result = None
    if key_pair:
        key_result = aws.ensure_key_pair(
            session, key_pair, key_dir or Path.home() / ".ssh", region=region
        )
        console.print(
            f"[green]✓[/green] Key pair {'created' if key_result.created else 'already exists'}: {key_pair}"
        )

    updated = update_backend_files(
        ctx.workdir,
        bucket,
        region,
        environments=ctx.settings.environments,
        extra_files=extra_backend_files,
    )
    for path in updated:
        console.print(f"[green]✓[/green] Updated {path}")

    return BootstrapResult(
        account_id=account_id,
        region=region,
        bucket=bucket_result,
        table=table_result,
        key_pair=key_result,
        updated_files=updated,
    )


def bootstrap_terraform(ctx: WorkflowContext, session: Any) -> WorkflowStatus:
    """Apply the Terraform bootstrap module (bucket, table, keys) in ``ctx.workdir``."""
    workdir = ctx.workdir
    console = ctx.console
    if not (workdir / "main.tf").is_file():
        raise PrerequisiteError(f"No main.tf in {workdir}; run from the bootstrap directory")

    account_id = aws.caller_account_id(session)
    console.print(f"[green]✓[/green] AWS Account: {account_id}")

    tfvars = workdir / "terraform.tfvars"
    if not tfvars.is_file():
        example = workdir / "terraform.tfvars.example"
        if not example.is_file():
            raise PrerequisiteError("terraform.tfvars and terraform.tfvars.example are both missing")
        shutil.copyfile(example, tfvars)
        console.print("[green]✓[/green] Created terraform.tfvars from example")
        if not ctx.confirm("Continue with default values?"):
            console.print("Edit terraform.tfvars and run this command again")
            return WorkflowStatus.CANCELLED

    _require_ok(ctx.client.init(), "terraform init")
    plan_file = workdir / BOOTSTRAP_PLAN
    try:
        outcome, result = ctx.client.plan(out=plan_file.name)
        if outcome == PlanOutcome.ERROR:
            raise TerraformError("Bootstrap plan failed", result)
        if not ctx.confirm("Create these resources?"):
            console.print("Aborted.")
            return WorkflowStatus.CANCELLED
        _require_ok(ctx.client.apply(plan_file), "terraform apply")
    finally:
        _remove(plan_file)

    console.print("[green bold]Bootstrap complete![/green bold]")
    return WorkflowStatus.APPLIED


# ══════════════════════════════════════════════════════════════════════════════
#  LAYERED (SPLIT-STATE) APPLY
# ══════════════════════════════════════════════════════════════════════════════


def layered_apply(
    ctx: WorkflowContext,
    split_dir: Path,
    destroy: bool = False,
    client_factory: Callable[[Path], TerraformClient] | None = None,
) -> list[LayerResult]:
    """Init, plan and apply each layer in dependency order (reverse for destroy).

    Stops at the first layer that fails or is declined.
    """
    layers = discover_layers(split_dir)
    if not layers:
        raise WorkflowError(f"No NN-name layer directories in {split_dir}")
    for warning in validate_layers(layers):
        ctx.console.print(f"[yellow]⚠[/yellow] {warning}")

    factory = client_factory or (
        lambda path: TerraformClient(path, binary=ctx.client.binary, timeout=ctx.client.timeout)
    )
    ordered = destroy_order(layers) if destroy else apply_order(layers)
    results: list[LayerResult] = []

    for layer in ordered:
        ctx.console.rule(f"{layer.label} ({'destroy' if destroy else 'apply'})")
        client = factory(layer.path)
        if not client.initialized:
            _require_ok(client.init(), f"terraform init in {layer.label}")

        plan_file = layer.path / "tfplan-layer"
        outcome, result = client.plan(out=plan_file.name, destroy=destroy, detailed_exitcode=True)
        if outcome == PlanOutcome.ERROR:
            raise TerraformError(f"Plan failed in {layer.label}", result)
        if outcome == PlanOutcome.NO_CHANGES:
            _remove(plan_file)
            results.append(LayerResult(layer=layer.label, status=WorkflowStatus.NO_CHANGES))
            continue

        layer_ctx = WorkflowContext(client=client, settings=ctx.settings, confirm=ctx.confirm,
                                    console=ctx.console)
        summary, text = _summarize(layer_ctx, plan_file)
        _print_summary(layer_ctx, summary, text)

        if not ctx.confirm(f"Apply {layer.label}?"):
            _remove(plan_file)
            results.append(LayerResult(layer=layer.label, status=WorkflowStatus.CANCELLED,
                                       summary=summary))
            break

        applied = client.apply(plan_file)
        _remove(plan_file)
        if not applied.ok:
            raise TerraformError(f"Apply failed in {layer.label}", applied)
        results.append(LayerResult(layer=layer.label, status=WorkflowStatus.APPLIED, summary=summary))

    return results
