"""CLI entry-point for tf-workflows (``tfw``)."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Callable

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from tf_workflows import __version__
from tf_workflows import aws
from tf_workflows.audit import run_audit
from tf_workflows.backend import read_backend_config
from tf_workflows.config import Settings
from tf_workflows.errors import ResourceNotFoundError, WorkflowError
from tf_workflows.history import DeploymentHistory
from tf_workflows.models import Severity, WorkflowStatus
from tf_workflows.prereqs import (
    check_aws_credentials,
    check_tools,
    fix_projects_typo,
    install_hooks,
    terraform_version_ok,
)
from tf_workflows.renderer import CICDOptions, Platform, write_cicd
from tf_workflows.terraform import TerraformClient
from tf_workflows.workflows import (
    StateManager,
    WorkflowContext,
    bootstrap_backend,
    bootstrap_terraform,
    deploy_to_workspace,
    deploy_with_plan,
    layered_apply,
    replace_resources,
    verify_no_downtime,
)

console = Console()


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quieten noisy libraries
    for name in ("botocore", "boto3", "urllib3", "git"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _confirm_typed(prompt: str) -> bool:
    """Require the operator to type ``yes`` in full."""
    answer = click.prompt(f"{prompt} (yes/no)", default="", show_default=False)
    return answer.strip() == "yes"


def _confirm_yn(prompt: str) -> bool:
    return click.confirm(prompt, default=False)


def _fail(exc: Exception) -> None:
    console.print(f"[red bold]Error:[/red bold] {exc}")
    sys.exit(1)


def _settings(chdir: str, verbose: bool, **overrides: Any) -> Settings:
    settings = Settings(working_dir=chdir, verbose=verbose)
    for key, value in overrides.items():
        if value:
            setattr(settings, key, value)
    return settings


def _context(
    settings: Settings,
    confirm: Callable[[str], bool] = _confirm_typed,
    with_history: bool = False,
) -> WorkflowContext:
    client = TerraformClient(
        settings.resolved_working_dir,
        binary=settings.terraform_bin,
        timeout=settings.command_timeout,
    )
    history = DeploymentHistory(settings.resolved_history_db) if with_history else None
    return WorkflowContext(
        client=client, settings=settings, confirm=confirm, console=console, history=history
    )


def _session(settings: Settings) -> Any:
    return aws.get_session(region=settings.aws_region, profile=settings.aws_profile)


chdir_option = click.option(
    "--chdir", "-C", default=".", help="Terraform root module directory."
)
verbose_option = click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")


@click.group()
@click.version_option(version=__version__, prog_name="tfw")
def main() -> None:
    """tf-workflows — safe Terraform deployment and state workflows."""


# ══════════════════════════════════════════════════════════════════════════════
#  setup / backend / bootstrap
# ══════════════════════════════════════════════════════════════════════════════


@main.command()
@chdir_option
@click.option("--skip-hooks", is_flag=True, help="Do not install pre-commit / tflint hooks.")
@verbose_option
def setup(chdir: str, skip_hooks: bool, verbose: bool) -> None:
    """Check prerequisites, install hooks and verify the repository layout."""
    _configure_logging(verbose)
    settings = _settings(chdir, verbose)
    root = settings.resolved_working_dir

    console.print(Panel("Checking prerequisites", style="bold cyan"))
    statuses = check_tools()
    for status in statuses:
        if status.installed:
            console.print(f"  [green]✓[/green] {status.name} installed")
        elif status.required:
            console.print(f"  [red]✗[/red] {status.name} not installed  (run: {status.hint})")
        else:
            console.print(f"  [yellow]⚠[/yellow] {status.name} not found  (run: {status.hint})")

    if not any(s.name == "terraform" and s.installed for s in statuses):
        sys.exit(1)

    version = TerraformClient(root, binary=settings.terraform_bin).version()
    if not terraform_version_ok(version, settings.required_terraform_version):
        console.print(
            f"  [red]✗[/red] Terraform {version or 'unknown'} is too old "
            f"(need >= {settings.required_terraform_version})"
        )
        sys.exit(1)
    console.print(f"  [green]✓[/green] Terraform {version} >= {settings.required_terraform_version}")

    if not skip_hooks:
        console.print(Panel("Setting up Git hooks", style="bold cyan"))
        results = install_hooks(root, statuses)
        for tool, result in results.items():
            mark = "[green]✓[/green]" if result.ok else "[red]✗[/red]"
            console.print(f"  {mark} {tool}: {result.summary.strip() or 'ok'}")
        if not results:
            console.print("  [yellow]⚠[/yellow] Skipping hooks (pre-commit / tflint not installed)")

    console.print(Panel("Checking directory structure", style="bold cyan"))
    layout = fix_projects_typo(root, _confirm_yn)
    messages = {
        "renamed": "[green]✓[/green] Renamed projecdts -> projects",
        "declined": "[yellow]⚠[/yellow] Left 'projecdts' as is",
        "conflict": "[red]✗[/red] Both 'projecdts' and 'projects' exist. Please resolve manually.",
        "ok": "[green]✓[/green] Projects directory exists",
        "missing": "[red]✗[/red] No projects directory found",
    }
    console.print(f"  {messages[layout]}")

    console.print(Panel("AWS configuration", style="bold cyan"))
    account_id = check_aws_credentials(_session(settings))
    if account_id:
        console.print(f"  [green]✓[/green] AWS credentials configured (Account: {account_id})")
    else:
        console.print("  [yellow]⚠[/yellow] AWS credentials not configured  (run: aws configure)")

    console.print("\n[green bold]Setup complete![/green bold] Next: [bold]tfw backend[/bold]")


@main.command()
@chdir_option
@click.option("--region", default="", help="AWS region (default: AWS_REGION or us-east-1).")
@click.option("--profile", default="", help="AWS CLI profile name.")
@click.option("--identifier", prompt="Unique identifier for bucket (e.g. your-company)",
              help="Unique identifier embedded in the bucket name.")
@click.option("--table", default="", help="DynamoDB lock table name.")
@click.option("--key-pair", default="", help="Also create this EC2 key pair.")
@click.option("--key-dir", default="", help="Where to save the key pair (default: ~/.ssh).")
@click.option("--backend-file", "backend_files", multiple=True,
              help="Extra backend.tf file(s) to rewrite, relative to --chdir.")
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Do not ask for confirmation.")
@verbose_option
def backend(
    chdir: str,
    region: str,
    profile: str,
    identifier: str,
    table: str,
    key_pair: str,
    key_dir: str,
    backend_files: tuple[str, ...],
    assume_yes: bool,
    verbose: bool,
) -> None:
    """Create the S3 state bucket and DynamoDB lock table, then update backend files."""
    _configure_logging(verbose)
    settings = _settings(chdir, verbose, aws_region=region, aws_profile=profile, lock_table=table)
    confirm = (lambda prompt: True) if assume_yes else _confirm_yn
    ctx = _context(settings, confirm=confirm)

    console.print(Panel("AWS Terraform backend setup", style="bold cyan"))
    try:
        result = bootstrap_backend(
            ctx,
            _session(settings),
            identifier=identifier,
            key_pair=key_pair,
            key_dir=Path(key_dir).expanduser() if key_dir else None,
            extra_backend_files=[Path(p) for p in backend_files],
        )
    except (WorkflowError, ValueError) as exc:
        _fail(exc)
        return

    if result is None:
        sys.exit(0)

    table_view = Table(title="Backend", show_header=False)
    table_view.add_row("S3 Bucket", result.bucket.name)
    table_view.add_row("DynamoDB Table", result.table.name)
    table_view.add_row("Region", result.region)
    if result.key_pair:
        table_view.add_row("Key pair", result.key_pair.detail or result.key_pair.name)
    console.print(table_view)
    console.print("[green bold]Backend setup complete![/green bold]")


@main.command()
@click.argument("directory", default="bootstrap")
@verbose_option
def bootstrap(directory: str, verbose: bool) -> None:
    """Apply the Terraform bootstrap module in DIRECTORY (default: bootstrap)."""
    _configure_logging(verbose)
    settings = _settings(directory, verbose)
    ctx = _context(settings, confirm=_confirm_yn)

    console.print(Panel("Terraform backend bootstrap", style="bold cyan"))
    try:
        status = bootstrap_terraform(ctx, _session(settings))
    except WorkflowError as exc:
        _fail(exc)
        return
    if status == WorkflowStatus.APPLIED:
        console.print("Private keys saved to: bootstrap/keys/  [yellow](secure them!)[/yellow]")


# ══════════════════════════════════════════════════════════════════════════════
#  deploy / workspace / replace / check-downtime / layers
# ══════════════════════════════════════════════════════════════════════════════


@main.command()
@click.argument("environment", default="dev")
@chdir_option
@verbose_option
def deploy(environment: str, chdir: str, verbose: bool) -> None:
    """Plan to a file, review, apply, archive the plan and tag the deployment."""
    _configure_logging(verbose)
    ctx = _context(_settings(chdir, verbose), with_history=True)

    console.print(Panel(f"Terraform deployment — {environment}", style="bold cyan"))
    try:
        result = deploy_with_plan(ctx, environment)
    except WorkflowError as exc:
        _fail(exc)
        return
    finally:
        if ctx.history is not None:
            ctx.history.close()

    if result.status == WorkflowStatus.APPLIED:
        console.print(f"[green]✓[/green] {result.summary.headline}")


@main.command()
@click.argument("name")
@chdir_option
@verbose_option
def workspace(name: str, chdir: str, verbose: bool) -> None:
    """Deploy into workspace NAME (created if missing) for testing changes."""
    _configure_logging(verbose)
    ctx = _context(_settings(chdir, verbose), with_history=True)

    console.print(Panel(f"Terraform workspace deployment — {name}", style="bold cyan"))
    try:
        result = deploy_to_workspace(ctx, name)
    except WorkflowError as exc:
        _fail(exc)
        return
    finally:
        if ctx.history is not None:
            ctx.history.close()

    if result.status == WorkflowStatus.APPLIED:
        console.print("\nWhen satisfied, switch back and apply to the real environment:")
        console.print("  terraform workspace select prod && tfw deploy prod")
        console.print(f"To clean up: terraform destroy, then terraform workspace delete {name}")


@main.command()
@click.argument("addresses", nargs=-1)
@chdir_option
@verbose_option
def replace(addresses: tuple[str, ...], chdir: str, verbose: bool) -> None:
    """Force recreation of the resources at ADDRESSES."""
    _configure_logging(verbose)
    ctx = _context(_settings(chdir, verbose))

    if not addresses:
        console.print("Usage: tfw replace <resource-address> [resource-address2 ...]\n")
        console.print("Available resources:")
        try:
            available = ctx.client.state_list()
        except WorkflowError as exc:
            _fail(exc)
            return
        for address in available:
            console.print(f"  {address}", markup=False)
        sys.exit(1)

    console.print(Panel("Terraform resource replacement", style="bold cyan"))
    try:
        replace_resources(ctx, list(addresses))
    except ResourceNotFoundError as exc:
        console.print(f"[red bold]Error:[/red bold] {exc}\n\nAvailable resources:")
        for address in exc.available:
            console.print(f"  {address}", markup=False)
        sys.exit(1)
    except WorkflowError as exc:
        _fail(exc)


@main.command("check-downtime")
@chdir_option
@verbose_option
def check_downtime(chdir: str, verbose: bool) -> None:
    """Plan and list resources that would be destroyed or replaced."""
    _configure_logging(verbose)
    ctx = _context(_settings(chdir, verbose))

    try:
        report = verify_no_downtime(ctx)
    except WorkflowError as exc:
        _fail(exc)
        return

    def _section(title: str, items: list[str], empty: str) -> None:
        console.print(f"\n[bold]{title}[/bold]")
        for item in items:
            console.print(f"  {item}", markup=False)
        if not items:
            console.print(f"  {empty}")

    _section("Resources to be DESTROYED:", report.destroyed, "None - SAFE [green]✓[/green]")
    _section("Resources to be REPLACED (destroy + create):", report.replaced,
             "None - SAFE [green]✓[/green]")
    _section("Resources to be CREATED:", report.created, "None")
    console.print(f"\n[bold]Summary:[/bold] {report.headline or 'No changes.'}")

    if report.safe:
        console.print("[green bold]No downtime risk detected.[/green bold]")
    else:
        console.print("[red bold]This plan destroys or replaces resources.[/red bold]")
        sys.exit(2)


@main.command()
@click.argument("split_dir")
@click.option("--destroy", is_flag=True, help="Destroy layers in reverse order.")
@verbose_option
def layers(split_dir: str, destroy: bool, verbose: bool) -> None:
    """Apply (or destroy) NN-name layer directories of a split-state project in order."""
    _configure_logging(verbose)
    settings = _settings(split_dir, verbose)
    ctx = _context(settings)

    try:
        results = layered_apply(ctx, settings.resolved_working_dir, destroy=destroy)
    except (WorkflowError, FileNotFoundError) as exc:
        _fail(exc)
        return

    table = Table(title="Layers")
    table.add_column("Layer", style="bold")
    table.add_column("Status")
    table.add_column("Plan")
    for r in results:
        table.add_row(r.layer, r.status.value, r.summary.headline if r.summary.has_changes else "")
    console.print(table)


# ══════════════════════════════════════════════════════════════════════════════
#  state
# ══════════════════════════════════════════════════════════════════════════════


@main.group()
def state() -> None:
    """State management (every mutation takes a backup first)."""


def _state_manager(chdir: str, verbose: bool) -> StateManager:
    _configure_logging(verbose)
    return StateManager(_context(_settings(chdir, verbose)))


def _report_status(status: WorkflowStatus, done: str) -> None:
    if status == WorkflowStatus.APPLIED:
        console.print(f"[green]✓[/green] {done}")
    else:
        console.print("[yellow]Operation cancelled[/yellow]")


@state.command("list")
@chdir_option
@verbose_option
def state_list(chdir: str, verbose: bool) -> None:
    """List all resources in state."""
    try:
        addresses = _state_manager(chdir, verbose).list()
    except WorkflowError as exc:
        _fail(exc)
        return
    for address in addresses:
        console.print(address, markup=False)
    console.print(f"[green]Total: {len(addresses)} resources[/green]")


@state.command("show")
@click.argument("address")
@chdir_option
@verbose_option
def state_show(address: str, chdir: str, verbose: bool) -> None:
    """Show details of a specific resource."""
    try:
        console.print(_state_manager(chdir, verbose).show(address), markup=False)
    except WorkflowError as exc:
        _fail(exc)


@state.command("mv")
@click.argument("source")
@click.argument("destination")
@chdir_option
@verbose_option
def state_mv(source: str, destination: str, chdir: str, verbose: bool) -> None:
    """Rename a resource in state."""
    try:
        status = _state_manager(chdir, verbose).move(source, destination)
    except WorkflowError as exc:
        _fail(exc)
        return
    _report_status(status, "Resource moved successfully")


@state.command("rm")
@click.argument("address")
@chdir_option
@verbose_option
def state_rm(address: str, chdir: str, verbose: bool) -> None:
    """Remove a resource from state (it is NOT deleted from AWS)."""
    try:
        status = _state_manager(chdir, verbose).remove(address)
    except WorkflowError as exc:
        _fail(exc)
        return
    _report_status(status, "Resource removed from state (it still exists in AWS)")


@state.command("import")
@click.argument("address")
@click.argument("resource_id")
@chdir_option
@verbose_option
def state_import(address: str, resource_id: str, chdir: str, verbose: bool) -> None:
    """Import an existing AWS resource into ADDRESS."""
    try:
        _state_manager(chdir, verbose).import_resource(address, resource_id)
    except WorkflowError as exc:
        _fail(exc)
        return
    console.print("[green]✓[/green] Import successful")
    console.print("Next: add the resource configuration, then run terraform plan until it is clean.")


@state.command("pull")
@chdir_option
@verbose_option
def state_pull(chdir: str, verbose: bool) -> None:
    """Pull remote state to a timestamped local file."""
    try:
        stats = _state_manager(chdir, verbose).pull()
    except WorkflowError as exc:
        _fail(exc)
        return
    console.print(f"[green]✓[/green] State saved to: {stats.path}")
    console.print(f"  Resources: {stats.resources}")
    console.print(f"  Size: {stats.size_bytes} bytes")


@state.command("push")
@click.argument("state_file", type=click.Path(dir_okay=False))
@chdir_option
@verbose_option
def state_push(state_file: str, chdir: str, verbose: bool) -> None:
    """Push a local state file to the remote backend (DANGEROUS)."""
    try:
        status = _state_manager(chdir, verbose).push(Path(state_file))
    except WorkflowError as exc:
        _fail(exc)
        return
    _report_status(status, "State pushed")


@state.command("backup")
@chdir_option
@verbose_option
def state_backup(chdir: str, verbose: bool) -> None:
    """Create a state backup."""
    try:
        _state_manager(chdir, verbose).backup()
    except WorkflowError as exc:
        _fail(exc)


@state.command("inspect")
@chdir_option
@click.option("--limit", default=10, type=int, help="Number of state versions to show.")
@verbose_option
def state_inspect(chdir: str, limit: int, verbose: bool) -> None:
    """Show who holds the state lock and the stored versions of the state object."""
    _configure_logging(verbose)
    settings = _settings(chdir, verbose)
    config = None
    for tf_file in sorted(settings.resolved_working_dir.glob("*.tf")):
        config = read_backend_config(tf_file)
        if config is not None:
            break
    if config is None or not config.bucket or not config.key:
        _fail(WorkflowError(f"No S3 backend with bucket and key in {settings.resolved_working_dir}"))
        return

    region = config.region or settings.aws_region
    table = config.dynamodb_table or settings.lock_table
    session = _session(settings)
    try:
        lock = aws.lock_info(session, table, f"{config.bucket}/{config.key}", region=region)
        versions = aws.state_versions(session, config.bucket, config.key, region=region)
    except WorkflowError as exc:
        _fail(exc)
        return

    console.print(f"[bold]State:[/bold] s3://{config.bucket}/{config.key}")
    if lock is None:
        console.print("[green]✓[/green] Not locked")
    else:
        console.print(f"[yellow]⚠[/yellow] Locked ({table})")
        console.print(f"  {lock.get('Info', lock)}", markup=False)

    table_view = Table(title="State versions")
    table_view.add_column("Version")
    table_view.add_column("Modified")
    table_view.add_column("Size", justify="right")
    table_view.add_column("Latest")
    for v in versions[:limit]:
        table_view.add_row(
            v["version_id"], v["last_modified"], str(v["size"]), "✓" if v["is_latest"] else ""
        )
    console.print(table_view)


# ══════════════════════════════════════════════════════════════════════════════
#  audit / cicd / history
# ══════════════════════════════════════════════════════════════════════════════


_RECOMMENDATIONS = """\
[yellow]State management[/yellow]
  • Use the S3 backend with versioning and encryption, and DynamoDB for locking
[yellow]Secrets management[/yellow]
  • Move DB passwords to AWS Secrets Manager
      aws secretsmanager create-secret --name "<project>/<env>/db-password" \\
        --secret-string '{"password":"..."}'
  • Move SSH keys to SSM Parameter Store
      aws ssm put-parameter --name /ec2/keys/<key-name> \\
        --value "$(cat bootstrap/keys/<key-name>.pem)" --type SecureString
  • Use IAM roles instead of access keys, and mark sensitive variables
[yellow]Access control & auditing[/yellow]
  • Restrict the state bucket policy, enable S3 access logging and CloudTrail
  • Archive plan files for compliance (tfw deploy does this)
"""


@main.command()
@click.argument("root", default=".")
@click.option("--quiet", "-q", is_flag=True, help="Skip the recommendations section.")
@verbose_option
def audit(root: str, quiet: bool, verbose: bool) -> None:
    """Audit ROOT for secrets in Git, missing ignores, local backends and keys."""
    _configure_logging(verbose)

    try:
        report = run_audit(Path(root))
    except WorkflowError as exc:
        _fail(exc)
        return

    style = {
        Severity.ISSUE: "[red]ISSUE[/red]",
        Severity.WARNING: "[yellow]WARN[/yellow]",
        Severity.OK: "[green]OK[/green]",
    }
    table = Table(title="Terraform Security Audit", show_lines=True)
    table.add_column("Check", style="bold")
    table.add_column("Status")
    table.add_column("Finding")
    for finding in report.findings:
        text = finding.message
        if finding.path:
            text += f"\n{finding.path}"
        if finding.details:
            text += "\n" + "\n".join(finding.details[:10])
        table.add_row(finding.check, style[finding.severity], Text(text))
    console.print(table)
    console.print(
        f"Backends: [green]{report.remote_backends}[/green] remote, "
        f"[yellow]{report.local_backends}[/yellow] local"
    )

    if not quiet:
        console.print(Panel(_RECOMMENDATIONS, title="Security Recommendations", style="cyan"))

    if report.issue_count == 0:
        console.print("[green bold]SECURITY STATUS: GOOD[/green bold]")
        return
    console.print(
        f"[red bold]SECURITY STATUS: {report.status}[/red bold] — "
        f"{report.issue_count} issue(s) requiring action"
    )
    sys.exit(1)


@main.command()
@click.argument("root", default=".")
@click.option("--platform", type=click.Choice([p.value for p in Platform]),
              prompt="CI/CD platform", default=Platform.GITHUB.value)
@click.option("--region", default="us-east-1", prompt="AWS Region")
@click.option("--account-id", prompt="AWS Account ID", help="12-digit AWS account id.")
@click.option("--project-path", default="projects/project-charan/dev",
              prompt="Terraform project path")
@click.option("--approvers", default=2, type=int, prompt="Required approvers count")
@verbose_option
def cicd(
    root: str,
    platform: str,
    region: str,
    account_id: str,
    project_path: str,
    approvers: int,
    verbose: bool,
) -> None:
    """Generate GitHub Actions and/or GitLab CI pipelines for Terraform."""
    _configure_logging(verbose)
    try:
        options = CICDOptions(
            platform=Platform(platform),
            aws_region=region,
            aws_account_id=account_id,
            project_path=project_path,
            approvers=approvers,
        )
        written = write_cicd(options, Path(root))
    except (WorkflowError, ValueError) as exc:
        _fail(exc)
        return

    console.print("[green bold]CI/CD configuration created:[/green bold]")
    for path in written:
        console.print(f"  • {path}")
    console.print(
        f"\nNext: commit the files, configure AWS OIDC for the pipeline role, "
        f"protect 'main' with {options.approvers} required approvals, and update CODEOWNERS teams."
    )


@main.command()
@click.argument("environment", default="")
@chdir_option
@click.option("--limit", default=10, type=int, help="Number of deployments to show.")
@verbose_option
def history(environment: str, chdir: str, limit: int, verbose: bool) -> None:
    """Show recent deployments (optionally for one ENVIRONMENT)."""
    _configure_logging(verbose)
    settings = _settings(chdir, verbose)
    store = DeploymentHistory(settings.resolved_history_db)
    try:
        rows = store.recent(environment, limit=limit)
    finally:
        store.close()

    if not rows:
        console.print("[yellow]No deployments recorded.[/yellow]")
        return

    table = Table(title="Deployments")
    for column in ("When", "Env", "Workspace", "Status", "+", "~", "-", "Tag", "By"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            row["deployed_at"][:19],
            row["environment"],
            row["workspace"],
            row["status"],
            str(row["to_add"]),
            str(row["to_change"]),
            str(row["to_destroy"]),
            row["git_tag"],
            row["operator"],
        )
    console.print(table)


if __name__ == "__main__":
    main()
