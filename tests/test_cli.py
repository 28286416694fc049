"""Tests for the ``tfw`` command line."""

from __future__ import annotations

import textwrap
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from tf_workflows import __version__
from tf_workflows.cli import main
from tf_workflows.errors import ResourceNotFoundError, TerraformError
from tf_workflows.history import DeploymentHistory
from tf_workflows.models import (
    AuditReport,
    BootstrapResult,
    DeployResult,
    DowntimeReport,
    EnsureResult,
    Finding,
    LayerResult,
    PlanSummary,
    Severity,
    WorkflowStatus,
)

from helpers import failed, ok


@pytest.fixture()
def runner(monkeypatch) -> CliRunner:
    # Wide console so rich tables never wrap cell text
    monkeypatch.setenv("COLUMNS", "200")
    return CliRunner()


@pytest.fixture()
def tf_client(tmp_path: Path):
    """Replace the TerraformClient the CLI builds with a MagicMock."""
    with patch("tf_workflows.cli.TerraformClient") as cls:
        client = cls.return_value
        client.working_dir = tmp_path
        client.state_list.return_value = ["aws_instance.web", "aws_vpc.main"]
        client.state_pull.return_value = ok('{"version": 4, "resources": []}')
        yield client


class TestMain:
    def test_version(self, runner: CliRunner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner: CliRunner):
        result = runner.invoke(main, ["--help"])
        for command in ("deploy", "workspace", "replace", "state", "audit", "cicd", "layers"):
            assert command in result.output


class TestDeploy:
    def test_success(self, runner: CliRunner, tmp_path: Path):
        deployed = DeployResult(
            environment="dev", timestamp="t", status=WorkflowStatus.APPLIED,
            summary=PlanSummary(to_add=1),
        )
        with patch("tf_workflows.cli.deploy_with_plan", return_value=deployed) as mock_deploy:
            result = runner.invoke(main, ["deploy", "dev", "--chdir", str(tmp_path)])
        assert result.exit_code == 0, result.output
        assert "Plan: 1 to add" in result.output
        ctx = mock_deploy.call_args.args[0]
        assert ctx.client.working_dir == tmp_path.resolve()
        assert ctx.history is not None

    def test_failure_exits_1(self, runner: CliRunner, tmp_path: Path):
        with patch("tf_workflows.cli.deploy_with_plan",
                   side_effect=TerraformError("Deployment failed", failed("quota exceeded"))):
            result = runner.invoke(main, ["deploy", "--chdir", str(tmp_path)])
        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "quota exceeded" in result.output


class TestReplace:
    def test_without_addresses_lists_resources(self, runner: CliRunner, tf_client, tmp_path):
        result = runner.invoke(main, ["replace", "--chdir", str(tmp_path)])
        assert result.exit_code == 1
        assert "aws_instance.web" in result.output

    def test_unknown_address(self, runner: CliRunner, tf_client, tmp_path):
        with patch("tf_workflows.cli.replace_resources",
                   side_effect=ResourceNotFoundError("aws_instance.x", ["aws_vpc.main"])):
            result = runner.invoke(main, ["replace", "aws_instance.x", "--chdir", str(tmp_path)])
        assert result.exit_code == 1
        assert "Resource not found: aws_instance.x" in result.output
        assert "aws_vpc.main" in result.output

    def test_without_addresses_reports_state_error(self, runner: CliRunner, tf_client, tmp_path):
        tf_client.state_list.side_effect = TerraformError(
            "terraform state list failed", failed("Error: Backend initialization required")
        )
        result = runner.invoke(main, ["replace", "--chdir", str(tmp_path)])
        assert result.exit_code == 1
        assert "Backend initialization required" in result.output


class TestState:
    def test_list(self, runner: CliRunner, tf_client, tmp_path):
        result = runner.invoke(main, ["state", "list", "--chdir", str(tmp_path)])
        assert result.exit_code == 0
        assert "Total: 2 resources" in result.output

    def test_list_failure_is_not_an_empty_state(self, runner: CliRunner, tf_client, tmp_path):
        tf_client.state_list.side_effect = TerraformError("terraform state list failed", failed("state locked"))
        result = runner.invoke(main, ["state", "list", "--chdir", str(tmp_path)])
        assert result.exit_code == 1
        assert "state locked" in result.output
        assert "Total:" not in result.output

    def test_rm_requires_typed_yes(self, runner: CliRunner, tf_client, tmp_path):
        tf_client.state_rm.return_value = ok()
        result = runner.invoke(main, ["state", "rm", "aws_instance.web", "--chdir", str(tmp_path)],
                               input="y\n")
        assert result.exit_code == 0
        assert "Operation cancelled" in result.output
        tf_client.state_rm.assert_not_called()

        result = runner.invoke(main, ["state", "rm", "aws_instance.web", "--chdir", str(tmp_path)],
                               input="yes\n")
        assert result.exit_code == 0
        tf_client.state_rm.assert_called_once_with("aws_instance.web")
        assert len(list(tmp_path.glob("state-backup-*.tfstate"))) >= 1

    def test_push_missing_file(self, runner: CliRunner, tf_client, tmp_path):
        result = runner.invoke(
            main, ["state", "push", str(tmp_path / "nope.tfstate"), "--chdir", str(tmp_path)]
        )
        assert result.exit_code == 1
        assert "File not found" in result.output

    def test_inspect(self, runner: CliRunner, tmp_path: Path):
        (tmp_path / "backend.tf").write_text(textwrap.dedent("""\
            terraform {
              backend "s3" {
                bucket         = "tf-state"
                key            = "dev/terraform.tfstate"
                region         = "eu-west-1"
                dynamodb_table = "locks"
              }
            }
        """))
        versions = [{"key": "dev/terraform.tfstate", "version_id": "v1", "is_latest": True,
                     "last_modified": "2024-01-01", "size": 42}]
        with patch("tf_workflows.cli.aws.get_session"), \
             patch("tf_workflows.cli.aws.lock_info", return_value=None) as mock_lock, \
             patch("tf_workflows.cli.aws.state_versions", return_value=versions):
            result = runner.invoke(main, ["state", "inspect", "--chdir", str(tmp_path)])
        assert result.exit_code == 0, result.output
        assert "Not locked" in result.output
        assert "v1" in result.output
        assert mock_lock.call_args.args[1:] == ("locks", "tf-state/dev/terraform.tfstate")

    def test_inspect_without_backend(self, runner: CliRunner, tmp_path: Path):
        result = runner.invoke(main, ["state", "inspect", "--chdir", str(tmp_path)])
        assert result.exit_code == 1
        assert "No S3 backend" in result.output


class TestBackend:
    def test_backend_yes(self, runner: CliRunner, tmp_path: Path):
        bootstrapped = BootstrapResult(
            account_id="123456789012",
            region="eu-west-1",
            bucket=EnsureResult(name="terraform-state-acme-123456789012", created=True),
            table=EnsureResult(name="terraform-locks", created=False),
        )
        with patch("tf_workflows.cli.aws.get_session"), \
             patch("tf_workflows.cli.bootstrap_backend", return_value=bootstrapped) as mock_boot:
            result = runner.invoke(main, [
                "backend", "--chdir", str(tmp_path), "--identifier", "acme",
                "--region", "eu-west-1", "--yes",
            ])
        assert result.exit_code == 0, result.output
        assert "Backend setup complete" in result.output
        ctx = mock_boot.call_args.args[0]
        assert ctx.settings.aws_region == "eu-west-1"
        assert ctx.confirm("Create these resources?") is True
        assert mock_boot.call_args.kwargs["identifier"] == "acme"

    def test_backend_aborted(self, runner: CliRunner, tmp_path: Path):
        with patch("tf_workflows.cli.aws.get_session"), \
             patch("tf_workflows.cli.bootstrap_backend", return_value=None):
            result = runner.invoke(main, ["backend", "--chdir", str(tmp_path), "--identifier", "x"])
        assert result.exit_code == 0

    def test_backend_prompt_accepts_y(self, runner: CliRunner, tmp_path: Path):
        answers = []

        def _boot(ctx, session, **kwargs):
            answers.append(ctx.confirm("Create these resources?"))

        with patch("tf_workflows.cli.aws.get_session"), \
             patch("tf_workflows.cli.bootstrap_backend", side_effect=_boot):
            result = runner.invoke(main, ["backend", "--chdir", str(tmp_path), "--identifier", "x"],
                                   input="y\n")
        assert result.exit_code == 0, result.output
        assert answers == [True]


class TestCheckDowntime:
    def test_unsafe_plan_exits_2(self, runner: CliRunner, tmp_path: Path):
        report = DowntimeReport(replaced=["aws_instance.web"], headline="Plan: 1 to add, 0 to change, 1 to destroy.")
        with patch("tf_workflows.cli.verify_no_downtime", return_value=report):
            result = runner.invoke(main, ["check-downtime", "--chdir", str(tmp_path)])
        assert result.exit_code == 2
        assert "aws_instance.web" in result.output

    def test_safe_plan(self, runner: CliRunner, tmp_path: Path):
        with patch("tf_workflows.cli.verify_no_downtime", return_value=DowntimeReport()):
            result = runner.invoke(main, ["check-downtime", "--chdir", str(tmp_path)])
        assert result.exit_code == 0
        assert "No downtime risk" in result.output

    def test_destroy_count_without_addresses_exits_2(self, runner: CliRunner, tmp_path: Path):
        report = DowntimeReport(to_destroy=1, headline="Plan: 1 to add, 0 to change, 1 to destroy.")
        with patch("tf_workflows.cli.verify_no_downtime", return_value=report):
            result = runner.invoke(main, ["check-downtime", "--chdir", str(tmp_path)])
        assert result.exit_code == 2
        assert "No downtime risk" not in result.output


class TestLayers:
    def test_layers(self, runner: CliRunner, split_dir: Path):
        results = [LayerResult(layer="01-networking", status=WorkflowStatus.APPLIED)]
        with patch("tf_workflows.cli.layered_apply", return_value=results) as mock_apply:
            result = runner.invoke(main, ["layers", str(split_dir), "--destroy"])
        assert result.exit_code == 0, result.output
        assert "01-networking" in result.output
        assert mock_apply.call_args.kwargs["destroy"] is True


class TestAudit:
    def test_issues_exit_1(self, runner: CliRunner, tmp_path: Path):
        report = AuditReport(root=str(tmp_path), findings=[
            Finding(check="gitignore", severity=Severity.ISSUE, message="Missing in .gitignore: *.pem"),
        ])
        with patch("tf_workflows.cli.run_audit", return_value=report):
            result = runner.invoke(main, ["audit", str(tmp_path), "--quiet"])
        assert result.exit_code == 1
        assert "NEEDS ATTENTION" in result.output

    def test_good(self, runner: CliRunner, tmp_path: Path):
        report = AuditReport(root=str(tmp_path), findings=[
            Finding(check="gitignore", severity=Severity.OK, message=".gitignore properly configured"),
        ])
        with patch("tf_workflows.cli.run_audit", return_value=report):
            result = runner.invoke(main, ["audit", str(tmp_path)])
        assert result.exit_code == 0
        assert "SECURITY STATUS: GOOD" in result.output
        assert "Secrets Manager" in result.output


class TestCicd:
    def test_generates_files(self, runner: CliRunner, tmp_path: Path):
        (tmp_path / ".git").mkdir()
        result = runner.invoke(main, [
            "cicd", str(tmp_path), "--platform", "gitlab", "--region", "us-east-1",
            "--account-id", "123456789012", "--project-path", "projects/app/dev",
            "--approvers", "2",
        ])
        assert result.exit_code == 0, result.output
        assert (tmp_path / ".gitlab-ci.yml").is_file()
        assert not (tmp_path / ".github").exists()

    def test_bad_account_id(self, runner: CliRunner, tmp_path: Path):
        (tmp_path / ".git").mkdir()
        result = runner.invoke(main, [
            "cicd", str(tmp_path), "--platform", "github", "--region", "us-east-1",
            "--account-id", "42", "--project-path", "projects/app/dev", "--approvers", "2",
        ])
        assert result.exit_code == 1
        assert "12 digits" in result.output


class TestHistory:
    def test_empty(self, runner: CliRunner, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("TF_WORKFLOWS_HISTORY_DB", raising=False)
        result = runner.invoke(main, ["history", "--chdir", str(tmp_path)])
        assert result.exit_code == 0
        assert "No deployments recorded" in result.output

    def test_lists_deployments(self, runner: CliRunner, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("TF_WORKFLOWS_HISTORY_DB", raising=False)
        store = DeploymentHistory(tmp_path / ".tfw" / "history.db")
        store.record("prod", "applied", PlanSummary(to_add=3), operator="ci")
        store.close()
        result = runner.invoke(main, ["history", "prod", "--chdir", str(tmp_path)])
        assert result.exit_code == 0
        assert "prod" in result.output
        assert "applied" in result.output

    def test_accepts_verbose(self, runner: CliRunner, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("TF_WORKFLOWS_HISTORY_DB", raising=False)
        result = runner.invoke(main, ["history", "--verbose", "--chdir", str(tmp_path)])
        assert result.exit_code == 0


class TestSetup:
    def test_missing_terraform_exits_1(self, runner: CliRunner, tmp_path: Path):
        with patch("tf_workflows.prereqs.shutil.which", return_value=None):
            result = runner.invoke(main, ["setup", "--chdir", str(tmp_path)])
        assert result.exit_code == 1
        assert "terraform not installed" in result.output

    def test_full_setup(self, runner: CliRunner, tmp_path: Path, tf_client):
        (tmp_path / "projects").mkdir()
        tf_client.version.return_value = "1.8.0"
        with patch("tf_workflows.prereqs.shutil.which", return_value="/usr/bin/tool"), \
             patch("tf_workflows.prereqs.run_command", return_value=ok("installed")), \
             patch("tf_workflows.cli.aws.get_session"), \
             patch("tf_workflows.cli.check_aws_credentials", return_value="123456789012"):
            result = runner.invoke(main, ["setup", "--chdir", str(tmp_path)])
        assert result.exit_code == 0, result.output
        assert "Terraform 1.8.0" in result.output
        assert "Projects directory exists" in result.output
        assert "Account: 123456789012" in result.output
