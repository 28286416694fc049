"""Shared test fixtures."""

from __future__ import annotations

import textwrap
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from tf_workflows.config import Settings
from tf_workflows.models import PlanOutcome
from tf_workflows.terraform import TerraformClient
from tf_workflows.workflows import WorkflowContext

from helpers import PLAN_JSON, PLAN_TEXT, ok


@pytest.fixture()
def mock_client(tmp_path: Path) -> MagicMock:
    """A TerraformClient double rooted at tmp_path with a clean plan by default."""
    client = MagicMock(spec=TerraformClient)
    client.working_dir = tmp_path
    client.binary = "terraform"
    client.timeout = 600
    client.initialized = True
    client.fmt.return_value = ok()
    client.validate.return_value = ok("Success! The configuration is valid.")
    client.init.return_value = ok()
    client.plan.return_value = (PlanOutcome.CHANGES, ok(PLAN_TEXT))
    client.show.return_value = ok(PLAN_TEXT)
    client.show_json.return_value = PLAN_JSON
    client.apply.return_value = ok("Apply complete!")
    client.state_list.return_value = ["aws_instance.web", "aws_vpc.main"]
    client.state_pull.return_value = ok('{"version": 4, "resources": [{}, {}]}')
    client.workspace_list.return_value = ["default", "prod"]
    client.workspace_show.return_value = "default"
    return client


@pytest.fixture()
def make_ctx(tmp_path: Path, mock_client: MagicMock):
    """Build a WorkflowContext around ``mock_client`` with a scripted confirm."""

    def _make(answer: bool = True, **kwargs) -> WorkflowContext:
        prompts: list[str] = []

        def confirm(prompt: str) -> bool:
            prompts.append(prompt)
            return answer

        ctx = WorkflowContext(
            client=mock_client,
            settings=Settings(working_dir=str(tmp_path)),
            confirm=confirm,
            console=Console(quiet=True),
            **kwargs,
        )
        ctx.prompts = prompts  # type: ignore[attr-defined]
        return ctx

    return _make


@pytest.fixture()
def tf_repo(tmp_path: Path) -> Path:
    """Create a minimal Terraform monorepo layout."""
    (tmp_path / "backend-config").mkdir()
    for env in ("dev", "staging", "prod"):
        (tmp_path / "backend-config" / f"{env}.hcl").write_text(
            textwrap.dedent(f"""\
            bucket         = "your-terraform-state-bucket"
            key            = "project/{env}/terraform.tfstate"
            region         = "us-east-1"
            dynamodb_table = "terraform-locks"
            encrypt        = true
            """)
        )

    dev = tmp_path / "projects" / "project-charan" / "dev"
    dev.mkdir(parents=True)
    (dev / "backend.tf").write_text(
        textwrap.dedent("""\
        terraform {
          backend "s3" {
            bucket         = "your-terraform-state-bucket"
            key            = "project-charan/dev/terraform.tfstate"
            region         = "us-east-1"
            dynamodb_table = "terraform-locks"
            encrypt        = true
          }
        }
        """)
    )
    (dev / "main.tf").write_text(
        textwrap.dedent("""\
        resource "aws_instance" "web" {
          ami           = "ami-123"
          instance_type = "t3.micro"
        }
        """)
    )

    legacy = tmp_path / "projects" / "legacy" / "dev"
    legacy.mkdir(parents=True)
    (legacy / "backend.tf").write_text(
        textwrap.dedent("""\
        terraform {
          backend "local" {
            path = "terraform.tfstate"
          }
        }
        """)
    )
    return tmp_path


def _layer(root: Path, name: str, key: str, reads: dict[str, str] | None = None) -> Path:
    layer = root / name
    layer.mkdir()
    (layer / "backend.tf").write_text(
        textwrap.dedent(f"""\
        terraform {{
          backend "s3" {{
            bucket = "state-bucket"
            key    = "{key}"
            region = "us-east-1"
          }}
        }}
        """)
    )
    blocks = []
    for source, source_key in (reads or {}).items():
        blocks.append(textwrap.dedent(f"""\
        data "terraform_remote_state" "{source}" {{
          backend = "s3"
          config = {{
            bucket = "state-bucket"
            key    = "{source_key}"
            region = "us-east-1"
          }}
        }}
        """))
    (layer / "data.tf").write_text("\n".join(blocks))
    return layer


@pytest.fixture()
def split_dir(tmp_path: Path) -> Path:
    """A dev-split directory: networking <- database <- compute."""
    root = tmp_path / "dev-split"
    root.mkdir()
    _layer(root, "01-networking", "project/dev/networking.tfstate")
    _layer(root, "02-database", "project/dev/database.tfstate",
           {"networking": "project/dev/networking.tfstate"})
    _layer(root, "03-compute", "project/dev/compute.tfstate",
           {"networking": "project/dev/networking.tfstate",
            "database": "project/dev/database.tfstate"})
    (root / "README.md").write_text("not a layer")
    return root


@pytest.fixture()
def make_layer():
    return _layer
