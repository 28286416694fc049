"""Render CI/CD scaffolding (GitHub Actions, GitLab CI) using Jinja2 templates."""

from __future__ import annotations

import logging
import re
from enum import Enum
from importlib.resources import files as importlib_files
from pathlib import Path

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape
from pydantic import BaseModel, Field, field_validator

from tf_workflows.config import REQUIRED_TERRAFORM_VERSION, DEFAULT_REGION
from tf_workflows.errors import WorkflowError

logger = logging.getLogger(__name__)

# Resolve the templates directory via importlib.resources so it works in
# both editable installs and built wheels / sdists.
_TEMPLATES_REF = importlib_files("tf_workflows") / "templates"

_ACCOUNT_ID_RE = re.compile(r"^\d{12}$")


class Platform(str, Enum):
    GITHUB = "github"
    GITLAB = "gitlab"
    BOTH = "both"


class CICDOptions(BaseModel):
    """Inputs for the generated pipelines."""

    platform: Platform = Platform.GITHUB
    aws_region: str = DEFAULT_REGION
    aws_account_id: str
    project_path: str = "projects/project-charan/dev"
    approvers: int = Field(default=2, ge=1)
    terraform_version: str = REQUIRED_TERRAFORM_VERSION
    owners: list[str] = Field(default_factory=lambda: ["@platform-team"])
    prod_owners: list[str] = Field(
        default_factory=lambda: ["@platform-team", "@sre-team", "@security-team"],
    )

    @field_validator("aws_account_id")
    @classmethod
    def _check_account_id(cls, value: str) -> str:
        value = value.strip()
        if not _ACCOUNT_ID_RE.match(value):
            raise ValueError("AWS Account ID must be 12 digits")
        return value

    @field_validator("project_path")
    @classmethod
    def _strip_slashes(cls, value: str) -> str:
        return value.strip().strip("/")

    @property
    def github(self) -> bool:
        return self.platform in (Platform.GITHUB, Platform.BOTH)

    @property
    def gitlab(self) -> bool:
        return self.platform in (Platform.GITLAB, Platform.BOTH)


# (output path, template name, platform)
_OUTPUTS: list[tuple[str, str, Platform]] = [
    (".github/workflows/terraform-pr.yml", "github_pr.yml.j2", Platform.GITHUB),
    (".github/workflows/terraform-deploy.yml", "github_deploy.yml.j2", Platform.GITHUB),
    (".github/pull_request_template.md", "pull_request_template.md.j2", Platform.GITHUB),
    (".github/CODEOWNERS", "codeowners.j2", Platform.GITHUB),
    (".gitlab-ci.yml", "gitlab_ci.yml.j2", Platform.GITLAB),
    (".gitlab/CODEOWNERS", "codeowners.j2", Platform.GITLAB),
]


def _get_jinja_env() -> Environment:
    templates_dir = str(_TEMPLATES_REF)
    return Environment(
        loader=FileSystemLoader(templates_dir),
        autoescape=select_autoescape(default=False),
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


def render_cicd(options: CICDOptions) -> list[tuple[str, str]]:
    """Render every file for the selected platform(s).

    Returns a list of (relative_path, content) tuples.
    """
    env = _get_jinja_env()
    results: list[tuple[str, str]] = []
    for rel_path, template_name, platform in _OUTPUTS:
        if platform == Platform.GITHUB and not options.github:
            continue
        if platform == Platform.GITLAB and not options.gitlab:
            continue
        template = env.get_template(template_name)
        content = template.render(opts=options, target=platform.value)
        if rel_path.endswith(".yml"):
            _check_yaml(rel_path, content)
        results.append((rel_path, content))
    return results


def _check_yaml(rel_path: str, content: str) -> None:
    """Raise ``WorkflowError`` when a rendered pipeline does not parse as YAML."""
    try:
        yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise WorkflowError(f"Rendered {rel_path} is not valid YAML: {exc}") from exc


def write_cicd(options: CICDOptions, root: Path) -> list[str]:
    """Write the rendered files under *root* (a git repository) and return their paths."""
    root = Path(root)
    if not (root / ".git").exists():
        raise WorkflowError(f"Not in a git repository: {root}")

    written: list[str] = []
    for rel_path, content in render_cicd(options):
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        written.append(str(path))
        logger.info("Wrote %s", path)
    return written
