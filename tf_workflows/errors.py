"""Exception hierarchy shared by the workflows and the CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tf_workflows.terraform import CommandResult


class WorkflowError(Exception):
    """Base class for every error a workflow reports to the operator."""


class PrerequisiteError(WorkflowError):
    """A required tool, credential or file is missing."""


class ResourceNotFoundError(WorkflowError):
    """A state address does not exist in the current Terraform state."""

    def __init__(self, address: str, available: list[str]) -> None:
        self.address = address
        self.available = available
        super().__init__(f"Resource not found: {address}")


class TerraformError(WorkflowError):
    """A terraform subcommand exited unsuccessfully."""

    def __init__(self, message: str, result: CommandResult | None = None) -> None:
        self.result = result
        if result is not None and result.stderr:
            message = f"{message}: {result.stderr.strip()[:1000]}"
        super().__init__(message)


class AwsError(WorkflowError):
    """An AWS API call failed."""


class LayerOrderError(WorkflowError):
    """A split-state layer reads remote state from a layer that is not applied before it."""
