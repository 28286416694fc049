"""Command results and plan fixtures shared by the test modules."""

from __future__ import annotations

import textwrap

from tf_workflows.terraform import CommandResult


def ok(stdout: str = "", command: str = "terraform") -> CommandResult:
    return CommandResult(command=command, returncode=0, stdout=stdout, stderr="")


def failed(stderr: str = "boom", returncode: int = 1) -> CommandResult:
    return CommandResult(command="terraform", returncode=returncode, stdout="", stderr=stderr)


PLAN_TEXT = textwrap.dedent("""\
    Terraform will perform the following actions:

      # aws_instance.web will be created
      + resource "aws_instance" "web" {
          + ami = "ami-123"
        }

      # aws_security_group.web must be replaced
    -/+ resource "aws_security_group" "web" {
        }

      # aws_s3_bucket.logs will be destroyed
      - resource "aws_s3_bucket" "logs" {
        }

    Plan: 2 to add, 0 to change, 2 to destroy.
""")

REPLACE_FORMS_TEXT = textwrap.dedent("""\
    Terraform will perform the following actions:

      # aws_instance.web is tainted, so must be replaced
    -/+ resource "aws_instance" "web" {
        }

      # aws_db_instance.main will be replaced, as requested
    -/+ resource "aws_db_instance" "main" {
        }

      # aws_lb.front will be replaced due to changes in replace_triggered_by
    +/- resource "aws_lb" "front" {
        }

    Plan: 3 to add, 0 to change, 3 to destroy.
""")

PLAN_JSON = {
    "format_version": "1.2",
    "resource_changes": [
        {"address": "aws_instance.web", "change": {"actions": ["create"]}},
        {"address": "aws_security_group.web", "change": {"actions": ["delete", "create"]}},
        {"address": "aws_s3_bucket.logs", "change": {"actions": ["delete"]}},
        {"address": "aws_vpc.main", "change": {"actions": ["no-op"]}},
    ],
}
