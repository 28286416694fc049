"""tf-workflows — safe Terraform deployment and state workflows for AWS monorepos."""

__version__ = "0.3.0"
