"""Backend configuration files: rewrite placeholders, find and classify backends."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import hcl2

from tf_workflows.models import BackendConfig

logger = logging.getLogger(__name__)

BUCKET_PLACEHOLDER = "your-terraform-state-bucket"

_REGION_LINE_RE = re.compile(r"^(?P<indent>\s*)region\s*=.*$", re.MULTILINE)

_SKIP_DIRS = frozenset({".git", ".terraform", "node_modules", "vendor"})


# ══════════════════════════════════════════════════════════════════════════════
#  HCL HELPERS
# ══════════════════════════════════════════════════════════════════════════════


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _scalar(value: Any) -> Any:
    """Normalise a python-hcl2 attribute value to a plain Python scalar."""
    # Older python-hcl2 releases wrap attribute values in single-item lists.
    if isinstance(value, list) and len(value) == 1:
        value = value[0]
    if isinstance(value, str):
        value = _unquote(value)
        if value.startswith("${") and value.endswith("}"):
            value = value[2:-1]
    return value


def _blocks(value: Any) -> list[dict[str, Any]]:
    """Return a block body (or list of bodies) as a list of dicts."""
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, dict)]
    return []


def _labelled(block: dict[str, Any]) -> list[tuple[str, dict[str, Any]]]:
    """Yield ``(label, body)`` pairs from a labelled block mapping."""
    pairs: list[tuple[str, dict[str, Any]]] = []
    for label, body in block.items():
        if label.startswith("__"):
            continue
        for b in _blocks(body):
            pairs.append((_unquote(label), b))
    return pairs


def load_hcl(path: Path) -> dict[str, Any]:
    """Parse an HCL file; returns an empty dict (and logs) when it is not valid HCL."""
    try:
        with open(path, encoding="utf-8") as f:
            return hcl2.load(f)
    except Exception as exc:
        logger.warning("Failed to parse %s: %s", path, exc)
        return {}


def iter_tf_files(root: Path, name: str = "*.tf") -> list[Path]:
    """Find Terraform files under *root*, skipping caches and dot-directories."""
    found: list[Path] = []
    for path in sorted(root.rglob(name)):
        rel_parts = path.relative_to(root).parts
        if any(part in _SKIP_DIRS or part.startswith(".") for part in rel_parts[:-1]):
            continue
        found.append(path)
    return found


# ══════════════════════════════════════════════════════════════════════════════
#  BACKEND DISCOVERY
# ══════════════════════════════════════════════════════════════════════════════


def backend_blocks(parsed: dict[str, Any]) -> list[tuple[str, dict[str, Any]]]:
    """Return ``(backend_type, body)`` for every backend in a parsed file."""
    found: list[tuple[str, dict[str, Any]]] = []
    for terraform_block in _blocks(parsed.get("terraform", [])):
        for backend in _blocks(terraform_block.get("backend", [])):
            found.extend(_labelled(backend))
    return found


def backend_type(path: Path) -> str:
    """Return the backend type declared in *path* (``s3``, ``local``, …) or ``""``."""
    blocks = backend_blocks(load_hcl(path))
    return blocks[0][0] if blocks else ""


def read_backend_config(path: Path) -> BackendConfig | None:
    """Return the S3 backend settings declared in *path*, if any."""
    for kind, body in backend_blocks(load_hcl(path)):
        if kind != "s3":
            continue
        return BackendConfig(
            bucket=str(_scalar(body.get("bucket", ""))),
            key=str(_scalar(body.get("key", ""))),
            region=str(_scalar(body.get("region", ""))),
            dynamodb_table=str(_scalar(body.get("dynamodb_table", ""))),
            encrypt=bool(_scalar(body.get("encrypt", False))),
        )
    return None


def find_backends(root: Path) -> dict[str, list[Path]]:
    """Group every ``backend.tf`` under *root* by backend type."""
    grouped: dict[str, list[Path]] = {}
    for path in iter_tf_files(root, "backend.tf"):
        kind = backend_type(path)
        if not kind:
            continue
        grouped.setdefault(kind, []).append(path)
    return grouped


def remote_state_keys(path: Path) -> dict[str, str]:
    """Map ``terraform_remote_state`` data source names to the state key they read.

    Accepts a single file or a module directory (all ``*.tf`` files in it).
    """
    files = sorted(path.glob("*.tf")) if path.is_dir() else [path]
    keys: dict[str, str] = {}
    for tf_file in files:
        parsed = load_hcl(tf_file)
        for data_block in _blocks(parsed.get("data", [])):
            for kind, sources in data_block.items():
                if _unquote(kind) != "terraform_remote_state":
                    continue
                for source_block in _blocks(sources):
                    for name, body in _labelled(source_block):
                        config = body.get("config", {})
                        if isinstance(config, list):
                            config = config[0] if config else {}
                        key = _scalar(config.get("key", "")) if isinstance(config, dict) else ""
                        if key:
                            keys[name] = str(key)
    return keys


# ══════════════════════════════════════════════════════════════════════════════
#  PLACEHOLDER REWRITING
# ══════════════════════════════════════════════════════════════════════════════


def rewrite_backend_text(text: str, bucket: str, region: str) -> str:
    """Swap the bucket placeholder and pin every ``region = …`` line to *region*."""
    text = text.replace(BUCKET_PLACEHOLDER, bucket)
    return _REGION_LINE_RE.sub(lambda m: f'{m.group("indent")}region = "{region}"', text)


def update_backend_files(
    root: Path,
    bucket: str,
    region: str,
    environments: list[str] | None = None,
    extra_files: list[Path] | None = None,
) -> list[Path]:
    """Rewrite ``backend-config/<env>.hcl`` and any extra backend files in place.

    Returns the files that actually changed; missing files are skipped.
    """
    environments = environments or ["dev", "staging", "prod"]
    candidates = [root / "backend-config" / f"{env}.hcl" for env in environments]
    candidates.extend(root / p if not Path(p).is_absolute() else Path(p) for p in extra_files or [])

    updated: list[Path] = []
    for path in candidates:
        if not path.is_file():
            logger.debug("Skipping missing backend file %s", path)
            continue
        original = path.read_text(encoding="utf-8")
        rewritten = rewrite_backend_text(original, bucket, region)
        if rewritten != original:
            path.write_text(rewritten, encoding="utf-8")
            updated.append(path)
            logger.info("Updated %s", path)
    return updated
