"""Security audit of a Terraform repository.

Verifies that state files, keys and tfvars never reach Git, that
``.gitignore`` protects them, that state lives in a remote backend, and
that no credentials are hardcoded in ``.tf`` / ``.tfvars`` files.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

import pathspec
from git import Repo as GitRepo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from tf_workflows.backend import find_backends
from tf_workflows.errors import WorkflowError
from tf_workflows.models import AuditReport, Finding, Severity

logger = logging.getLogger(__name__)

CHECK_TRACKED = "tracked-files"
CHECK_GITIGNORE = "gitignore"
CHECK_LOCAL = "local-files"
CHECK_BACKENDS = "backends"
CHECK_SECRETS = "hardcoded-secrets"
CHECK_SSH_KEYS = "ssh-keys"

SENSITIVE_PATTERNS = [
    "terraform.tfstate",
    "terraform.tfstate.backup",
    "*.pem",
    "*.key",
    "terraform.tfvars",
]

REQUIRED_IGNORES = [
    "*.tfstate",
    "*.tfstate.*",
    "*.tfvars",
    "*.pem",
    "*.key",
    "bootstrap/keys/",
    ".terraform/",
]

LOCAL_SENSITIVE_GLOBS = ["*.tfstate", "*.pem", "*.key"]

SECRET_PATTERNS: dict[str, re.Pattern[str]] = {
    "password": re.compile(r'password\s*=\s*"[^"]*"'),
    "secret_key": re.compile(r'secret_key\s*=\s*"[^"]*"'),
    "access_key": re.compile(r'access_key\s*=\s*"[^"]*"'),
    "aws_access_key_id": re.compile(r"AKIA[0-9A-Z]{16}"),
}

KEYS_DIR = Path("bootstrap") / "keys"

_SKIP_DIRS = frozenset({".git", ".terraform"})


def _open_repo(root: Path) -> GitRepo:
    try:
        return GitRepo(root, search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError) as exc:
        raise WorkflowError(f"Not in a git repository: {root}") from exc


def _tracked_files(repo: GitRepo, root: Path) -> set[str]:
    """Tracked paths relative to *root* (posix separators)."""
    output = repo.git.ls_files(str(root))
    work_tree = Path(repo.working_tree_dir or root).resolve()
    root = root.resolve()
    tracked: set[str] = set()
    for line in output.splitlines():
        if not line.strip():
            continue
        # ls-files paths are relative to the cwd git ran in (the work tree).
        absolute = (work_tree / line).resolve()
        try:
            tracked.add(absolute.relative_to(root).as_posix())
        except ValueError:
            continue
    return tracked


def _walk(root: Path, globs: list[str]) -> list[Path]:
    found: list[Path] = []
    for pattern in globs:
        for path in root.rglob(pattern):
            if not path.is_file():
                continue
            if any(part in _SKIP_DIRS for part in path.relative_to(root).parts):
                continue
            found.append(path)
    return sorted(set(found))


# ══════════════════════════════════════════════════════════════════════════════
#  CHECKS
# ══════════════════════════════════════════════════════════════════════════════


def check_tracked_sensitive(repo: GitRepo, tracked: set[str]) -> list[Finding]:
    """[1] Sensitive files tracked now, or ever committed."""
    findings: list[Finding] = []
    for pattern in SENSITIVE_PATTERNS:
        spec = pathspec.PathSpec.from_lines("gitwildmatch", [pattern])
        matches = sorted(p for p in tracked if spec.match_file(p) and "example" not in p)
        if matches:
            findings.append(Finding(
                check=CHECK_TRACKED,
                severity=Severity.ISSUE,
                message=f"Sensitive files tracked in Git ({pattern})",
                details=matches,
            ))

        try:
            history = repo.git.log("--all", "--full-history", "--oneline", "--", pattern)
        except GitCommandError:
            history = ""
        if history.strip():
            findings.append(Finding(
                check=CHECK_TRACKED,
                severity=Severity.WARNING,
                message=(
                    f"Pattern '{pattern}' found in Git history "
                    "(may have been committed and deleted; consider git filter-repo)"
                ),
                details=history.strip().splitlines()[:10],
            ))

    if not any(f.severity == Severity.ISSUE for f in findings):
        findings.append(Finding(
            check=CHECK_TRACKED, severity=Severity.OK, message="No sensitive files tracked in Git"
        ))
    return findings


def check_gitignore(root: Path) -> list[Finding]:
    """[2] Every required ignore pattern appears in ``.gitignore``."""
    gitignore = root / ".gitignore"
    content = gitignore.read_text(encoding="utf-8") if gitignore.is_file() else ""
    findings = [
        Finding(
            check=CHECK_GITIGNORE,
            severity=Severity.ISSUE,
            message=f"Missing in .gitignore: {pattern}",
            path=".gitignore",
        )
        for pattern in REQUIRED_IGNORES
        if pattern not in content
    ]
    if not findings:
        findings.append(Finding(
            check=CHECK_GITIGNORE, severity=Severity.OK, message=".gitignore properly configured"
        ))
    return findings


def check_local_sensitive(root: Path, tracked: set[str]) -> list[Finding]:
    """[3] Sensitive files present in the working tree."""
    findings: list[Finding] = []
    for path in _walk(root, LOCAL_SENSITIVE_GLOBS):
        rel = path.relative_to(root).as_posix()
        state = "TRACKED" if rel in tracked else "not tracked"
        findings.append(Finding(
            check=CHECK_LOCAL,
            severity=Severity.WARNING,
            message=f"Sensitive file found locally ({state})",
            path=rel,
        ))
    if not findings:
        findings.append(Finding(
            check=CHECK_LOCAL,
            severity=Severity.OK,
            message="No local sensitive files found (or properly ignored)",
        ))
    return findings


def check_backends(root: Path, report: AuditReport) -> list[Finding]:
    """[4] Remote vs local backends under ``projects/``."""
    projects = root / "projects"
    grouped = find_backends(projects) if projects.is_dir() else {}
    report.remote_backends = len(grouped.get("s3", []))
    report.local_backends = len(grouped.get("local", []))

    findings = [
        Finding(
            check=CHECK_BACKENDS,
            severity=Severity.WARNING,
            message="Local backend (should migrate to S3)",
            path=path.relative_to(root).as_posix(),
        )
        for path in grouped.get("local", [])
    ]
    if report.remote_backends:
        findings.append(Finding(
            check=CHECK_BACKENDS,
            severity=Severity.OK,
            message=f"Remote backends configured: {report.remote_backends}",
        ))
    return findings


def check_hardcoded_secrets(root: Path) -> list[Finding]:
    """[5] Credential-looking assignments in ``.tf`` / ``.tfvars`` files."""
    files = [p for p in _walk(root, ["*.tf", "*.tfvars"]) if "example" not in p.name]
    findings: list[Finding] = []
    for name, regex in SECRET_PATTERNS.items():
        matches: list[str] = []
        for path in files:
            try:
                lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
            except OSError as exc:
                logger.warning("Cannot read %s: %s", path, exc)
                continue
            rel = path.relative_to(root).as_posix()
            for lineno, line in enumerate(lines, 1):
                if regex.search(line):
                    matches.append(f"{rel}:{lineno}: {line.strip()}")
        if matches:
            findings.append(Finding(
                check=CHECK_SECRETS,
                severity=Severity.ISSUE,
                message=f"Potential hardcoded secrets ({name})",
                details=matches,
            ))
    if not findings:
        findings.append(Finding(
            check=CHECK_SECRETS, severity=Severity.OK, message="No hardcoded secrets detected"
        ))
    return findings


def check_ssh_keys(root: Path, tracked: set[str]) -> list[Finding]:
    """[6] Private keys kept in ``bootstrap/keys/``."""
    keys_dir = root / KEYS_DIR
    if not keys_dir.is_dir():
        return [Finding(
            check=CHECK_SSH_KEYS, severity=Severity.OK,
            message=f"{KEYS_DIR.as_posix()}/ directory doesn't exist",
        )]

    keys = sorted(keys_dir.rglob("*.pem"))
    if not keys:
        return [Finding(
            check=CHECK_SSH_KEYS, severity=Severity.OK,
            message=f"No SSH keys in {KEYS_DIR.as_posix()}/",
        )]

    findings = [Finding(
        check=CHECK_SSH_KEYS,
        severity=Severity.WARNING,
        message=(
            f"Found {len(keys)} SSH key(s) in {KEYS_DIR.as_posix()}/; "
            "consider moving them to SSM Parameter Store (SecureString)"
        ),
        details=[k.relative_to(root).as_posix() for k in keys],
    )]
    for key in keys:
        rel = key.relative_to(root).as_posix()
        if rel in tracked:
            findings.append(Finding(
                check=CHECK_SSH_KEYS,
                severity=Severity.ISSUE,
                message="Key tracked in Git",
                path=rel,
            ))
    return findings


# ══════════════════════════════════════════════════════════════════════════════
#  MAIN ENTRY POINT
# ══════════════════════════════════════════════════════════════════════════════


def run_audit(root: Path) -> AuditReport:
    """Run every check against the repository at *root*."""
    root = Path(root).resolve()
    repo = _open_repo(root)
    tracked = _tracked_files(repo, root)
    logger.info("Auditing %s (%d tracked files)", root, len(tracked))

    report = AuditReport(root=str(root))
    report.findings.extend(check_tracked_sensitive(repo, tracked))
    report.findings.extend(check_gitignore(root))
    report.findings.extend(check_local_sensitive(root, tracked))
    report.findings.extend(check_backends(root, report))
    report.findings.extend(check_hardcoded_secrets(root))
    report.findings.extend(check_ssh_keys(root, tracked))

    logger.info("Audit complete: %d issue(s), %d warning(s)", report.issue_count, len(report.warnings))
    return report
