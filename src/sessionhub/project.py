"""Project detection and Claude Code transcript locations."""

import json
import logging
import re
import subprocess
import tomllib
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("sessionhub.project")

CLAUDE_PROJECTS_DIR = Path.home() / ".claude" / "projects"

PROJECT_MARKERS = (
    ".git",
    "package.json",
    "pyproject.toml",
    "setup.py",
    "Cargo.toml",
    "go.mod",
    "pom.xml",
    "build.gradle",
    "CMakeLists.txt",
    "Makefile",
    ".project",
    "composer.json",
    "requirements.txt",
    "environment.yml",
    "Pipfile",
)

GIT_TIMEOUT = 5


@dataclass
class ProjectInfo:
    path: Path
    name: str
    git_remote: str | None = None
    branch: str | None = None


def encode_project_dir(project_path: str | Path) -> str:
    """Directory name Claude Code uses for a project's transcripts."""
    return re.sub(r"[\\/]", "-", str(project_path)).replace("_", "-")


def claude_project_dir(project_path: str | Path, root: Path = CLAUDE_PROJECTS_DIR) -> Path:
    return root / encode_project_dir(project_path)


def find_project_root(start: Path) -> Path:
    """Nearest directory at or above ``start`` holding a project marker.

    Falls back to ``start`` when no marker is found.
    """
    start = start.resolve()
    for path in (start, *start.parents):
        if any((path / marker).exists() for marker in PROJECT_MARKERS):
            return path
    return start


def _git(project_root: Path, *args: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=project_root,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def get_git_remote(project_root: Path) -> str | None:
    return _git(project_root, "remote", "get-url", "origin")


def get_git_branch(project_root: Path) -> str | None:
    return _git(project_root, "branch", "--show-current")


def _name_from_manifest(project_root: Path) -> str | None:
    package_json = project_root / "package.json"
    if package_json.is_file():
        try:
            name = json.loads(package_json.read_text(encoding="utf-8")).get("name")
            if name:
                return name
        except (OSError, ValueError, AttributeError):
            pass

    for manifest, table in (("pyproject.toml", "project"), ("Cargo.toml", "package")):
        path = project_root / manifest
        if not path.is_file():
            continue
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError):
            continue
        name = data.get(table, {}).get("name")
        if not name and manifest == "pyproject.toml":
            name = data.get("tool", {}).get("poetry", {}).get("name")
        if name:
            return name

    go_mod = project_root / "go.mod"
    if go_mod.is_file():
        try:
            first_line = go_mod.read_text(encoding="utf-8").splitlines()[0].strip()
        except (OSError, IndexError):
            first_line = ""
        if first_line.startswith("module "):
            module = first_line[len("module "):].strip()
            return module.rsplit("/", 1)[-1] or module

    return None


def _name_from_remote(remote: str | None) -> str | None:
    if not remote:
        return None
    remote = remote.removesuffix(".git")
    if "/" not in remote:
        return None
    return remote.rsplit("/", 1)[-1] or None


def detect_project(current_path: Path) -> ProjectInfo:
    """Find the project root and name for a working directory."""
    root = find_project_root(current_path)
    remote = get_git_remote(root)
    name = _name_from_manifest(root) or _name_from_remote(remote) or root.name
    logger.debug("Detected project %s at %s", name, root)
    return ProjectInfo(path=root, name=name, git_remote=remote, branch=get_git_branch(root))
