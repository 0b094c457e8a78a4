"""Static detection of what a project needs to run inside a container.

Inspects marker files, scans scripts for invoked CLI tools, harvests env var
names from docs and dotenv files, and resolves skill/plugin references.
Analysis never raises; an unreadable directory yields an ``unknown`` result.
"""

from __future__ import annotations

import asyncio
import dataclasses
import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from runbox.logger import logger
from runbox.skills import detect_skill_requirements, merge_skill_repos
from runbox.types import CacheVolume, ProjectRequirements, SkillRepo

# Checked in order; the first marker present decides the type.
PROJECT_TYPE_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("npm", ("package.json",)),
    ("pip", ("requirements.txt", "pyproject.toml", "setup.py", "Pipfile")),
    ("cargo", ("Cargo.toml",)),
    ("go", ("go.mod",)),
    ("maven", ("pom.xml",)),
    ("gradle", ("build.gradle", "build.gradle.kts")),
)

SHELL_MARKERS = ("run.sh", "setup.sh", "Makefile", "makefile")
ROOT_SCRIPTS = ("run.sh", "setup.sh", "start.sh", "build.sh", "deploy.sh")
DOC_FILES = ("CLAUDE.md", "AGENTS.md")
DOTENV_FILES = (".env", ".env.example", ".env.local")

BASE_IMAGES: dict[str, str] = {
    "npm": "node:20",
    "pip": "python:3.11",
    "cargo": "rust:1.75",
    "go": "golang:1.21",
    "maven": "maven:3.9-eclipse-temurin-17",
    "gradle": "gradle:8.5-jdk17",
    "shell": "ubuntu:22.04",
    "unknown": "ubuntu:22.04",
}
NODE_IMAGE = "node:20"

SETUP_COMMANDS: dict[str, tuple[str, ...]] = {
    "npm": ("npm install",),
    "pip": ("pip install -r requirements.txt || pip install -e . || true",),
    "cargo": ("cargo fetch",),
    "go": ("go mod download",),
    "maven": ("mvn dependency:resolve",),
    "gradle": ("gradle dependencies",),
}

CACHE_VOLUMES: dict[str, tuple[CacheVolume, ...]] = {
    "npm": (CacheVolume("npm-cache", "/root/.npm"),),
    "pip": (CacheVolume("pip-cache", "/root/.cache/pip"),),
    "cargo": (
        CacheVolume("cargo-registry", "/usr/local/cargo/registry"),
        CacheVolume("cargo-target", "/workspace/target"),
    ),
    "go": (
        CacheVolume("go-mod-cache", "/go/pkg/mod"),
        CacheVolume("go-build-cache", "/root/.cache/go-build"),
    ),
    "maven": (CacheVolume("maven-repo", "/root/.m2/repository"),),
    "gradle": (CacheVolume("gradle-cache", "/root/.gradle"),),
}
APT_CACHE_VOLUME = CacheVolume("apt-cache", "/var/cache/apt")


@dataclass(frozen=True)
class ToolRule:
    pattern: re.Pattern[str]
    tool: str
    apt_packages: tuple[str, ...] = ()
    npm_global_packages: tuple[str, ...] = ()
    env_vars: tuple[str, ...] = ()


TOOL_RULES: tuple[ToolRule, ...] = (
    ToolRule(re.compile(r"\b(magick|convert)\b"), "imagemagick", ("imagemagick",)),
    ToolRule(
        re.compile(r"\bclaude\s+(--model|-p|--print)\b"),
        "claude-cli",
        npm_global_packages=("@anthropic-ai/claude-code",),
        env_vars=("ANTHROPIC_API_KEY",),
    ),
    # node comes from the base image upgrade
    ToolRule(re.compile(r"\bnpx\s+"), "npx"),
    ToolRule(re.compile(r"\bjq\b"), "jq", ("jq",)),
    ToolRule(re.compile(r"\bcurl\b"), "curl", ("curl",)),
    ToolRule(re.compile(r"\bwget\b"), "wget", ("wget",)),
    ToolRule(re.compile(r"\bgit\b"), "git", ("git",)),
    ToolRule(re.compile(r"\bpython3?\b"), "python", ("python3",)),
    ToolRule(re.compile(r"\bffmpeg\b"), "ffmpeg", ("ffmpeg",)),
    ToolRule(re.compile(r"\bsqlite3\b"), "sqlite3", ("sqlite3",)),
)

_DOC_ENV_RE = re.compile(r"\b([A-Z][A-Z0-9]*(?:_[A-Z0-9]+)+)\b")
_DOC_ENV_SUFFIXES = ("_KEY", "_TOKEN", "_SECRET", "_URL")
_DOC_ENV_PREFIXES = ("ANTHROPIC_", "OPENAI_", "GOOGLE_", "GEMINI_", "GITHUB_", "TAVILY_", "AWS_")
_DOTENV_NAME_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")


def _add_unique(target: list[str], items: Iterable[str]) -> None:
    for item in items:
        if item not in target:
            target.append(item)


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def detect_project_type(root: Path) -> str:
    for project_type, markers in PROJECT_TYPE_MARKERS:
        if any((root / marker).exists() for marker in markers):
            return project_type
    if any((root / marker).exists() for marker in SHELL_MARKERS):
        return "shell"
    bin_dir = root / "bin"
    if bin_dir.is_dir() and any(bin_dir.iterdir()):
        return "shell"
    return "unknown"


def collect_script_contents(root: Path) -> list[str]:
    """Bodies of ``bin/*``, root shell scripts and agent docs, in that order."""
    contents: list[str] = []
    bin_dir = root / "bin"
    if bin_dir.is_dir():
        for entry in sorted(bin_dir.iterdir()):
            if entry.is_file() and (text := _read_text(entry)) is not None:
                contents.append(text)

    seen: set[str] = set()
    named = [root / name for name in ROOT_SCRIPTS]
    for script in [*named, *sorted(root.glob("*.sh"))]:
        if script.name in seen or not script.is_file():
            continue
        seen.add(script.name)
        if (text := _read_text(script)) is not None:
            contents.append(text)

    for doc in DOC_FILES:
        if (text := _read_text(root / doc)) is not None:
            contents.append(text)
    return contents


def doc_env_var_names(root: Path) -> list[str]:
    names: list[str] = []
    for doc in DOC_FILES:
        text = _read_text(root / doc)
        if text is None:
            continue
        for name in _DOC_ENV_RE.findall(text):
            if name.endswith(_DOC_ENV_SUFFIXES) or name.startswith(_DOC_ENV_PREFIXES):
                _add_unique(names, [name])
    return names


def dotenv_var_names(root: Path) -> list[str]:
    """Variable names (never values) from the project's dotenv files."""
    names: list[str] = []
    for env_file in DOTENV_FILES:
        text = _read_text(root / env_file)
        if text is None:
            continue
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export ") :].lstrip()
            name, sep, _ = line.partition("=")
            name = name.strip()
            if sep and name and _DOTENV_NAME_RE.match(name):
                _add_unique(names, [name])
    return names


def build_setup_commands(
    base_image: str,
    project_type: str,
    apt_packages: Iterable[str],
    npm_global_packages: Iterable[str],
) -> list[str]:
    """One aggregate OS install, one aggregate global npm install, then project deps."""
    commands: list[str] = []
    apt = list(apt_packages)
    if apt:
        joined = " ".join(apt)
        if "alpine" in base_image:
            commands.append(f"apk add --no-cache {joined}")
        else:
            commands.append(
                f"apt-get update -qq && apt-get install -y -qq {joined} && rm -rf /var/lib/apt/lists/*"
            )
    npm = list(npm_global_packages)
    if npm:
        commands.append(f"npm install -g {' '.join(npm)}")
    commands.extend(SETUP_COMMANDS.get(project_type, ()))
    return commands


def _cache_volumes(project_type: str, has_os_packages: bool) -> tuple[CacheVolume, ...]:
    volumes = CACHE_VOLUMES.get(project_type, ())
    if has_os_packages:
        volumes = (*volumes, APT_CACHE_VOLUME)
    return volumes


def with_skill_repos(
    requirements: ProjectRequirements, extra: Iterable[SkillRepo]
) -> ProjectRequirements:
    """Return a copy with *extra* skill repos merged in and setup rebuilt.

    Any skill repo forces ``git`` into the OS package set, since repos are
    cloned inside the container.
    """
    repos = merge_skill_repos(requirements.skill_repos, extra)
    apt = list(requirements.apt_packages)
    for repo in repos:
        _add_unique(apt, repo.apt_packages)
    if repos:
        _add_unique(apt, ["git"])
    if apt == list(requirements.apt_packages) and len(repos) == len(requirements.skill_repos):
        return requirements
    return dataclasses.replace(
        requirements,
        apt_packages=tuple(apt),
        skill_repos=tuple(repos),
        setup_commands=tuple(
            build_setup_commands(
                requirements.base_image,
                requirements.project_type,
                apt,
                requirements.npm_global_packages,
            )
        ),
        cache_volumes=_cache_volumes(requirements.project_type, bool(apt)),
    )


def analyze_directory(root: Path) -> ProjectRequirements:
    """Synchronous analysis; raises OSError if *root* cannot be listed."""
    if not root.is_dir():
        raise NotADirectoryError(str(root))
    # Surface permission errors up front instead of reporting an empty project
    next(root.iterdir(), None)

    project_type = detect_project_type(root)
    scripts = collect_script_contents(root)

    tools: list[str] = []
    apt: list[str] = []
    npm: list[str] = []
    env_names: list[str] = []
    for content in scripts:
        for rule in TOOL_RULES:
            if rule.pattern.search(content):
                _add_unique(tools, [rule.tool])
                _add_unique(apt, rule.apt_packages)
                _add_unique(npm, rule.npm_global_packages)
                _add_unique(env_names, rule.env_vars)

    skills = detect_skill_requirements(scripts)
    _add_unique(apt, skills.apt_packages)
    _add_unique(env_names, skills.env_vars)
    _add_unique(env_names, doc_env_var_names(root))
    _add_unique(env_names, dotenv_var_names(root))

    base_image = BASE_IMAGES.get(project_type, BASE_IMAGES["unknown"])
    if project_type != "npm" and ("npx" in tools or "claude-cli" in tools):
        base_image = NODE_IMAGE

    requirements = ProjectRequirements(
        project_type=project_type,
        base_image=base_image,
        detected_tools=tuple(tools),
        apt_packages=tuple(apt),
        npm_global_packages=tuple(npm),
        env_var_names=tuple(env_names),
        setup_commands=tuple(build_setup_commands(base_image, project_type, apt, npm)),
        cache_volumes=_cache_volumes(project_type, bool(apt)),
    )
    return with_skill_repos(requirements, skills.skill_repos)


def unknown_requirements() -> ProjectRequirements:
    return ProjectRequirements(project_type="unknown", base_image=BASE_IMAGES["unknown"])


class ProjectAnalyzer:
    """Per-instance cache of analysis results keyed by absolute path.

    Entries live until :meth:`clear_cache`; there is no expiry.
    """

    def __init__(self) -> None:
        self._cache: dict[Path, ProjectRequirements] = {}
        self._lock = threading.Lock()

    async def analyze(self, path: str | Path) -> ProjectRequirements:
        root = Path(path).expanduser().resolve()
        with self._lock:
            cached = self._cache.get(root)
        if cached is not None:
            return cached

        try:
            requirements = await asyncio.to_thread(analyze_directory, root)
        except OSError as exc:
            # Not cached, so a later call can see the directory once readable
            logger.warning("Project analysis failed", path=str(root), err=str(exc))
            return unknown_requirements()

        with self._lock:
            self._cache[root] = requirements
        logger.debug(
            "Project analyzed",
            path=str(root),
            project_type=requirements.project_type,
            tools=list(requirements.detected_tools),
        )
        return requirements

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
