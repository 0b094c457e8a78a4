"""Skill/plugin detection and git-repo resolution.

Skills are cloned into the container at build time from their git repos; no
host plugin directory is ever mounted.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from runbox.types import SkillRepo


@dataclass(frozen=True)
class _KnownSkill:
    git_repo: str
    container_path: str
    apt_packages: tuple[str, ...] = ()
    setup_commands: tuple[str, ...] = ()


KNOWN_SKILLS: dict[str, _KnownSkill] = {
    "chrome-driver": _KnownSkill(
        git_repo="The-Focus-AI/chrome-driver",
        container_path="/opt/chrome-driver",
        apt_packages=("chromium", "perl", "libwww-perl", "libjson-perl"),
    ),
    "nano-banana": _KnownSkill(
        git_repo="The-Focus-AI/nano-banana-cli",
        container_path="/opt/nano-banana",
    ),
}

_TILDE_PLUGIN_RE = re.compile(r"~/\.claude/plugins/cache/([^/\s]+)/([^/\s]+)/")


@dataclass
class SkillRequirements:
    apt_packages: list[str] = field(default_factory=list)
    env_vars: list[str] = field(default_factory=list)
    skill_repos: list[SkillRepo] = field(default_factory=list)


def _repo_for(name: str, fallback_repo: str) -> SkillRepo:
    known = KNOWN_SKILLS.get(name)
    if known is None:
        return SkillRepo(name=name, git_repo=fallback_repo, container_path=f"/opt/{name}")
    return SkillRepo(
        name=name,
        git_repo=known.git_repo,
        container_path=known.container_path,
        apt_packages=known.apt_packages,
        setup_commands=known.setup_commands,
    )


def detect_skill_requirements(
    script_contents: Iterable[str], home: Path | None = None
) -> SkillRequirements:
    """Find ``~/.claude/plugins/cache/<market>/<plugin>/`` references.

    Both the tilde form and the expanded home-directory form are recognized.
    Unknown plugins get a best-guess ``<market>/<plugin>`` repo.
    """
    combined = "\n".join(script_contents)
    home = home if home is not None else Path.home()
    expanded_re = re.compile(
        re.escape(f"{home}/.claude/plugins/cache/") + r"([^/\s]+)/([^/\s]+)/"
    )

    refs: dict[str, str] = {}
    for pattern in (_TILDE_PLUGIN_RE, expanded_re):
        for market, plugin in pattern.findall(combined):
            refs.setdefault(plugin, f"{market}/{plugin}")

    reqs = SkillRequirements()
    for plugin, ref in refs.items():
        repo = _repo_for(plugin, ref)
        for pkg in repo.apt_packages:
            if pkg not in reqs.apt_packages:
                reqs.apt_packages.append(pkg)
        reqs.skill_repos.append(repo)
    return reqs


def resolve_skill_repo(name_or_repo: str) -> SkillRepo:
    """Resolve an agent-declared skill: known name first, else treat as a repo ref."""
    if name_or_repo in KNOWN_SKILLS:
        return _repo_for(name_or_repo, name_or_repo)
    name = name_or_repo.rstrip("/").rsplit("/", 1)[-1].removesuffix(".git") or name_or_repo
    return SkillRepo(name=name, git_repo=name_or_repo, container_path=f"/opt/{name}")


def normalize_git_url(repo: str) -> str:
    """Expand ``owner/repo`` shorthand to a GitHub HTTPS URL; leave full URLs alone."""
    repo = repo.strip()
    if "://" in repo or repo.startswith("git@"):
        return repo
    return f"https://github.com/{repo.strip('/')}"


def skill_setup_commands(repos: Iterable[SkillRepo]) -> list[str]:
    """Shallow-clone each skill repo, then run its own setup commands."""
    commands: list[str] = []
    for repo in repos:
        url = shlex.quote(normalize_git_url(repo.git_repo))
        path = shlex.quote(repo.container_path)
        commands.append(f"test -d {path} || git clone --depth 1 {url} {path}")
        commands.extend(f"cd {path} && {cmd}" for cmd in repo.setup_commands)
    return commands


def merge_skill_repos(existing: Iterable[SkillRepo], extra: Iterable[SkillRepo]) -> list[SkillRepo]:
    """Append *extra* repos whose names are not already present."""
    merged = list(existing)
    seen = {r.name for r in merged}
    for repo in extra:
        if repo.name not in seen:
            seen.add(repo.name)
            merged.append(repo)
    return merged
