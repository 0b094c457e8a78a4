"""Static per-language container tables and package detection."""

from __future__ import annotations

import re

from runbox.types import CacheVolume, ContainerConfig

_NPM_CACHE = CacheVolume("npm-cache", "/root/.npm")

KNOWN_LANGUAGE_CONFIGS: dict[str, ContainerConfig] = {
    "typescript": ContainerConfig(
        base_image="node:20-alpine",
        setup_commands=("npm install -g tsx",),
        run_command=("npx", "tsx", "/app/code.ts"),
        cache_volumes=(_NPM_CACHE,),
    ),
    "javascript": ContainerConfig(
        base_image="node:20-alpine",
        run_command=("node", "/app/code.js"),
        cache_volumes=(_NPM_CACHE,),
    ),
    "python": ContainerConfig(
        base_image="python:3.11-alpine",
        run_command=("python", "/app/code.py"),
        cache_volumes=(CacheVolume("pip-cache", "/root/.cache/pip"),),
    ),
    "ruby": ContainerConfig(
        base_image="ruby:3.2-alpine",
        run_command=("ruby", "/app/code.rb"),
        cache_volumes=(CacheVolume("gem-cache", "/root/.gem"),),
    ),
    "go": ContainerConfig(
        base_image="golang:1.21-alpine",
        run_command=("go", "run", "/app/code.go"),
        cache_volumes=(CacheVolume("go-cache", "/go/pkg/mod"),),
    ),
    "rust": ContainerConfig(
        base_image="rust:1.75-alpine",
        setup_commands=("rustc /app/code.rs -o /app/code",),
        run_command=("/app/code",),
        cache_volumes=(CacheVolume("cargo-cache", "/usr/local/cargo/registry"),),
    ),
    "java": ContainerConfig(
        base_image="openjdk:17-alpine",
        setup_commands=("javac /app/code.java",),
        run_command=("java", "-cp", "/app", "Main"),
    ),
    "php": ContainerConfig(base_image="php:8.2-alpine", run_command=("php", "/app/code.php")),
    "perl": ContainerConfig(base_image="perl:5.42", run_command=("perl", "/app/code.pl")),
    "bash": ContainerConfig(
        base_image="bash:latest",
        setup_commands=("chmod +x /app/code.sh",),
        run_command=("bash", "/app/code.sh"),
    ),
    "swift": ContainerConfig(base_image="swift:5.9-focal", run_command=("swift", "/app/code.swift")),
}

LANGUAGE_EXTENSIONS: dict[str, str] = {
    "typescript": ".ts",
    "javascript": ".js",
    "python": ".py",
    "ruby": ".rb",
    "go": ".go",
    "rust": ".rs",
    "java": ".java",
    "php": ".php",
    "perl": ".pl",
    "bash": ".sh",
    "swift": ".swift",
}

_JS_PATTERNS = (
    re.compile(r"""import\s+.*from\s+['"]([^'"./][^'"]*)['"]"""),
    re.compile(r"""require\(['"]([^'"./][^'"]*)['"]\)"""),
)

PACKAGE_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "python": (
        re.compile(r"^import\s+(\w+)", re.MULTILINE),
        re.compile(r"^from\s+(\w+)\s+import", re.MULTILINE),
    ),
    "typescript": _JS_PATTERNS,
    "javascript": _JS_PATTERNS,
    "ruby": (
        re.compile(r"""^require\s+['"]([^'"]+)['"]""", re.MULTILINE),
        re.compile(r"""^gem\s+['"]([^'"]+)['"]""", re.MULTILINE),
    ),
    "go": (
        re.compile(r"""import\s+["']([^"']+)["']"""),
        re.compile(r"""import\s+\(\s*["']([^"']+)["']"""),
    ),
}

_NODE_BUILTINS = frozenset(
    """fs path os crypto util events stream http https url querystring buffer assert
    child_process cluster dgram dns domain net readline repl string_decoder tls tty
    v8 vm zlib process console module perf_hooks worker_threads""".split()
)

STDLIB_MODULES: dict[str, frozenset[str]] = {
    "python": frozenset(
        """os sys json math random datetime time re collections itertools functools
        pathlib typing dataclasses unittest argparse logging subprocess threading
        multiprocessing socket http urllib hashlib base64 copy io string struct pickle
        csv xml html email calendar textwrap difflib pprint traceback gc inspect dis
        timeit profile abc contextlib decimal fractions statistics secrets uuid
        tempfile shutil glob fnmatch linecache tokenize codecs locale gettext operator
        weakref types array bisect heapq queue enum graphlib select selectors asyncio
        signal mmap ctypes""".split()
    ),
    "typescript": _NODE_BUILTINS,
    "javascript": _NODE_BUILTINS,
}


def detect_packages(code: str, language: str) -> list[str]:
    """External packages imported by *code*, in first-seen order, stdlib excluded."""
    patterns = PACKAGE_PATTERNS.get(language, ())
    stdlib = STDLIB_MODULES.get(language, frozenset())
    packages: list[str] = []
    for pattern in patterns:
        for match in pattern.finditer(code):
            raw = match.group(1)
            if raw.startswith("@types/"):
                continue
            # Scoped npm packages keep their scope
            pkg = "/".join(raw.split("/")[:2]) if raw.startswith("@") else raw.split("/")[0]
            if pkg and pkg not in stdlib and not pkg.startswith(".") and pkg not in packages:
                packages.append(pkg)
    return packages


def is_known_language(language: str) -> bool:
    return language in KNOWN_LANGUAGE_CONFIGS


def get_extension(language: str) -> str:
    return LANGUAGE_EXTENSIONS.get(language, f".{language}")


def get_static_config(language: str) -> ContainerConfig | None:
    return KNOWN_LANGUAGE_CONFIGS.get(language)


def default_image(language: str) -> str:
    known = KNOWN_LANGUAGE_CONFIGS.get(language)
    return known.base_image if known else f"{language}:latest"


def default_run_command(language: str) -> tuple[str, ...]:
    known = KNOWN_LANGUAGE_CONFIGS.get(language)
    if known:
        return known.run_command
    return (language, f"/app/code{get_extension(language)}")


def package_install_command(language: str, packages: list[str]) -> str | None:
    if not packages:
        return None
    joined = " ".join(packages)
    if language == "python":
        return f"pip install --no-cache-dir {joined}"
    if language in ("typescript", "javascript"):
        return f"npm install {joined}"
    if language == "ruby":
        return f"gem install {joined}"
    return None


def generic_config(language: str) -> ContainerConfig:
    """Last-resort config for a language nobody knows about."""
    return ContainerConfig(base_image=default_image(language), run_command=default_run_command(language))
