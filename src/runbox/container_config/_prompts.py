"""Prompt template for the generative container-config fallback."""

from __future__ import annotations

CONTAINER_CONFIG_PROMPT = """\
You are an expert DevOps engineer. Given a code snippet and its language, provide \
the optimal Docker container configuration to execute it.

## Code Language
{language}

## Code to Execute
```{language}
{code}
```

## Required Packages (detected)
{packages}

## Instructions
Analyze the code and provide a JSON configuration with:
1. The best base image (prefer Alpine variants for size)
2. Setup commands to install dependencies (if needed)
3. The exact command to execute the code, which is saved as /app/code{extension}
4. Any cache volumes for package managers

## Response Format (JSON only)
{{
  "baseImage": "string - Docker image name with tag",
  "setupCommands": ["array of shell commands to run before code execution"],
  "runCommand": ["array of command and arguments to execute the code"],
  "cacheVolumes": [{{"name": "volume-name", "mountPath": "/path/to/cache"}}],
  "reasoning": "brief explanation of choices"
}}

## Example for Python with pandas:
{{
  "baseImage": "python:3.11-alpine",
  "setupCommands": ["pip install --no-cache-dir pandas"],
  "runCommand": ["python", "/app/code.py"],
  "cacheVolumes": [{{"name": "pip-cache", "mountPath": "/root/.cache/pip"}}],
  "reasoning": "Alpine keeps the image small. pandas requires pip install."
}}

Respond with ONLY the JSON configuration, no additional text."""


def render_config_prompt(language: str, code: str, packages: list[str], extension: str) -> str:
    return CONTAINER_CONFIG_PROMPT.format(
        language=language,
        code=code,
        packages=", ".join(packages) if packages else "none detected",
        extension=extension,
    )
