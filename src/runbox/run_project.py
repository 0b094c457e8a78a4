"""The ``run_project`` tool: run a shell command against a project inside an experience.

Called by an orchestrating agent with a JSON-shaped argument dict. Every
outcome, failures included, comes back as a dict; nothing raises past
:meth:`RunProjectTool.__call__`.

Result shapes::

    {"experienceId", "status": "new"|"continued", "stdout", "stderr",
     "exitCode", "success", "timedOut"?, "hint"?, "detectedRequirements"}
    {"experienceId", "status": "committed"|"discarded", "message"}
    {"error": CODE, "message"}
"""

from __future__ import annotations

import dataclasses
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from runbox.errors import SandboxError
from runbox.experience import generate_id
from runbox.habitat import Habitat
from runbox.logger import logger
from runbox.project_analyzer import with_skill_repos
from runbox.skills import resolve_skill_repo
from runbox.types import ProjectRequirements, ValidationResult

HINT_TIMED_OUT = "Reuse this experienceId on retry so the next command sees current state."
HINT_FAILED = (
    "Retry with the SAME experienceId after fixing the command. Dependencies are already installed."
)
HINT_NEW = "Reuse this exact experienceId for the next run_project call in this workflow."

Action = Literal["start", "continue", "commit", "discard"]


class RunProjectRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    command: str = ""
    agent_id: str | None = Field(default=None, alias="agentId")
    experience_id: str | None = Field(default=None, alias="experienceId")
    action: Action | None = None
    image: str | None = None
    timeout: int | None = None  # seconds
    workdir: str | None = None
    env: dict[str, str] = {}

    @field_validator("timeout")
    @classmethod
    def positive_timeout(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            raise ValueError("timeout must be a positive number of seconds")
        return v

    @field_validator("workdir")
    @classmethod
    def absolute_workdir(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith("/"):
            raise ValueError("workdir must be an absolute container path")
        return v


def summarize_requirements(
    requirements: ProjectRequirements, env_names: list[str]
) -> dict[str, Any]:
    return {
        "projectType": requirements.project_type,
        "detectedTools": list(requirements.detected_tools),
        "baseImage": requirements.base_image,
        "envVarsInjected": env_names,
        "skillRepos": [f"{r.name} ({r.git_repo})" for r in requirements.skill_repos],
    }


class RunProjectTool:
    """Callable tool bound to one :class:`Habitat`."""

    name = "run_project"

    def __init__(self, habitat: Habitat) -> None:
        self.habitat = habitat

    async def __call__(self, arguments: dict[str, Any] | None = None, **kwargs: Any) -> dict[str, Any]:
        try:
            request = RunProjectRequest.model_validate({**(arguments or {}), **kwargs})
        except ValidationError as exc:
            return {"error": "INVALID_REQUEST", "message": str(exc)}

        try:
            return await self._run(request)
        except SandboxError as exc:
            logger.info("run_project refused", code=exc.code, message=exc.message)
            return exc.to_result()
        except Exception as exc:
            logger.exception("run_project failed", command=request.command[:200])
            return {"error": "INTERNAL_ERROR", "message": str(exc)}

    async def _run(self, request: RunProjectRequest) -> dict[str, Any]:
        habitat = self.habitat
        agent_key = None
        agent = None
        if request.agent_id:
            agent_key, agent = habitat.get_agent(request.agent_id)

        source = habitat.sandbox.ensure_allowed(
            agent.project_path if agent is not None else habitat.work_dir
        )
        experience_id = request.experience_id or generate_id()
        experiences = habitat.experiences

        if request.action == "discard":
            await experiences.discard(experience_id)
            return {
                "experienceId": experience_id,
                "status": "discarded",
                "message": f"Experience {experience_id} discarded.",
            }
        if request.action == "commit":
            meta = await experiences.commit(experience_id)
            habitat.analyzer.clear_cache()
            return {
                "experienceId": experience_id,
                "status": "committed",
                "message": f"Experience {experience_id} committed to {meta.source_path}.",
            }

        if not request.command.strip():
            return {"error": "INVALID_REQUEST", "message": "command is required"}

        if request.action == "start":
            await experiences.start(experience_id, source, agent_key)
            status = "new"
        elif request.action == "continue":
            await experiences.resume(experience_id)
            status = "continued"
        else:
            _, status = await experiences.start_or_resume(experience_id, source, agent_key)

        requirements = await habitat.analyzer.analyze(source)
        if agent is not None and agent.skills_from_git:
            requirements = with_skill_repos(
                requirements, [resolve_skill_repo(ref) for ref in agent.skills_from_git]
            )
        if request.image:
            requirements = dataclasses.replace(requirements, base_image=request.image)

        env = self._gather_env(requirements, agent, request.env)
        sandbox_cfg = habitat.settings.sandbox
        workdir = request.workdir or sandbox_cfg.container_workdir
        timeout = request.timeout or sandbox_cfg.default_timeout_seconds

        resolved = await habitat.resolver.resolve_requirements(
            requirements, workdir=workdir, shell=sandbox_cfg.shell
        )
        result = await habitat.executor.run(
            request.command,
            experiences.experience_dir(experience_id),
            resolved.config,
            timeout,
            container_workdir=workdir,
            env=env,
        )
        logger.info(
            "run_project finished",
            experience_id=experience_id,
            status=status,
            exit_code=result.exit_code,
            config_cached=resolved.cached,
        )
        return self._result(experience_id, status, result, requirements, sorted(env))

    def _gather_env(
        self, requirements: ProjectRequirements, agent: Any, explicit: dict[str, str]
    ) -> dict[str, str]:
        """Detected names, then agent-declared secrets, then explicit values on top."""
        env: dict[str, str] = {}
        names = list(requirements.env_var_names)
        if agent is not None:
            names.extend(agent.secrets)
        for name in names:
            value = self.habitat.get_secret(name)
            if value is not None:
                env[name] = value
        env.update(explicit)
        return env

    @staticmethod
    def _result(
        experience_id: str,
        status: str,
        result: ValidationResult,
        requirements: ProjectRequirements,
        env_names: list[str],
    ) -> dict[str, Any]:
        out: dict[str, Any] = {
            "experienceId": experience_id,
            "status": status,
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exitCode": result.exit_code,
            "success": result.success,
        }
        if result.timed_out:
            out["timedOut"] = True
            out["hint"] = HINT_TIMED_OUT
        elif result.exit_code != 0:
            out["hint"] = HINT_FAILED
        elif status == "new":
            out["hint"] = HINT_NEW
        out["detectedRequirements"] = summarize_requirements(requirements, env_names)
        return out
