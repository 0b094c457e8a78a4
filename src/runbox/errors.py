"""Error taxonomy shared by every component.

Errors are raised internally and rendered as ``{"error": CODE, "message": ...}``
only at the tool boundary (see :mod:`runbox.run_project`).
"""

from __future__ import annotations


class SandboxError(Exception):
    """Base class for failures that map to a stable error code."""

    code = "SANDBOX_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_result(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


class AgentNotFoundError(SandboxError):
    code = "AGENT_NOT_FOUND"


class OutsideAllowedPathError(SandboxError):
    code = "OUTSIDE_ALLOWED_PATH"


class ExperienceNotFoundError(SandboxError):
    code = "EXPERIENCE_NOT_FOUND"


class ExperienceExistsError(SandboxError):
    code = "EXPERIENCE_EXISTS"


class InvalidExperienceIdError(SandboxError):
    code = "INVALID_EXPERIENCE_ID"


class CopyIntoSelfError(SandboxError):
    code = "COPY_INTO_SELF"
