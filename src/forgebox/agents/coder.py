"""Coder stage: turn a plan (and, on repair, the last failure) into files."""

import logging
import posixpath
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..sandbox.base import ValidationReport
from .frameworks import get_framework
from .parsing import parse_json_output, retry_malformed
from .planner import Plan
from .prompts import CODER_REPAIR, CODER_REQUEST, CODER_SYSTEM, MALFORMED_FEEDBACK
from .text_generation import TextGenerator

logger = logging.getLogger(__name__)

STAGE = "coder"

MAX_FILES = 500
MAX_FILE_BYTES = 10 * 1024 * 1024


class GeneratedFile(BaseModel):
    path: str
    content: str

    @field_validator("path")
    @classmethod
    def safe_relative_path(cls, v: str) -> str:
        path = v.strip().replace("\\", "/")
        if not path:
            raise ValueError("file path is empty")
        if path.startswith("/") or (len(path) > 1 and path[1] == ":"):
            raise ValueError(f"file path must be relative: {v}")
        if ".." in path.split("/"):
            raise ValueError(f"file path escapes the project: {v}")
        normalized = posixpath.normpath(path)
        if normalized in (".", ""):
            raise ValueError(f"file path is not a file: {v}")
        return normalized

    @field_validator("content")
    @classmethod
    def bounded_content(cls, v: str) -> str:
        if len(v.encode("utf-8")) > MAX_FILE_BYTES:
            raise ValueError("file content exceeds 10 MiB")
        return v


class CodeOutput(BaseModel):
    files: List[GeneratedFile] = Field(..., min_length=1, max_length=MAX_FILES)
    summary: str = ""

    @field_validator("files")
    @classmethod
    def unique_paths(cls, v: List[GeneratedFile]) -> List[GeneratedFile]:
        seen = set()
        for generated in v:
            if generated.path in seen:
                raise ValueError(f"duplicate file path: {generated.path}")
            seen.add(generated.path)
        return v

    def as_mapping(self) -> Dict[str, str]:
        return {f.path: f.content for f in self.files}


def _parse_code(raw: str) -> CodeOutput:
    data = parse_json_output(raw)
    if not isinstance(data, dict):
        raise ValueError("Coder output must be a JSON object")
    return CodeOutput.model_validate(data)


def _bullets(items: List[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, 1)) or "(none)"


class Coder:
    def __init__(
        self,
        generator: TextGenerator,
        model: Optional[str] = None,
        max_attempts: int = 3,
        max_tokens: int = 16000,
    ):
        self.generator = generator
        self.model = model
        self.max_attempts = max_attempts
        self.max_tokens = max_tokens

    def generate(
        self,
        user_request: str,
        framework_id: str,
        plan: Plan,
        last_report: Optional[ValidationReport] = None,
    ) -> CodeOutput:
        """Emit the complete file set for ``plan``.

        On a repair cycle ``last_report`` carries the failing validation
        output, which is appended to the prompt.
        """
        framework = get_framework(framework_id)
        system = CODER_SYSTEM.format(
            framework=framework.display_name,
            conventions=framework.conventions,
            lint_command=framework.lint_command,
            build_command=framework.build_command,
        )
        base_prompt = CODER_REQUEST.format(
            user_request=user_request,
            steps=_bullets(plan.steps),
            assumptions=_bullets(plan.assumptions),
        )
        if last_report is not None:
            base_prompt += CODER_REPAIR.format(failure_context=last_report.failure_context())

        def produce(feedback: Optional[str]) -> str:
            prompt = base_prompt
            if feedback:
                prompt += MALFORMED_FEEDBACK.format(reason=feedback)
            return self.generator.generate(
                system, prompt, model=self.model, temperature=0.2, max_tokens=self.max_tokens
            )

        output = retry_malformed(STAGE, self.max_attempts, produce, _parse_code)
        logger.info(
            f"[Pipeline] Coder produced {len(output.files)} file(s)"
            + (" (repair)" if last_report is not None else "")
        )
        return output
