"""Planner stage: decompose a request into steps, assumptions and risks."""

import logging
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .frameworks import get_framework
from .parsing import parse_json_output, retry_malformed
from .prompts import MALFORMED_FEEDBACK, PLANNER_SYSTEM
from .text_generation import TextGenerator

logger = logging.getLogger(__name__)

STAGE = "planner"


class Plan(BaseModel):
    """Ordered implementation steps plus explicit assumptions and risks"""

    steps: List[str] = Field(..., min_length=1, description="Ordered implementation steps")
    assumptions: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)

    @field_validator("steps", "assumptions", "risks", mode="before")
    @classmethod
    def drop_blank(cls, v):
        if isinstance(v, list):
            return [str(item).strip() for item in v if str(item).strip()]
        return v


def _parse_plan(raw: str) -> Plan:
    data = parse_json_output(raw)
    if not isinstance(data, dict):
        raise ValueError("Plan must be a JSON object")
    return Plan.model_validate(data)


class Planner:
    def __init__(self, generator: TextGenerator, model: Optional[str] = None, max_attempts: int = 3):
        self.generator = generator
        self.model = model
        self.max_attempts = max_attempts

    def plan(self, user_request: str, framework_id: str) -> Plan:
        framework = get_framework(framework_id)
        system = PLANNER_SYSTEM.format(framework=framework.display_name, conventions=framework.conventions)

        def produce(feedback: Optional[str]) -> str:
            prompt = user_request
            if feedback:
                prompt += MALFORMED_FEEDBACK.format(reason=feedback)
            return self.generator.generate(system, prompt, model=self.model, temperature=0.2, max_tokens=4096)

        plan = retry_malformed(STAGE, self.max_attempts, produce, _parse_plan)
        logger.info(f"[Pipeline] Planned {len(plan.steps)} step(s) for {framework.id}")
        return plan
