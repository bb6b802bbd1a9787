"""Framework selection: map a natural-language request to one supported stack."""

import logging
import re
from typing import Optional

from .frameworks import DEFAULT_FRAMEWORK, FRAMEWORKS, SUPPORTED_FRAMEWORKS
from .parsing import retry_malformed
from .prompts import FRAMEWORK_SELECTOR_SYSTEM, MALFORMED_FEEDBACK
from .text_generation import TextGenerator

logger = logging.getLogger(__name__)

STAGE = "framework_selector"

_MENTION_PATTERNS = {
    framework_id: re.compile(
        r"\b(" + "|".join(re.escape(name) for name in (framework_id,) + framework.aliases) + r")\b",
        re.IGNORECASE,
    )
    for framework_id, framework in FRAMEWORKS.items()
}


def detect_explicit(user_request: str) -> Optional[str]:
    """Return the stack when the request names exactly one of them."""
    mentioned = {fid for fid, pattern in _MENTION_PATTERNS.items() if pattern.search(user_request)}
    if len(mentioned) == 1:
        return mentioned.pop()
    return None


def normalize_answer(answer: str) -> Optional[str]:
    """Map a model answer to a stack id, or None if it is not one."""
    token = answer.strip().strip("`'\".").lower()
    token = re.sub(r"[^a-z.\s]", "", token).strip()
    if token in FRAMEWORKS:
        return token
    for framework_id, framework in FRAMEWORKS.items():
        if token in framework.aliases:
            return framework_id
    return None


class FrameworkSelector:
    def __init__(self, generator: TextGenerator, model: Optional[str] = None, max_attempts: int = 3):
        self.generator = generator
        self.model = model
        self.max_attempts = max_attempts

    def select(self, user_request: str) -> str:
        """Pick exactly one stack id from the closed set.

        Raises:
            MalformedAgentOutput: If the model keeps answering outside the set
        """
        explicit = detect_explicit(user_request)
        if explicit is not None:
            logger.info(f"[Pipeline] Framework '{explicit}' named explicitly in request")
            return explicit

        system = FRAMEWORK_SELECTOR_SYSTEM.format(
            choices=", ".join(SUPPORTED_FRAMEWORKS), default=DEFAULT_FRAMEWORK
        )

        def produce(feedback: Optional[str]) -> str:
            prompt = user_request
            if feedback:
                prompt += MALFORMED_FEEDBACK.format(reason=feedback)
            return self.generator.generate(system, prompt, model=self.model, temperature=0.0, max_tokens=16)

        def parse(raw: str) -> str:
            framework_id = normalize_answer(raw)
            if framework_id is None:
                raise ValueError(
                    f"'{raw.strip()[:50]}' is not one of {', '.join(SUPPORTED_FRAMEWORKS)}"
                )
            return framework_id

        framework_id = retry_malformed(STAGE, self.max_attempts, produce, parse)
        logger.info(f"[Pipeline] Selected framework '{framework_id}'")
        return framework_id
