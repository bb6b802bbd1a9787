"""Agent pipeline stages: framework selection, planning and coding."""

from .coder import CodeOutput, Coder, GeneratedFile
from .framework_selector import FrameworkSelector
from .frameworks import DEFAULT_FRAMEWORK, FRAMEWORKS, Framework, get_framework
from .planner import Plan, Planner
from .text_generation import AnthropicTextGenerator, TextGenerator

__all__ = [
    "AnthropicTextGenerator",
    "CodeOutput",
    "Coder",
    "DEFAULT_FRAMEWORK",
    "FRAMEWORKS",
    "Framework",
    "FrameworkSelector",
    "GeneratedFile",
    "Plan",
    "Planner",
    "TextGenerator",
    "get_framework",
]
