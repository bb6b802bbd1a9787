"""Parsing of model output into structured values.

Models wrap JSON in code fences, leave trailing commas, forget to escape
newlines inside strings, or stop before closing every bracket. The rule-based
repairs here fix those deterministic mistakes before an output is declared
malformed; anything still unparsable is retried by the calling stage.
"""

import json
import logging
import re
from typing import Any, Callable, Optional, Tuple, TypeVar

from ..exceptions import MalformedAgentOutput

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def _strip_fences(text: str) -> str:
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    start = min((i for i in (text.find("{"), text.find("[")) if i >= 0), default=-1)
    return text[start:] if start > 0 else text


def _escape_newlines_in_strings(text: str) -> str:
    """Escape literal newlines that appear inside JSON strings."""
    result = []
    in_string = False
    escape_next = False
    for char in text:
        if escape_next:
            result.append(char)
            escape_next = False
            continue
        if char == "\\":
            result.append(char)
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
        if char == "\n" and in_string:
            result.append("\\n")
        else:
            result.append(char)
    return "".join(result)


def _balance_brackets(text: str) -> str:
    stack = []
    in_string = False
    escape_next = False
    for char in text:
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            stack.append(char)
        elif char in "}]" and stack:
            stack.pop()
    closers = "".join("}" if opener == "{" else "]" for opener in reversed(stack))
    return text + closers


def repair_json(raw_output: str) -> Tuple[Optional[Any], str]:
    """Apply rule-based fixes and parse.

    Returns:
        (parsed value or None, description of repairs applied)
    """
    repairs = []
    text = raw_output.strip()

    unfenced = _strip_fences(text)
    if unfenced != text:
        text = unfenced
        repairs.append("strip_fences")

    escaped = _escape_newlines_in_strings(text)
    if escaped != text:
        text = escaped
        repairs.append("escape_newlines")

    no_trailing = re.sub(r",\s*([}\]])", r"\1", text)
    if no_trailing != text:
        text = no_trailing
        repairs.append("fix_trailing_commas")

    balanced = _balance_brackets(text)
    if balanced != text:
        text = balanced
        repairs.append("balance_brackets")

    try:
        return json.loads(text), "+".join(repairs) or "none"
    except json.JSONDecodeError:
        return None, "failed"


def parse_json_output(raw_output: str) -> Any:
    """Parse a model's JSON answer, repairing common syntax mistakes.

    Raises:
        ValueError: If the output is not JSON even after repair
    """
    try:
        return json.loads(raw_output)
    except json.JSONDecodeError as e:
        error = str(e)

    parsed, method = repair_json(raw_output)
    if parsed is None:
        raise ValueError(f"Output is not valid JSON: {error}")
    logger.info(f"[Pipeline] Repaired malformed JSON output ({method})")
    return parsed


def retry_malformed(
    stage: str,
    max_attempts: int,
    produce: Callable[[Optional[str]], str],
    parse: Callable[[str], T],
) -> T:
    """Call ``produce`` until ``parse`` accepts its output.

    ``produce`` receives the previous rejection reason (None on the first
    attempt) so the prompt can tell the model what was wrong. ``parse``
    signals malformed output by raising ``ValueError``.

    Raises:
        MalformedAgentOutput: After ``max_attempts`` rejected outputs
    """
    feedback: Optional[str] = None
    raw = ""
    for attempt in range(1, max_attempts + 1):
        raw = produce(feedback)
        try:
            return parse(raw)
        except ValueError as e:
            feedback = str(e)
            logger.warning(f"[Pipeline] {stage} attempt {attempt}/{max_attempts} malformed: {feedback}")
    raise MalformedAgentOutput(stage, max_attempts, raw_output=raw, reason=feedback or "")
