"""
Score-based routing predicate.

Combines several request signals into a score and matches when the
score reaches :data:`SCORE_THRESHOLD`.  Reference it from a rule with
``functionName`` omitted; the module's ``evaluate`` is used.
"""

import logging
import re

logger = logging.getLogger(__name__)

SCORE_THRESHOLD = 3
LONG_CONTEXT_TOKENS = 10000
LONG_MESSAGE_CHARS = 500

CODE_TOOLS = ("code_interpreter", "run_code", "execute", "bash", "terminal")
COMPLEXITY_KEYWORDS = (
    ("analyze", "design"),
    ("implement", "develop"),
    ("optimize", "refactor"),
)


def _message_text(message) -> str:
    content = message.get("content", "") if isinstance(message, dict) else ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(item.get("text", "") for item in content if isinstance(item, dict))
    return ""


def is_complex_task(messages) -> bool:
    user_messages = [m for m in messages if isinstance(m, dict) and m.get("role") == "user"]
    if not user_messages:
        return False

    text = _message_text(user_messages[-1])
    lowered = text.lower()
    indicators = [any(word in lowered for word in group) for group in COMPLEXITY_KEYWORDS]
    indicators.append(len(text) > LONG_MESSAGE_CHARS)
    indicators.append(len(re.findall(r"[?？]", text)) > 3)
    return sum(indicators) >= 2


def has_code_tools(tools) -> bool:
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        name = tool.get("type") or (tool.get("function") or {}).get("name") or ""
        if any(code_tool in name for code_tool in CODE_TOOLS):
            return True
    return False


def route_score(context) -> int:
    score = 0
    if is_complex_task(context.messages):
        score += 2
    if has_code_tools(context.tools):
        score += 1
    if context.token_count > LONG_CONTEXT_TOKENS:
        score += 1
    if context.system:
        score += 1
    return score


def evaluate(context, condition) -> bool:
    score = route_score(context)
    logger.debug("Complex routing score", extra={"score": score})
    return score >= SCORE_THRESHOLD
