from __future__ import annotations

import json
import re
from dataclasses import dataclass

from loguru import logger

from convo_compactor.errors import ModelError
from convo_compactor.prompts import build_suggestions_prompt
from convo_compactor.provider import LLMProvider

ICONS = frozenset({"code", "lightbulb", "puzzle", "book", "rocket", "target"})
_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")
_MAX_CONTENT_CHARS = 12_000


@dataclass(frozen=True)
class SuggestedQuestion:
    question: str
    icon: str = "lightbulb"


def parse_suggestions(text: str, limit: int = 5) -> list[SuggestedQuestion]:
    match = _JSON_ARRAY.search(text)
    if match is None:
        return []
    try:
        items = json.loads(match.group(0))
    except json.JSONDecodeError:
        return []

    questions: list[SuggestedQuestion] = []
    for item in items if isinstance(items, list) else []:
        if isinstance(item, str):
            question, icon = item, "lightbulb"
        elif isinstance(item, dict):
            question, icon = str(item.get("question", "")), str(item.get("icon", "lightbulb"))
        else:
            continue
        if question.strip():
            questions.append(SuggestedQuestion(question.strip(), icon if icon in ICONS else "lightbulb"))
    return questions[: max(0, limit)]


async def suggest_questions(
    provider: LLMProvider,
    model: str,
    content: str,
    limit: int = 5,
    *,
    max_tokens: int = 512,
) -> list[SuggestedQuestion]:
    """Ask the model for follow-up questions about a finished artifact.

    Best effort: model or parse failures are logged and produce an empty list.
    """
    if not content.strip() or limit < 1:
        return []
    prompt = build_suggestions_prompt(content[:_MAX_CONTENT_CHARS])
    try:
        completion = await provider.complete(model, max_tokens, 0.7, prompt)
    except ModelError as ex:
        logger.warning(f"Could not generate follow-up questions ({ex.reason}): {ex}")
        return []

    questions = parse_suggestions(completion.text, limit)
    if not questions:
        logger.warning("Follow-up question response could not be parsed")
    return questions
