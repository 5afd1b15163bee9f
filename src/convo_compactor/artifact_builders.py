from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from convo_compactor import prompts
from convo_compactor.errors import MalformedResponse
from convo_compactor.models import ArtifactKind


@dataclass(frozen=True)
class ShapedOutput:
    content: str
    structured: Any = None
    title: str | None = None


@runtime_checkable
class ArtifactBuilder(Protocol):
    kind: ArtifactKind
    full_instructions: str
    map_instructions: str
    reduce_instructions: str

    def shape(self, text: str) -> ShapedOutput: ...


class CompactBuilder:
    kind = ArtifactKind.COMPACT
    full_instructions = prompts.COMPACT_FULL_PROMPT
    map_instructions = prompts.COMPACT_MAP_PROMPT
    reduce_instructions = prompts.COMPACT_REDUCE_PROMPT

    def shape(self, text: str) -> ShapedOutput:
        content = text.strip()
        if not content:
            raise MalformedResponse("Model returned an empty compaction")
        return ShapedOutput(content=content)


_SECTION = re.compile(r"<section\b([^>]*)>([\s\S]*?)</section>", re.IGNORECASE)
_ATTRIBUTE = re.compile(r'(\w+)\s*=\s*"([^"]*)"')
_TITLE = re.compile(r"<title>([\s\S]*?)</title>", re.IGNORECASE)
_SUMMARY = re.compile(r"<summary>([\s\S]*?)</summary>", re.IGNORECASE)
_CONTENT = re.compile(r"<content>([\s\S]*?)</content>", re.IGNORECASE)
_MERMAID = re.compile(r"```mermaid\s+([\s\S]*?)```", re.IGNORECASE)

SECTION_TYPES = frozenset(
    {"goal", "context", "implementation", "decisions", "problems", "learnings", "next_steps", "diagram"}
)
_IMPORTANCE_LEVELS = frozenset({"high", "medium", "low"})


def extract_mermaid_diagrams(content: str) -> list[dict[str, str]]:
    return [{"type": "mermaid", "code": m.group(1).strip()} for m in _MERMAID.finditer(content)]


def parse_overview(text: str) -> dict[str, Any]:
    sections: list[dict[str, Any]] = []
    for order, match in enumerate(_SECTION.finditer(text)):
        attributes = {k.lower(): v.strip().lower() for k, v in _ATTRIBUTE.findall(match.group(1))}
        body = match.group(2)
        title_match = _TITLE.search(body)
        content_match = _CONTENT.search(body)
        if content_match:
            content = content_match.group(1).strip()
        else:
            content = _TITLE.sub("", body).strip()

        section_type = attributes.get("type", "context")
        importance = attributes.get("importance", "medium")
        sections.append({
            "order": order,
            "type": section_type if section_type in SECTION_TYPES else "context",
            "importance": importance if importance in _IMPORTANCE_LEVELS else "medium",
            "title": title_match.group(1).strip() if title_match else f"Section {order + 1}",
            "content": content,
            "diagrams": extract_mermaid_diagrams(content),
        })

    if not sections:
        raise MalformedResponse("Overview response contained no <section> blocks")

    outside = _SECTION.sub("", text)
    title_match = _TITLE.search(outside)
    summary_match = _SUMMARY.search(outside)
    return {
        "title": title_match.group(1).strip() if title_match else "Overview",
        "summary": summary_match.group(1).strip() if summary_match else "",
        "sections": sections,
    }


class OverviewBuilder:
    kind = ArtifactKind.OVERVIEW
    full_instructions = prompts.OVERVIEW_FULL_PROMPT
    map_instructions = prompts.COMPACT_MAP_PROMPT
    reduce_instructions = prompts.OVERVIEW_REDUCE_PROMPT

    def shape(self, text: str) -> ShapedOutput:
        overview = parse_overview(text)
        parts = [f"# {overview['title']}"]
        if overview["summary"]:
            parts.append(overview["summary"])
        for section in overview["sections"]:
            parts.append(f"## {section['title']}\n\n{section['content']}")
        return ShapedOutput(content="\n\n".join(parts), structured=overview, title=overview["title"])


_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def parse_exercises(text: str) -> list[dict[str, Any]]:
    clean = _FENCE.sub("", text.strip())
    try:
        data = json.loads(clean)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(clean)
        if match is None:
            raise MalformedResponse("Exercises response was not JSON") from None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as ex:
            raise MalformedResponse(f"Exercises response was not valid JSON: {ex}") from ex

    raw = data.get("exercises") if isinstance(data, dict) else data
    if not isinstance(raw, list):
        raise MalformedResponse("Exercises response has no 'exercises' list")

    exercises: list[dict[str, Any]] = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("title") or not item.get("prompt"):
            continue
        hints = item.get("hints") or []
        exercises.append({
            "title": str(item["title"]).strip(),
            "difficulty": str(item.get("difficulty", "intermediate")).strip().lower(),
            "prompt": str(item["prompt"]).strip(),
            "hints": [str(h) for h in hints] if isinstance(hints, list) else [str(hints)],
            "solution": str(item.get("solution", "")).strip(),
        })

    if not exercises:
        raise MalformedResponse("Exercises response contained no usable exercises")
    return exercises


class ExercisesBuilder:
    kind = ArtifactKind.EXERCISES
    full_instructions = prompts.EXERCISES_FULL_PROMPT
    map_instructions = prompts.COMPACT_MAP_PROMPT
    reduce_instructions = prompts.EXERCISES_REDUCE_PROMPT

    def shape(self, text: str) -> ShapedOutput:
        exercises = parse_exercises(text)
        parts = []
        for number, exercise in enumerate(exercises, start=1):
            parts.append(f"## {number}. {exercise['title']} ({exercise['difficulty']})\n\n{exercise['prompt']}")
        return ShapedOutput(content="\n\n".join(parts), structured=exercises)


_BUILDERS: dict[ArtifactKind, type] = {
    ArtifactKind.COMPACT: CompactBuilder,
    ArtifactKind.OVERVIEW: OverviewBuilder,
    ArtifactKind.EXERCISES: ExercisesBuilder,
}


def builder_for(kind: ArtifactKind | str) -> ArtifactBuilder:
    return _BUILDERS[ArtifactKind(kind)]()
