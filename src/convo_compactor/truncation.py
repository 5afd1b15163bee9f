from __future__ import annotations

from dataclasses import dataclass, replace

from convo_compactor.turns import Turn, estimate_tokens, total_tokens

DEFAULT_ANCHOR_HEAD = 3
DEFAULT_ANCHOR_TAIL = 5
TRUNCATION_MARKER = "\n\n[...truncated...]"


@dataclass(frozen=True)
class TruncationReport:
    turns: list[Turn]
    dropped: list[Turn]
    original_tokens: int
    kept_tokens: int
    budget: int
    over_budget: bool


def truncate(
    turns: list[Turn],
    budget: int,
    *,
    head: int = DEFAULT_ANCHOR_HEAD,
    tail: int = DEFAULT_ANCHOR_TAIL,
) -> list[Turn]:
    return truncate_with_report(turns, budget, head=head, tail=tail).turns


def truncate_with_report(
    turns: list[Turn],
    budget: int,
    *,
    head: int = DEFAULT_ANCHOR_HEAD,
    tail: int = DEFAULT_ANCHOR_TAIL,
) -> TruncationReport:
    """Select turns to keep so the total token count fits ``budget``.

    The first ``head`` and last ``tail`` turns are anchors and are never
    dropped. When the anchors alone exceed the budget they are still all
    returned and ``over_budget`` is set: the budget is a soft target for
    anchor turns.
    """
    if head < 0 or tail < 0:
        raise ValueError("Anchor counts must be non-negative")

    original = total_tokens(turns)
    if original <= budget:
        return TruncationReport(
            turns=list(turns),
            dropped=[],
            original_tokens=original,
            kept_tokens=original,
            budget=budget,
            over_budget=False,
        )

    count = len(turns)
    preserved = set(range(min(head, count)))
    preserved.update(range(max(0, count - tail), count))

    # Lowest rank first; ties drop the earlier turn first.
    droppable = sorted(
        (pos for pos in range(count) if pos not in preserved),
        key=lambda pos: (turns[pos].importance.weight, turns[pos].importance_score, pos),
    )

    remaining = original
    dropped_positions: set[int] = set()
    for pos in droppable:
        if remaining <= budget:
            break
        dropped_positions.add(pos)
        remaining -= turns[pos].token_count

    kept = [t for pos, t in enumerate(turns) if pos not in dropped_positions]
    dropped = [t for pos, t in enumerate(turns) if pos in dropped_positions]
    return TruncationReport(
        turns=kept,
        dropped=dropped,
        original_tokens=original,
        kept_tokens=remaining,
        budget=budget,
        over_budget=remaining > budget,
    )


def truncate_content(turn: Turn, max_chars: int, marker: str = TRUNCATION_MARKER) -> Turn:
    """Bound a single pathologically long turn before turn-level truncation."""
    if max_chars < 1:
        raise ValueError("max_chars must be positive")
    if len(turn.content) <= max_chars:
        return turn
    content = turn.content[:max_chars] + marker
    return replace(turn, content=content, token_count=estimate_tokens(content), truncated=True)


def truncate_contents(turns: list[Turn], max_chars: int, marker: str = TRUNCATION_MARKER) -> list[Turn]:
    return [truncate_content(t, max_chars, marker) for t in turns]
