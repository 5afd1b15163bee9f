from __future__ import annotations

from dataclasses import dataclass

from convo_compactor.turns import Turn, total_tokens


@dataclass(frozen=True)
class Chunk:
    index: int
    turns: tuple[Turn, ...]

    @property
    def token_count(self) -> int:
        return total_tokens(self.turns)

    @property
    def first_turn(self) -> int:
        return self.turns[0].index

    @property
    def last_turn(self) -> int:
        return self.turns[-1].index


def plan(turns: list[Turn], max_tokens_per_chunk: int) -> list[Chunk]:
    """Greedily pack ordered turns into chunks of at most ``max_tokens_per_chunk``.

    A turn larger than the ceiling gets a chunk of its own; nothing is dropped.
    """
    if max_tokens_per_chunk < 1:
        raise ValueError("max_tokens_per_chunk must be positive")

    chunks: list[Chunk] = []
    current: list[Turn] = []
    running = 0

    for turn in turns:
        if current and running + turn.token_count > max_tokens_per_chunk:
            chunks.append(Chunk(index=len(chunks), turns=tuple(current)))
            current = []
            running = 0
        current.append(turn)
        running += turn.token_count

    if current:
        chunks.append(Chunk(index=len(chunks), turns=tuple(current)))

    return chunks
