import unittest

from convo_compactor.chunking import plan
from convo_compactor.turns import Role, build_turn


def _turns(sizes: list[int]):
    return [build_turn(i, Role.USER, "y" * (size * 4)) for i, size in enumerate(sizes)]


class PlanTests(unittest.TestCase):
    def test_chunks_cover_every_turn_in_order(self) -> None:
        turns = _turns([120, 80, 300, 40, 40, 250, 10, 90, 160, 75, 30, 220])
        chunks = plan(turns, 300)
        flattened = [t for chunk in chunks for t in chunk.turns]
        self.assertEqual(turns, flattened)
        self.assertEqual(list(range(len(chunks))), [c.index for c in chunks])
        for chunk in chunks:
            self.assertGreaterEqual(len(chunk.turns), 1)
            self.assertLessEqual(chunk.token_count, 300)

    def test_greedy_packing(self) -> None:
        chunks = plan(_turns([100] * 10), 400)
        self.assertEqual([4, 4, 2], [len(c.turns) for c in chunks])
        self.assertEqual((4, 7), (chunks[1].first_turn, chunks[1].last_turn))

    def test_oversized_turn_gets_its_own_chunk(self) -> None:
        chunks = plan(_turns([50, 900, 50]), 300)
        self.assertEqual([[0], [1], [2]], [[t.index for t in c.turns] for c in chunks])
        self.assertEqual(900, chunks[1].token_count)

    def test_empty_input_yields_no_chunks(self) -> None:
        self.assertEqual([], plan([], 100))

    def test_ceiling_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            plan(_turns([1]), 0)


if __name__ == "__main__":
    unittest.main()
