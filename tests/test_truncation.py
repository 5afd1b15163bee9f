import unittest

from convo_compactor.truncation import TRUNCATION_MARKER, truncate, truncate_content, truncate_with_report
from convo_compactor.turns import Importance, Role, Turn, build_turn


def _turn(index: int, tokens: int = 100, score: int = 5, importance: Importance = Importance.MEDIUM) -> Turn:
    return Turn(
        index=index,
        role=Role.USER if index % 2 == 0 else Role.ASSISTANT,
        content="x" * (tokens * 4),
        token_count=tokens,
        importance_score=score,
        importance=importance,
        has_code=False,
        has_error=False,
        has_decision=False,
    )


class TruncateTests(unittest.TestCase):
    def test_identity_when_within_budget(self) -> None:
        turns = [_turn(i) for i in range(5)]
        out = truncate(turns, 500)
        self.assertEqual(turns, out)

    def test_anchors_always_kept_even_over_budget(self) -> None:
        turns = [_turn(i) for i in range(10)]
        report = truncate_with_report(turns, 100, head=3, tail=5)
        self.assertEqual([0, 1, 2, 5, 6, 7, 8, 9], [t.index for t in report.turns])
        self.assertEqual([3, 4], [t.index for t in report.dropped])
        self.assertTrue(report.over_budget)
        self.assertEqual(800, report.kept_tokens)

    def test_drops_lowest_importance_first(self) -> None:
        turns = [_turn(i) for i in range(10)]
        turns[3] = _turn(3, score=9, importance=Importance.HIGH)
        turns[4] = _turn(4, score=2, importance=Importance.LOW)
        out = truncate(turns, 900)
        self.assertNotIn(4, [t.index for t in out])
        self.assertIn(3, [t.index for t in out])

    def test_equal_rank_drops_earlier_turn(self) -> None:
        turns = [_turn(i) for i in range(10)]
        out = truncate(turns, 900)
        self.assertEqual([0, 1, 2, 4, 5, 6, 7, 8, 9], [t.index for t in out])

    def test_rank_uses_weight_then_score_and_keeps_order(self) -> None:
        turns = [
            _turn(0),
            _turn(1, score=5, importance=Importance.MEDIUM),
            _turn(2, score=3, importance=Importance.LOW),
            _turn(3, score=9, importance=Importance.HIGH),
            _turn(4, score=2, importance=Importance.LOW),
            _turn(5),
        ]
        report = truncate_with_report(turns, 400, head=1, tail=1)
        self.assertEqual([0, 1, 3, 5], [t.index for t in report.turns])
        self.assertEqual([2, 4], [t.index for t in report.dropped])
        self.assertFalse(report.over_budget)
        self.assertEqual(400, report.kept_tokens)

    def test_result_fits_budget_when_anchors_fit(self) -> None:
        turns = [_turn(i, tokens=50 + i) for i in range(40)]
        for budget in (600, 1200, 2000):
            report = truncate_with_report(turns, budget)
            self.assertLessEqual(report.kept_tokens, budget)
            self.assertEqual(sorted(t.index for t in report.turns), [t.index for t in report.turns])

    def test_negative_anchor_counts_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            truncate([_turn(0)], 10, head=-1)


class TruncateContentTests(unittest.TestCase):
    def test_long_content_is_cut_and_marked(self) -> None:
        turn = build_turn(0, Role.ASSISTANT, "a" * 100)
        out = truncate_content(turn, 10)
        self.assertEqual("a" * 10 + TRUNCATION_MARKER, out.content)
        self.assertTrue(out.truncated)
        self.assertEqual((10 + len(TRUNCATION_MARKER) + 3) // 4, out.token_count)
        self.assertEqual(turn.index, out.index)

    def test_short_content_is_unchanged(self) -> None:
        turn = build_turn(0, Role.USER, "short")
        self.assertIs(turn, truncate_content(turn, 10))

    def test_max_chars_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            truncate_content(build_turn(0, Role.USER, "x"), 0)


if __name__ == "__main__":
    unittest.main()
