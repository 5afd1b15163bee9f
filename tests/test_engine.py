import asyncio
import unittest

from convo_compactor.artifact_builders import builder_for
from convo_compactor.engine import (
    AttemptCancelled,
    AttemptFailed,
    AttemptSucceeded,
    CompactionEngine,
    EngineSettings,
    StepUpdate,
)
from convo_compactor.errors import ModelError, ModelErrorReason
from convo_compactor.models import ArtifactKind, SessionStep, Strategy
from tests.fakes import OVERVIEW_RESPONSE, FakeProvider, make_messages

_TWO_TURNS = [
    {"role": "user", "text": "How do I reverse a list in Python?"},
    {"role": "assistant", "text": "Use reversed(items) or items[::-1]."},
]


def _engine(provider, kind=ArtifactKind.COMPACT, **settings) -> CompactionEngine:
    return CompactionEngine(provider, builder_for(kind), EngineSettings(model="test-model", **settings))


def _run(engine: CompactionEngine, messages, budget: int = 8000, **kwargs):
    updates: list[StepUpdate] = []
    result = asyncio.run(engine.run(messages, budget=budget, title="Demo", on_progress=updates.append, **kwargs))
    return result, updates


class SinglePassTests(unittest.TestCase):
    def test_small_transcript_uses_one_call(self) -> None:
        provider = FakeProvider("# Summary\nReverse with slicing.")
        result, updates = _run(_engine(provider), _TWO_TURNS)

        self.assertIsInstance(result, AttemptSucceeded)
        output = result.output
        self.assertIs(Strategy.SINGLE_PASS, output.strategy)
        self.assertEqual(1, output.chunk_count)
        self.assertEqual(1, provider.calls)
        self.assertIn("[Turn 0] [USER]: How do I reverse a list in Python?", provider.prompts[0])
        self.assertEqual("# Summary\nReverse with slicing.", output.content)
        self.assertEqual(8000, output.budget)
        self.assertEqual(2, output.kept_turns)
        self.assertEqual("test-model", output.model_used)

        steps = [u.step for u in updates]
        self.assertEqual(SessionStep.ANALYZING, steps[0])
        self.assertIn(SessionStep.CHUNKING, steps)
        self.assertIn(SessionStep.REDUCING, steps)
        self.assertEqual(SessionStep.FINALIZING, steps[-1])
        progress = [u.progress for u in updates]
        self.assertEqual(sorted(progress), progress)
        self.assertEqual(95, progress[-1])

    def test_output_lists_files_mentioned_in_the_transcript(self) -> None:
        messages = [
            {"role": "user", "text": "The retry loop in src/http/client.py swallows timeouts"},
            {"role": "assistant", "text": "Fixed in src/http/client.py and covered by tests/test_client.py"},
        ]
        result, _ = _run(_engine(FakeProvider("# Notes")), messages)

        self.assertIsInstance(result, AttemptSucceeded)
        self.assertEqual(("src/http/client.py", "tests/test_client.py"), result.output.file_refs)

    def test_strategy_hint_forces_map_reduce(self) -> None:
        provider = FakeProvider()
        result, _ = _run(_engine(provider), _TWO_TURNS, strategy_hint=Strategy.MAP_REDUCE)
        self.assertIs(Strategy.MAP_REDUCE, result.output.strategy)
        self.assertEqual(2, provider.calls)


class MapReduceTests(unittest.TestCase):
    def test_large_transcript_is_truncated_then_mapped_in_order(self) -> None:
        provider = FakeProvider(lambda prompt: "final summary" if "### Segment" in prompt else "segment summary")
        result, updates = _run(_engine(provider, max_tokens_per_chunk=4000), make_messages(50, 400))

        self.assertIsInstance(result, AttemptSucceeded)
        output = result.output
        self.assertIs(Strategy.MAP_REDUCE, output.strategy)
        self.assertEqual(2, output.chunk_count)
        self.assertEqual(20, output.kept_turns)
        self.assertEqual(30, output.dropped_turns)
        self.assertEqual(20_000, output.original_tokens)
        self.assertEqual("final summary", output.content)

        self.assertEqual(3, provider.calls)
        self.assertIn("Segment 1 of 2", provider.prompts[0])
        self.assertIn("Segment 2 of 2", provider.prompts[1])
        reduce_prompt = provider.prompts[2]
        self.assertLess(reduce_prompt.index("### Segment 1"), reduce_prompt.index("### Segment 2"))
        self.assertEqual([4096, 4096, 8192], provider.max_tokens)

        processed = [u.chunks_processed for u in updates if u.step is SessionStep.MAPPING and u.level == "info"]
        self.assertEqual([1, 2], processed)
        mapping = [u.progress for u in updates if u.step is SessionStep.MAPPING]
        self.assertTrue(all(10 <= p <= 80 for p in mapping))
        self.assertEqual(80, [u for u in updates if u.step is SessionStep.REDUCING][0].progress)

    def test_overview_kind_is_shaped(self) -> None:
        provider = FakeProvider(lambda prompt: OVERVIEW_RESPONSE if "tagged sections" in prompt else "notes")
        result, _ = _run(_engine(provider, ArtifactKind.OVERVIEW, max_tokens_per_chunk=4000), make_messages(50, 400))
        self.assertIsInstance(result, AttemptSucceeded)
        self.assertEqual("Adding retries to the HTTP client", result.output.title)
        self.assertEqual(2, len(result.output.structured["sections"]))


class FailureTests(unittest.TestCase):
    def test_prompt_too_large_is_retryable(self) -> None:
        provider = FakeProvider(fail_on={1: ModelError(ModelErrorReason.PROMPT_TOO_LARGE, "too long")})
        result, _ = _run(_engine(provider), _TWO_TURNS)
        self.assertIsInstance(result, AttemptFailed)
        self.assertTrue(result.retryable)
        self.assertEqual("prompt_too_large", result.reason)

    def test_truncated_response_is_retryable(self) -> None:
        provider = FakeProvider(truncate_on={1})
        result, _ = _run(_engine(provider), _TWO_TURNS)
        self.assertIsInstance(result, AttemptFailed)
        self.assertTrue(result.retryable)
        self.assertEqual("truncated", result.reason)

    def test_auth_error_is_fatal(self) -> None:
        provider = FakeProvider(fail_on={1: ModelError(ModelErrorReason.AUTH, "bad key")})
        result, _ = _run(_engine(provider), _TWO_TURNS)
        self.assertIsInstance(result, AttemptFailed)
        self.assertFalse(result.retryable)
        self.assertEqual("auth", result.reason)
        self.assertIn("bad key", result.error)

    def test_malformed_overview_is_fatal(self) -> None:
        provider = FakeProvider("Just some prose, no sections.")
        result, _ = _run(_engine(provider, ArtifactKind.OVERVIEW), _TWO_TURNS)
        self.assertIsInstance(result, AttemptFailed)
        self.assertFalse(result.retryable)
        self.assertEqual("malformed_response", result.reason)


class CancellationTests(unittest.TestCase):
    def test_cancel_before_start_makes_no_calls(self) -> None:
        provider = FakeProvider()

        async def scenario():
            cancel = asyncio.Event()
            cancel.set()
            return await _engine(provider).run(_TWO_TURNS, budget=8000, cancel_event=cancel)

        self.assertIsInstance(asyncio.run(scenario()), AttemptCancelled)
        self.assertEqual(0, provider.calls)

    def test_cancel_during_map_stops_before_next_chunk(self) -> None:
        async def scenario():
            cancel = asyncio.Event()
            provider = FakeProvider(on_call=lambda call: cancel.set())
            engine = _engine(provider, max_tokens_per_chunk=4000)
            result = await engine.run(make_messages(50, 400), budget=8000, cancel_event=cancel)
            return result, provider

        result, provider = asyncio.run(scenario())
        self.assertIsInstance(result, AttemptCancelled)
        self.assertEqual(1, provider.calls)


if __name__ == "__main__":
    unittest.main()
