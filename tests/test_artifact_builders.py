import unittest

from convo_compactor.artifact_builders import (
    CompactBuilder,
    ExercisesBuilder,
    OverviewBuilder,
    builder_for,
    extract_mermaid_diagrams,
    parse_exercises,
    parse_overview,
)
from convo_compactor.errors import MalformedResponse
from convo_compactor.models import ArtifactKind
from tests.fakes import EXERCISES_RESPONSE, OVERVIEW_RESPONSE


class BuilderRegistryTests(unittest.TestCase):
    def test_builder_for_each_kind(self) -> None:
        self.assertIsInstance(builder_for(ArtifactKind.COMPACT), CompactBuilder)
        self.assertIsInstance(builder_for("overview"), OverviewBuilder)
        self.assertIsInstance(builder_for("exercises"), ExercisesBuilder)
        with self.assertRaises(ValueError):
            builder_for("poem")


class CompactBuilderTests(unittest.TestCase):
    def test_strips_text(self) -> None:
        shaped = CompactBuilder().shape("\n  # Summary\nDone.  \n")
        self.assertEqual("# Summary\nDone.", shaped.content)
        self.assertIsNone(shaped.structured)

    def test_empty_output_is_malformed(self) -> None:
        with self.assertRaises(MalformedResponse):
            CompactBuilder().shape("   ")


class OverviewTests(unittest.TestCase):
    def test_parses_sections_and_diagrams(self) -> None:
        overview = parse_overview(OVERVIEW_RESPONSE)
        self.assertEqual("Adding retries to the HTTP client", overview["title"])
        self.assertTrue(overview["summary"].startswith("Wrapped the client"))
        self.assertEqual(["goal", "implementation"], [s["type"] for s in overview["sections"]])
        self.assertEqual(["high", "medium"], [s["importance"] for s in overview["sections"]])
        self.assertEqual([], overview["sections"][0]["diagrams"])
        diagrams = overview["sections"][1]["diagrams"]
        self.assertEqual(1, len(diagrams))
        self.assertEqual("mermaid", diagrams[0]["type"])
        self.assertTrue(diagrams[0]["code"].startswith("graph TD"))

    def test_unknown_attributes_fall_back(self) -> None:
        text = '<section type="musings" importance="extreme"><title>Odd</title><content>Body</content></section>'
        section = parse_overview(text)["sections"][0]
        self.assertEqual("context", section["type"])
        self.assertEqual("medium", section["importance"])
        self.assertEqual("Body", section["content"])

    def test_no_sections_is_malformed(self) -> None:
        with self.assertRaises(MalformedResponse):
            parse_overview("Here is an overview without any tags.")

    def test_shape_renders_markdown(self) -> None:
        shaped = OverviewBuilder().shape(OVERVIEW_RESPONSE)
        self.assertTrue(shaped.content.startswith("# Adding retries to the HTTP client"))
        self.assertIn("## Goal", shaped.content)
        self.assertEqual("Adding retries to the HTTP client", shaped.title)
        self.assertEqual(2, len(shaped.structured["sections"]))

    def test_extract_mermaid_diagrams(self) -> None:
        diagrams = extract_mermaid_diagrams("```mermaid\nsequenceDiagram\n  A->>B: hi\n```\ntext")
        self.assertEqual([{"type": "mermaid", "code": "sequenceDiagram\n  A->>B: hi"}], diagrams)


class ExercisesTests(unittest.TestCase):
    def test_parses_fenced_json_and_skips_incomplete_items(self) -> None:
        exercises = parse_exercises(EXERCISES_RESPONSE)
        self.assertEqual(1, len(exercises))
        self.assertEqual("Add jitter", exercises[0]["title"])
        self.assertEqual("intermediate", exercises[0]["difficulty"])
        self.assertEqual(["Look at wait_random"], exercises[0]["hints"])

    def test_json_embedded_in_prose(self) -> None:
        text = 'Sure! {"exercises": [{"title": "T", "prompt": "P"}]} Hope this helps.'
        exercises = parse_exercises(text)
        self.assertEqual("P", exercises[0]["prompt"])
        self.assertEqual([], exercises[0]["hints"])

    def test_invalid_or_empty_is_malformed(self) -> None:
        for text in ("no json here", '{"exercises": []}', '{"exercises": "nope"}', "{broken"):
            with self.subTest(text=text), self.assertRaises(MalformedResponse):
                parse_exercises(text)

    def test_shape_numbers_exercises(self) -> None:
        shaped = ExercisesBuilder().shape(EXERCISES_RESPONSE)
        self.assertTrue(shaped.content.startswith("## 1. Add jitter (intermediate)"))
        self.assertEqual(1, len(shaped.structured))


if __name__ == "__main__":
    unittest.main()
