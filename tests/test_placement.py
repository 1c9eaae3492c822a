"""
Tests for cognitive-load pause-point placement and question attachment.

Placement is pure; question generation uses an in-memory generator.
Run: python3 -m pytest tests/test_placement.py -v
"""

import unittest

from lecturepulse.errors import QuestionGenerationError
from lecturepulse.models import DomainProfile, TranscriptSegment
from lecturepulse.services.placement import (
    SYNTHETIC_REASON,
    CognitiveLoadPlacementEngine,
    format_time,
)
from tests.fakes import FakeGenerator

LOW = "we talk about things here and there"
HIGH = (
    "The derivative is defined as the limit of the difference quotient, "
    "a theorem we rely on throughout"
)
MEDIUM = "This principle of conservation is called the first law"


def lecture(duration: int, special: dict[int, str] | None = None, step: int = 30) -> list[TranscriptSegment]:
    """Back-to-back segments; *special* maps a segment end time to its text."""
    special = special or {}
    return [
        TranscriptSegment(text=special.get(end, LOW), start=end - step, end=end)
        for end in range(step, duration + 1, step)
    ]


def engine(generator=None) -> CognitiveLoadPlacementEngine:
    return CognitiveLoadPlacementEngine(
        generator or FakeGenerator(),
        min_start_seconds=60,
        min_start_fraction=0.10,
        min_spacing_seconds=120,
        shift_step_seconds=30,
        candidate_threshold=5,
    )


def times(points) -> list[float]:
    return [p.timestamp_seconds for p in points]


class TestScoring(unittest.TestCase):
    def test_low_content_scores_minimum(self):
        segments = lecture(60)
        result = engine().score_segment(segments[0], None, DomainProfile.STEM, set())
        self.assertEqual(result.score, 1)
        self.assertEqual(result.reasons, [])

    def test_concept_and_formula_score_high(self):
        segment = TranscriptSegment(HIGH, 0, 30)
        result = engine().score_segment(segment, None, DomainProfile.STEM, set())
        self.assertGreaterEqual(result.score, 7)
        self.assertIn("New concept introduced", result.reasons)
        self.assertIn("Formula or derivation", result.reasons)
        self.assertEqual(result.question_type, "short_answer")

    def test_lecture_entities_add_weight(self):
        segment = TranscriptSegment("the theorem about the limit", 0, 30)
        plain = engine().score_segment(segment, None, DomainProfile.STEM, set())
        weighted = engine().score_segment(segment, None, DomainProfile.STEM, {"theorem", "limit"})
        self.assertEqual(weighted.score - plain.score, 2)

    def test_score_is_clamped(self):
        text = HIGH + " moving on, in summary this algorithm derivation equation"
        result = engine().score_segment(
            TranscriptSegment(text, 0, 30), None, DomainProfile.STEM, {"theorem", "limit", "derivative"}
        )
        self.assertEqual(result.score, 10)

    def test_min_start_time(self):
        self.assertEqual(engine().min_start_time(300), 60)
        self.assertEqual(engine().min_start_time(1800), 180)

    def test_format_time(self):
        self.assertEqual(format_time(125.7), "2:05")


class TestPlacement(unittest.TestCase):
    """Exactly N points, after the minimum start, at least the minimum spacing apart."""

    def assert_valid_layout(self, points, count, min_start, spacing=120):
        self.assertEqual(len(points), count)
        ts = times(points)
        self.assertEqual(ts, sorted(ts))
        self.assertGreaterEqual(ts[0], min_start)
        for a, b in zip(ts, ts[1:]):
            self.assertGreaterEqual(b - a, spacing - 1e-6)
        self.assertEqual([p.order_index for p in points], list(range(count)))

    def test_ten_minute_lecture_without_peaks_gets_even_checkpoints(self):
        points = engine().place(lecture(600), 5)

        self.assertEqual(times(points), [90, 210, 330, 450, 570])
        self.assertTrue(all(p.is_synthetic for p in points))
        self.assertTrue(all(p.reason == SYNTHETIC_REASON for p in points))
        self.assert_valid_layout(points, 5, 60)

    def test_high_load_segments_become_pause_points(self):
        segments = lecture(1800, {330: HIGH, 360: HIGH, 930: HIGH, 1530: HIGH})
        points = engine().place(segments, 5)

        self.assert_valid_layout(points, 5, 180)
        real = [p for p in points if not p.is_synthetic]
        self.assertEqual(times(real), [330, 930, 1530])
        self.assertNotIn(360, times(points))
        self.assertTrue(all(p.cognitive_load_score >= 5 for p in real))
        self.assertEqual(times(points), [330, 666, 930, 1314, 1530])

    def test_highest_scoring_candidates_are_kept(self):
        segments = lecture(600, {150: HIGH, 300: MEDIUM, 450: HIGH})
        points = engine().place(segments, 2)

        self.assertEqual(times(points), [150, 450])
        self.assertFalse(any(p.is_synthetic for p in points))

    def test_candidates_before_min_start_are_ignored(self):
        segments = lecture(1800, {60: HIGH})
        points = engine().place(segments, 3)
        self.assertNotIn(60, times(points))
        self.assert_valid_layout(points, 3, 180)

    def test_short_lecture_still_gets_every_point(self):
        points = engine().place(lecture(210), 5)
        self.assertEqual(len(points), 5)
        ts = times(points)
        self.assertGreaterEqual(ts[0], 60)
        self.assertEqual(len(set(ts)), 5)

    def test_empty_transcript(self):
        points = engine().place([], 3)
        self.assertEqual(times(points), [60, 180, 300])

    def test_zero_count(self):
        self.assertEqual(engine().place(lecture(600), 0), [])

    def test_placement_is_deterministic(self):
        segments = lecture(1800, {330: HIGH, 930: MEDIUM})
        first = [p.to_dict() for p in engine().place(segments, 4)]
        second = [p.to_dict() for p in engine().place(segments, 4)]
        self.assertEqual(first, second)

    def test_context_covers_preceding_two_minutes(self):
        segments = [
            TranscriptSegment("alpha", 0, 100),
            TranscriptSegment("beta", 100, 200),
            TranscriptSegment("gamma", 200, 300),
        ]
        self.assertEqual(CognitiveLoadPlacementEngine.context_for(segments, 250), "beta gamma")


class TestAnalyze(unittest.IsolatedAsyncioTestCase):
    async def test_every_point_gets_a_question(self):
        generator = FakeGenerator()
        points = await engine(generator).analyze(lecture(1800, {930: HIGH}), 4)

        self.assertEqual(len(points), 4)
        self.assertTrue(all(p.question is not None for p in points))
        self.assertEqual(len(generator.calls), 4)
        synthetic_contexts = [
            ctx for (ctx, _), p in zip(generator.calls, points) if p.is_synthetic
        ]
        for ctx in synthetic_contexts:
            self.assertTrue(ctx.startswith("Summarize the main takeaway"))

    async def test_generation_failure_falls_back(self):
        generator = FakeGenerator(error=QuestionGenerationError("model down"))
        points = await engine(generator).analyze(lecture(600), 3)

        self.assertEqual(len(points), 3)
        for point in points:
            self.assertEqual(
                point.question.question,
                "What is the main takeaway from this part of the lecture?",
            )
            self.assertEqual(point.question.correct_answer, "A")
            self.assertEqual(len(point.question.options), 4)


if __name__ == "__main__":
    unittest.main()
