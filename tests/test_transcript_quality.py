"""
Tests for the transcript accumulator and content-quality heuristics.
Run: python3 -m pytest tests/test_transcript_quality.py -v
"""

import unittest

from lecturepulse.live.accumulator import TranscriptAccumulator
from lecturepulse.live.quality import (
    analyze_content_quality,
    detect_topic_change,
    filler_ratio,
    moving_type_token_ratio,
    recent_words,
    words_of,
)
from lecturepulse.models import TranscriptEvent
from tests.fakes import final_event

RICH_TEXT = (
    "The citric acid cycle oxidizes acetyl coenzyme derived from carbohydrates, fats and "
    "proteins into carbon dioxide while reducing electron carriers that later drive "
    "oxidative phosphorylation inside mitochondria, producing most cellular energy for "
    "aerobic organisms including humans and plants."
)

FILLER_TEXT = "um so like you know um basically uh like so um you know i mean " * 4


class TestTranscriptAccumulator(unittest.TestCase):
    def test_only_final_non_empty_events_are_kept(self):
        acc = TranscriptAccumulator()
        self.assertFalse(acc.add(TranscriptEvent(text="draft", is_final=False, confidence=0.5)))
        self.assertFalse(acc.add(final_event("   ")))
        self.assertTrue(acc.add(final_event("first part.")))
        self.assertTrue(acc.add(final_event(" second part. ")))
        self.assertEqual(acc.text, "first part. second part.")
        self.assertEqual(acc.final_events, 2)
        self.assertEqual(len(acc), len("first part. second part."))

    def test_tail_and_since(self):
        acc = TranscriptAccumulator()
        acc.add(final_event("abc"))
        acc.add(final_event("def"))
        self.assertEqual(acc.tail(3), "def")
        self.assertEqual(acc.tail(0), "")
        self.assertEqual(acc.since(4), "def")

    def test_reset(self):
        acc = TranscriptAccumulator()
        acc.add(final_event("abc"))
        acc.reset()
        self.assertEqual(acc.text, "")
        self.assertEqual(acc.final_events, 0)


class TestContentQuality(unittest.TestCase):
    """Scores separate real teaching from filler and silence."""

    def test_rich_content_scores_high(self):
        quality = analyze_content_quality(RICH_TEXT, 15)
        self.assertGreater(quality.score, 0.8)
        self.assertEqual(quality.filler_ratio, 0.0)
        self.assertFalse(quality.is_pause)

    def test_filler_content_scores_low(self):
        quality = analyze_content_quality(FILLER_TEXT, 60)
        self.assertLess(quality.score, 0.35)
        self.assertGreater(quality.filler_ratio, 0.5)

    def test_short_text_is_a_pause(self):
        quality = analyze_content_quality("hello there", 60)
        self.assertTrue(quality.is_pause)
        self.assertLess(quality.score, 0.1)

    def test_words_per_minute(self):
        text = " ".join(f"word{i}" for i in range(150))
        self.assertEqual(analyze_content_quality(text, 60).words_per_minute, 150)
        self.assertEqual(analyze_content_quality(text, 120).words_per_minute, 75)

    def test_question_words(self):
        self.assertTrue(analyze_content_quality("what is entropy", 60).has_question_words)
        self.assertFalse(analyze_content_quality("entropy increases", 60).has_question_words)

    def test_empty_text(self):
        quality = analyze_content_quality("", 60)
        self.assertEqual(quality.word_count, 0)
        self.assertEqual(quality.score, 0.0)

    def test_long_text_not_penalised_for_recurring_vocabulary(self):
        words = [f"term{i % 100}" for i in range(1000)]
        self.assertAlmostEqual(moving_type_token_ratio(words), 1.0)
        self.assertAlmostEqual(len(set(words)) / len(words), 0.1)

    def test_filler_phrases_count_double(self):
        self.assertAlmostEqual(filler_ratio(words_of("you know entropy")), 2 / 3)

    def test_recent_words(self):
        self.assertEqual(recent_words("a b c d e", 2), "d e")
        self.assertEqual(recent_words("a b", 5), "a b")


class TestTopicChange(unittest.TestCase):
    def test_disjoint_vocabulary_is_a_change(self):
        previous = "mitochondria produce energy through oxidative phosphorylation and glycolysis pathways"
        current = "the french revolution transformed european politics and monarchy forever"
        self.assertTrue(detect_topic_change(previous, current))

    def test_shared_vocabulary_is_not_a_change(self):
        previous = "mitochondria produce energy through oxidative phosphorylation and glycolysis pathways"
        current = "oxidative phosphorylation in mitochondria yields energy after glycolysis pathways"
        self.assertFalse(detect_topic_change(previous, current))

    def test_short_previous_segment_never_changes_topic(self):
        self.assertFalse(detect_topic_change("hello there", "completely different words here"))


if __name__ == "__main__":
    unittest.main()
