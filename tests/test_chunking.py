import unittest

from contentquery.chunking import chunk_text, iter_chunk_spans, spread_evenly
from contentquery.errors import ConfigurationError


def _sentences(count: int) -> str:
    return " ".join(f"Sentence number {idx} talks about chunk boundaries." for idx in range(count))


class TestChunking(unittest.TestCase):
    def test_short_text_is_single_trimmed_chunk(self):
        self.assertEqual(chunk_text("  Hello world.  ", max_chunk_size=100, overlap=10), ["Hello world."])

    def test_text_equal_to_max_size_is_not_split(self):
        text = "x" * 100
        self.assertEqual(chunk_text(text, max_chunk_size=100, overlap=10), [text])

    def test_empty_text_yields_one_empty_chunk(self):
        self.assertEqual(chunk_text("", max_chunk_size=100, overlap=10), [""])

    def test_chunks_respect_max_size(self):
        text = _sentences(80)
        for chunk in chunk_text(text, max_chunk_size=300, overlap=40):
            self.assertLessEqual(len(chunk), 300)

    def test_adjacent_windows_share_overlap(self):
        text = _sentences(80)
        spans = list(iter_chunk_spans(text, max_chunk_size=300, overlap=40))
        self.assertGreater(len(spans), 1)
        for (_, prev_end), (next_start, _) in zip(spans, spans[1:]):
            self.assertEqual(prev_end - next_start, 40)

    def test_non_overlapping_portions_reconstruct_text(self):
        text = _sentences(60)
        spans = list(iter_chunk_spans(text, max_chunk_size=250, overlap=30))
        rebuilt = text[spans[0][0] : spans[0][1]]
        for (_, prev_end), (_, end) in zip(spans, spans[1:]):
            rebuilt += text[prev_end:end]
        self.assertEqual(rebuilt, text)
        self.assertEqual(spans[-1][1], len(text))

    def test_window_snaps_back_to_sentence_end(self):
        text = _sentences(40)
        spans = list(iter_chunk_spans(text, max_chunk_size=300, overlap=20))
        for start, end in spans[:-1]:
            self.assertEqual(text[end - 1], ".")
            self.assertGreaterEqual(end - start, 150)

    def test_no_snap_when_it_would_shrink_below_half(self):
        text = "Tiny. " + ("a" * 1000)
        start, end = next(iter_chunk_spans(text, max_chunk_size=200, overlap=10))
        self.assertEqual((start, end), (0, 200))

    def test_paragraph_break_is_a_boundary(self):
        text = ("word " * 30).strip() + "\n\n" + ("more " * 60)
        start, end = next(iter_chunk_spans(text, max_chunk_size=200, overlap=10))
        self.assertEqual(text[end - 2 : end], "\n\n")

    def test_overlap_not_smaller_than_max_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            chunk_text("a" * 500, max_chunk_size=100, overlap=100)
        with self.assertRaises(ConfigurationError):
            list(iter_chunk_spans("a" * 500, max_chunk_size=100, overlap=150))

    def test_negative_overlap_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            chunk_text("abc", max_chunk_size=100, overlap=-1)

    def test_chunking_is_restartable(self):
        text = _sentences(50)
        self.assertEqual(
            chunk_text(text, max_chunk_size=256, overlap=32),
            chunk_text(text, max_chunk_size=256, overlap=32),
        )


class TestSpreadEvenly(unittest.TestCase):
    def test_returns_all_items_under_limit(self):
        self.assertEqual(spread_evenly([1, 2, 3], 5), [1, 2, 3])

    def test_keeps_first_and_last(self):
        picked = spread_evenly(list(range(10)), 3)
        self.assertEqual(picked, [0, 4, 9])

    def test_limit_one_returns_first(self):
        self.assertEqual(spread_evenly(["a", "b", "c"], 1), ["a"])


if __name__ == "__main__":
    unittest.main()
