import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from loopdash import file_finder
from loopdash.file_finder import ITERATIONS_SUFFIX, find_file_by_loop_id, matches_loop_file, validate_loop_id


class LoopIdValidationTests(unittest.TestCase):
    def test_accepts_safe_ids(self) -> None:
        for loop_id in ("abc", "loop-1.2_x", "a" * 256):
            self.assertTrue(validate_loop_id(loop_id), loop_id)

    def test_rejects_traversal_and_separators(self) -> None:
        for loop_id in ("", "..", "a..b", "a/b", "a\\b", "a b", "a" * 257, None):
            self.assertFalse(validate_loop_id(loop_id), loop_id)


class FindFileTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        root = Path(tmpdir.name)
        self.current = root / "transcripts"
        self.legacy = root / "legacy"
        self.current.mkdir()
        self.legacy.mkdir()

    def test_matches_both_naming_schemes(self) -> None:
        self.assertTrue(matches_loop_file("term-1-loop-a-iterations.jsonl", "loop-a", ITERATIONS_SUFFIX))
        self.assertTrue(matches_loop_file("loop-a-iterations.jsonl", "loop-a", ITERATIONS_SUFFIX))
        self.assertFalse(matches_loop_file("term-1-xloop-a-iterations.jsonl", "loop-a", ITERATIONS_SUFFIX))
        self.assertFalse(matches_loop_file("loop-a-full.jsonl", "loop-a", ITERATIONS_SUFFIX))

    def test_current_directory_is_searched_first(self) -> None:
        (self.legacy / "loop-a-iterations.jsonl").write_text("", encoding="utf-8")
        (self.current / "term-1-loop-a-iterations.jsonl").write_text("", encoding="utf-8")

        found = find_file_by_loop_id("loop-a", ITERATIONS_SUFFIX, [self.current, self.legacy])

        self.assertEqual(found, self.current / "term-1-loop-a-iterations.jsonl")

    def test_falls_back_to_legacy_and_skips_missing_dirs(self) -> None:
        (self.legacy / "loop-a-iterations.jsonl").write_text("", encoding="utf-8")

        found = find_file_by_loop_id("loop-a", ITERATIONS_SUFFIX, [self.current / "nope", self.legacy])

        self.assertEqual(found, self.legacy / "loop-a-iterations.jsonl")

    def test_default_dirs_come_from_config(self) -> None:
        (self.current / "loop-b-iterations.jsonl").write_text("", encoding="utf-8")

        with patch.object(file_finder.config, "TRANSCRIPTS_DIR", self.current), \
                patch.object(file_finder.config, "LEGACY_TRANSCRIPTS_DIR", self.legacy):
            self.assertTrue(file_finder.file_exists_for_loop_id("loop-b", ITERATIONS_SUFFIX))
            self.assertFalse(file_finder.file_exists_for_loop_id("loop-c", ITERATIONS_SUFFIX))


if __name__ == "__main__":
    unittest.main()
