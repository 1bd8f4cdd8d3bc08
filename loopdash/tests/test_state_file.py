import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from loopdash.parsers import state_file
from loopdash.parsers.state_file import extract_frontmatter, parse_iteration, read_iteration_from_state_file

_VALID = """---
active: true
session_id: "term-1"
loop_id: "loop-a"
iteration: 3
max_iterations: 10
---

Keep going until the tests pass.
"""


class StateFileParseTests(unittest.TestCase):
    def test_valid_frontmatter_yields_iteration(self) -> None:
        self.assertEqual(parse_iteration(_VALID), 3)

    def test_crlf_line_endings_are_accepted(self) -> None:
        self.assertEqual(parse_iteration(_VALID.replace("\n", "\r\n")), 3)

    def test_missing_opening_delimiter(self) -> None:
        self.assertIsNone(parse_iteration("session_id: a\niteration: 1\n---\n"))

    def test_opening_delimiter_must_be_first_line(self) -> None:
        self.assertIsNone(parse_iteration("\n---\nsession_id: a\niteration: 1\n---\n"))

    def test_unterminated_frontmatter_is_rejected(self) -> None:
        self.assertIsNone(parse_iteration("---\nsession_id: a\niteration: 1\n"))

    def test_required_keys(self) -> None:
        self.assertIsNone(parse_iteration("---\niteration: 1\n---\n"))
        self.assertIsNone(parse_iteration("---\nsession_id: a\n---\n"))
        self.assertIsNone(parse_iteration("---\nsession_id: ''\niteration: 1\n---\n"))

    def test_iteration_must_be_non_negative_integer(self) -> None:
        self.assertIsNone(parse_iteration("---\nsession_id: a\niteration: -1\n---\n"))
        self.assertIsNone(parse_iteration("---\nsession_id: a\niteration: two\n---\n"))
        self.assertIsNone(parse_iteration("---\nsession_id: a\niteration: true\n---\n"))
        self.assertIsNone(parse_iteration("---\nsession_id: a\niteration: 1.5\n---\n"))
        self.assertEqual(parse_iteration("---\nsession_id: a\niteration: 0\n---\n"), 0)

    def test_non_mapping_or_invalid_yaml(self) -> None:
        self.assertIsNone(extract_frontmatter("---\n- a\n- b\n---\n"))
        self.assertIsNone(extract_frontmatter("---\nkey: [unclosed\n---\n"))


class StateFileReadTests(unittest.TestCase):
    def _path(self, name: str = "state.md") -> Path:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        return Path(tmpdir.name) / name

    def test_missing_file_returns_none_without_retry(self) -> None:
        with patch.object(state_file.time, "sleep") as sleep:
            self.assertIsNone(read_iteration_from_state_file(self._path()))
        sleep.assert_not_called()

    def test_reads_iteration_from_disk(self) -> None:
        path = self._path()
        path.write_text(_VALID, encoding="utf-8")

        self.assertEqual(read_iteration_from_state_file(path), 3)

    def test_partial_write_is_retried_once(self) -> None:
        path = self._path()
        path.write_text("---\nsession_id: a\nitera", encoding="utf-8")

        def finish_write(_delay: float) -> None:
            path.write_text(_VALID, encoding="utf-8")

        with patch.object(state_file.time, "sleep", side_effect=finish_write) as sleep:
            self.assertEqual(read_iteration_from_state_file(path, max_retries=2), 3)
        sleep.assert_called_once()

    def test_persistently_malformed_file_gives_up(self) -> None:
        path = self._path()
        path.write_text("garbage", encoding="utf-8")

        with patch.object(state_file.time, "sleep") as sleep:
            self.assertIsNone(read_iteration_from_state_file(path, max_retries=2))
        self.assertEqual(sleep.call_count, 1)


if __name__ == "__main__":
    unittest.main()
