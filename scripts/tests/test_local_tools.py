import io
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest.mock import patch

TESTS_DIR = Path(__file__).resolve().parent
ROOT_DIR = TESTS_DIR.parent
sys.path.insert(0, str(ROOT_DIR))
sys.path.insert(0, str(TESTS_DIR))

import merge_edgar_index  # noqa: E402
import show_index_status  # noqa: E402
from edgar_fakes import HEADER  # noqa: E402


class TestLocalTools(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        (self.dir / "2020-QTR2.tsv").write_bytes(HEADER + b"b\nc\n")
        (self.dir / "2020-QTR1.tsv").write_bytes(HEADER + b"a\n")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_merge_tool_rebuilds_master(self) -> None:
        (self.dir / "master.tsv").write_bytes(b"stale\n")
        output = io.StringIO()
        with redirect_stdout(output):
            merge_edgar_index.main(["--directory", str(self.dir)])
        self.assertEqual((self.dir / "master.tsv").read_bytes(), b"a\nb\nc\n")
        self.assertIn("MERGE_DONE", output.getvalue())

    def test_merge_tool_rejects_missing_directory(self) -> None:
        with self.assertRaises(SystemExit):
            merge_edgar_index.main(["--directory", str(self.dir / "nope")])

    def test_merge_tool_rejects_directory_without_fragments(self) -> None:
        with tempfile.TemporaryDirectory() as empty:
            with self.assertRaises(SystemExit):
                merge_edgar_index.main(["--directory", empty])

    def test_status_reports_fragments_in_merge_order(self) -> None:
        (self.dir / "master.tsv").write_bytes(b"a\nb\nc\n")
        output = io.StringIO()
        with patch.dict(os.environ, {"EDGAR_INDEX_DIR": str(self.dir)}), redirect_stdout(output):
            show_index_status.main()
        lines = output.getvalue().splitlines()
        self.assertTrue(lines[2].startswith("2020-QTR1.tsv\t"))
        self.assertTrue(lines[2].endswith("\t1"))
        self.assertTrue(lines[3].startswith("2020-QTR2.tsv\t"))
        self.assertTrue(lines[3].endswith("\t2"))
        self.assertEqual(lines[4], "fragments=2 data_lines=3 master.tsv_lines=3")
        self.assertEqual(len(lines), 5)

    def test_status_survives_unreadable_master(self) -> None:
        (self.dir / "master.tsv").mkdir()
        output = io.StringIO()
        with patch.dict(os.environ, {"EDGAR_INDEX_DIR": str(self.dir)}), redirect_stdout(output):
            show_index_status.main()
        last = output.getvalue().splitlines()[-1]
        self.assertTrue(last.startswith("fragments=2 data_lines=3 master.tsv_lines=ERROR"))


if __name__ == "__main__":
    unittest.main()
