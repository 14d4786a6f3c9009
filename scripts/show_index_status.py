#!/usr/bin/env python3
"""Print the quarterly fragments in a download directory, in merge order."""

from __future__ import annotations

import os
from pathlib import Path

from download_edgar_full_index import DEFAULT_OUTDIR, list_fragment_files
from edgar_index_catalog import HEADER_LINES, MASTER_FILENAME


def count_lines(path: Path) -> int:
    with open(path, "rb") as handle:
        return sum(1 for _ in handle)


def main() -> None:
    directory = Path(os.getenv("EDGAR_INDEX_DIR", DEFAULT_OUTDIR))

    print(f"Index directory: {directory}")
    if not directory.is_dir():
        print("Directory does not exist.")
        return
    fragments = list_fragment_files(directory)
    if not fragments:
        print("No fragment files found.")
        return

    print("fragment\tbytes\tdata_lines")
    total = 0
    for path in fragments:
        try:
            data_lines = max(0, count_lines(path) - HEADER_LINES)
            size = path.stat().st_size
        except OSError as exc:
            print(f"{path.name}\tERROR\t{exc}")
            continue
        total += data_lines
        print(f"{path.name}\t{size}\t{data_lines}")

    master_path = directory / MASTER_FILENAME
    master_lines = 0
    if master_path.exists():
        try:
            master_lines = count_lines(master_path)
        except OSError as exc:
            print(f"fragments={len(fragments)} data_lines={total} {MASTER_FILENAME}_lines=ERROR {exc}")
            return
    print(f"fragments={len(fragments)} data_lines={total} {MASTER_FILENAME}_lines={master_lines}")
    if master_path.exists() and master_lines != total:
        print(f"{MASTER_FILENAME} does not match the fragments; rerun merge_edgar_index.py.")


if __name__ == "__main__":
    main()
