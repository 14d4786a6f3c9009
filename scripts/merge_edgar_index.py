#!/usr/bin/env python3
"""Rebuild master.tsv from quarterly fragments already on disk, without downloading."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Sequence

from download_edgar_full_index import (
    DEFAULT_OUTDIR,
    MERGE_MODES,
    MergeError,
    list_fragment_files,
    log_event,
    merge_index_files,
)
from edgar_index_catalog import HEADER_LINES


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--directory", default=DEFAULT_OUTDIR, help="Directory holding <year>-<QTRn>.tsv fragments.")
    parser.add_argument("--merge-mode", choices=MERGE_MODES, default="replace")
    parser.add_argument(
        "--header-lines",
        type=int,
        default=HEADER_LINES,
        help="Leading lines dropped from every fragment.",
    )
    args = parser.parse_args(argv)

    directory = Path(args.directory)
    if not directory.is_dir():
        raise SystemExit(f"Directory not found: {directory}")
    if args.header_lines < 0:
        raise SystemExit("--header-lines must be 0 or a positive integer.")

    fragments = list_fragment_files(directory)
    if not fragments:
        raise SystemExit(f"No fragment files found in {directory}.")
    log_event("MERGE_PLAN", directory=directory, fragments=len(fragments), mode=args.merge_mode)

    try:
        result = merge_index_files(directory, mode=args.merge_mode, header_lines=args.header_lines)
    except MergeError as exc:
        log_event("MERGE_FATAL", directory=directory, error=str(exc))
        raise SystemExit(1) from exc
    log_event("MERGE_DONE", path=result.path, fragments=result.fragments, lines=result.lines, mode=args.merge_mode)


if __name__ == "__main__":
    main()
