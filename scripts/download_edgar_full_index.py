#!/usr/bin/env python3
"""Download EDGAR quarterly full-index archives and merge them into master.tsv."""

from __future__ import annotations

import argparse
import csv
import json
import os
import re
import shutil
import sys
import tempfile
import time
import zipfile
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import IO, Any, Dict, Iterable, List, Optional, Sequence

import requests
import yaml
from requests.adapters import HTTPAdapter
from tqdm import tqdm

from edgar_index_catalog import (
    HEADER_LINES,
    MASTER_FILENAME,
    TARGET_ENTRY,
    Endpoint,
    fragment_name_from_url,
    fragment_sort_key,
    generate_endpoints,
    parse_fragment_name,
)

DEFAULT_OUTDIR = "data/raw/edgar/indexes"
DEFAULT_LOGS_DIR = "logs"
DEFAULT_USER_AGENT = "edgar-full-index/1.0 (+https://your.email.or.project)"
DEFAULT_MAX_WORKERS = 8
DEFAULT_TIMEOUT_SECONDS = 60
DEFAULT_SPOOL_MAX_MB = 64
CHUNK_SIZE = 1024 * 1024
MERGE_MODES = ("replace", "append")


@dataclass
class DownloadStats:
    endpoints: int = 0
    downloaded: int = 0
    missing_entry: int = 0
    failures: int = 0
    merged_fragments: int = 0
    merged_lines: int = 0


@dataclass(frozen=True)
class FetchOutcome:
    url: str
    status: str = ""
    error: Optional[str] = None
    fragment: Optional[Path] = None
    entry_found: bool = False
    bytes_written: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class MergeResult:
    path: Path
    fragments: int
    lines: int


class MergeError(RuntimeError):
    """A fragment could not be read or master.tsv could not be written."""


class TeeStream:
    def __init__(self, *streams: object) -> None:
        self.streams = streams

    def write(self, text: str) -> int:
        for stream in self.streams:
            stream.write(text)
        return len(text)

    def flush(self) -> None:
        for stream in self.streams:
            stream.flush()

    def isatty(self) -> bool:
        return any(getattr(stream, "isatty", lambda: False)() for stream in self.streams)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _log_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return "null"
    text = str(value)
    if re.fullmatch(r"[A-Za-z0-9._:/+\-]+", text):
        return text
    return json.dumps(text, ensure_ascii=True)


def log_event(event: str, **fields: object) -> None:
    parts = [event]
    for key, value in fields.items():
        parts.append(f"{key}={_log_value(value)}")
    print(" ".join(parts), flush=True)


def format_exception_message(exc: BaseException) -> str:
    text = str(exc).strip()
    if text:
        return text
    rep = repr(exc).strip()
    if rep and rep != f"{type(exc).__name__}()":
        return rep
    return type(exc).__name__


def _coerce_config_bool(value: object, key: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise SystemExit(f"Config key '{key}' must be a boolean (true/false), got '{value}'.")


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise SystemExit(f"Config file not found: {path}")
    suffix = path.suffix.lower()
    raw = path.read_text(encoding="utf-8")
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(raw)
    elif suffix == ".json":
        data = json.loads(raw)
    else:
        raise SystemExit("Unsupported config file extension. Use .yaml/.yml or .json.")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SystemExit("Config root must be a mapping/object.")
    return data


def flatten_config(data: Dict[str, Any]) -> Dict[str, Any]:
    flattened: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            for nested_key, nested_value in value.items():
                flattened[f"{key}_{nested_key}"] = nested_value
        else:
            flattened[key] = value
    return flattened


def config_to_parser_defaults(config_data: Dict[str, Any]) -> Dict[str, Any]:
    cfg = flatten_config(config_data)
    defaults: Dict[str, Any] = {}
    scalar_map = {
        "start_year": "start_year",
        "download_start_year": "start_year",
        "end_year": "end_year",
        "download_end_year": "end_year",
        "directory": "directory",
        "outdir": "directory",
        "download_directory": "directory",
        "download_outdir": "directory",
        "max_workers": "max_workers",
        "download_max_workers": "max_workers",
        "network_max_workers": "max_workers",
        "timeout_seconds": "timeout_seconds",
        "download_timeout_seconds": "timeout_seconds",
        "network_timeout_seconds": "timeout_seconds",
        "spool_max_mb": "spool_max_mb",
        "download_spool_max_mb": "spool_max_mb",
        "user_agent": "user_agent",
        "network_user_agent": "user_agent",
        "merge_mode": "merge_mode",
        "logs_dir": "logs_dir",
        "logging_logs_dir": "logs_dir",
    }
    bool_map = {
        "skip_download": "skip_download",
        "download_skip": "skip_download",
        "skip_merge": "skip_merge",
        "merge_skip": "skip_merge",
        "dry_run": "dry_run",
        "download_dry_run": "dry_run",
    }
    for source_key, target_key in scalar_map.items():
        if source_key in cfg:
            defaults[target_key] = cfg[source_key]
    for source_key, target_key in bool_map.items():
        if source_key in cfg:
            defaults[target_key] = _coerce_config_bool(cfg[source_key], source_key)
    if "merge_mode" in defaults and defaults["merge_mode"] not in MERGE_MODES:
        raise SystemExit(f"Config key 'merge_mode' must be one of: {', '.join(MERGE_MODES)}.")
    return defaults


def build_session(user_agent: str = DEFAULT_USER_AGENT, pool_size: int = DEFAULT_MAX_WORKERS) -> requests.Session:
    session = requests.Session()
    # sec.gov rejects requests without a declared User-Agent.
    session.headers.update({"User-Agent": user_agent})
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def extract_target_entry(archive_file: IO[bytes], out: IO[bytes], entry_name: str = TARGET_ENTRY) -> Optional[int]:
    """Copy ``entry_name`` from a ZIP archive into ``out``.

    Returns the number of bytes written, or None when the archive has no such entry.
    """
    written: Optional[int] = None
    with zipfile.ZipFile(archive_file) as archive:
        for info in archive.infolist():
            if info.filename != entry_name:
                continue
            start = out.tell()
            with archive.open(info) as handle:
                shutil.copyfileobj(handle, out, CHUNK_SIZE)
            written = (written or 0) + out.tell() - start
    return written


def fetch_and_extract(
    url: str,
    dest_dir: Path,
    session: requests.Session,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    spool_max_bytes: int = DEFAULT_SPOOL_MAX_MB * 1024 * 1024,
) -> FetchOutcome:
    """Fetch one quarterly archive and write its master.idx to ``<year>-<QTRn>.tsv``.

    Always returns an outcome. The fragment file is created before the request
    and is left in place, possibly empty, when the request or the archive fails.
    """
    try:
        fragment = Path(dest_dir) / fragment_name_from_url(url)
        out = open(fragment, "wb")
    except (OSError, ValueError) as exc:
        return FetchOutcome(url=url, error=format_exception_message(exc))

    status = ""
    with out:
        try:
            with session.get(url, stream=True, timeout=timeout_seconds) as response:
                status = f"{response.status_code} {response.reason or ''}".strip()
                if response.status_code != 200:
                    return FetchOutcome(url=url, status=status, error=f"HTTP {status}", fragment=fragment)
                with tempfile.SpooledTemporaryFile(max_size=spool_max_bytes) as buffer:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            buffer.write(chunk)
                    buffer.seek(0)
                    written = extract_target_entry(buffer, out)
        except Exception as exc:  # noqa: BLE001
            return FetchOutcome(url=url, status=status, error=format_exception_message(exc), fragment=fragment)

    return FetchOutcome(
        url=url,
        status=status,
        fragment=fragment,
        entry_found=written is not None,
        bytes_written=written or 0,
    )


def log_outcome(outcome: FetchOutcome) -> None:
    if not outcome.ok:
        log_event("FETCH_FAILED", url=outcome.url, status=outcome.status, error=outcome.error)
        return
    log_event(
        "FETCH_DONE",
        url=outcome.url,
        status=outcome.status,
        fragment=outcome.fragment.name if outcome.fragment else None,
        bytes=outcome.bytes_written,
        entry_found=outcome.entry_found,
    )


def download_index_files(
    endpoints: Iterable[Endpoint],
    dest_dir: Path,
    session: Optional[requests.Session] = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    spool_max_bytes: int = DEFAULT_SPOOL_MAX_MB * 1024 * 1024,
    progress: bool = True,
) -> List[FetchOutcome]:
    """Run one fetch per endpoint and return the outcomes in arrival order.

    ``max_workers=0`` starts a thread for every endpoint at once. Failures are
    logged and never stop the remaining fetches.
    """
    endpoints = list(endpoints)
    outcomes: List[FetchOutcome] = []
    if not endpoints:
        return outcomes
    workers = len(endpoints) if max_workers <= 0 else min(max_workers, len(endpoints))
    session = session or build_session(pool_size=workers)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="edgar-fetch") as executor:
        futures: Dict[Future[FetchOutcome], Endpoint] = {
            executor.submit(
                fetch_and_extract,
                endpoint.url,
                dest_dir,
                session,
                timeout_seconds,
                spool_max_bytes,
            ): endpoint
            for endpoint in endpoints
        }
        for future in tqdm(
            as_completed(futures),
            total=len(futures),
            desc="Quarters",
            unit="archive",
            disable=not progress,
        ):
            try:
                outcome = future.result()
            except Exception as exc:  # noqa: BLE001
                outcome = FetchOutcome(url=futures[future].url, error=format_exception_message(exc))
            log_outcome(outcome)
            outcomes.append(outcome)
    return outcomes


def list_fragment_files(directory: Path) -> List[Path]:
    """Fragment files in ``directory``, ordered by (year, quarter)."""
    # Matched by name only; a directory or dangling link named like a fragment
    # fails in append_fragment_lines.
    names = [entry.name for entry in directory.iterdir() if parse_fragment_name(entry.name)]
    return [directory / name for name in sorted(names, key=fragment_sort_key)]


def append_fragment_lines(fragment: Path, handle: IO[bytes], header_lines: int = HEADER_LINES) -> int:
    count = 0
    with open(fragment, "rb") as source:
        for line_number, line in enumerate(source):
            if line_number < header_lines:
                continue
            if line.endswith(b"\n"):
                line = line[:-1]
            if line.endswith(b"\r"):
                line = line[:-1]
            handle.write(line + b"\n")
            count += 1
    handle.flush()
    return count


def merge_index_files(directory: Path, mode: str = "replace", header_lines: int = HEADER_LINES) -> MergeResult:
    """Merge the data lines of every fragment into ``master.tsv``.

    ``replace`` rebuilds master.tsv from scratch and swaps it in atomically, so
    repeated runs give the same file. ``append`` adds to an existing master.tsv
    and duplicates records when run twice over the same fragments.
    """
    if mode not in MERGE_MODES:
        raise ValueError(f"Unknown merge mode '{mode}'. Choices: {', '.join(MERGE_MODES)}")
    directory = Path(directory)
    master_path = directory / MASTER_FILENAME
    try:
        fragments = list_fragment_files(directory)
    except OSError as exc:
        raise MergeError(f"Cannot list {directory}: {format_exception_message(exc)}") from exc

    target = master_path.with_suffix(master_path.suffix + ".part") if mode == "replace" else master_path
    lines = 0
    current: Optional[Path] = None
    try:
        with open(target, "wb" if mode == "replace" else "ab") as handle:
            for current in fragments:
                fragment_lines = append_fragment_lines(current, handle, header_lines)
                lines += fragment_lines
                log_event("MERGE_FRAGMENT", file=current.name, lines=fragment_lines)
            current = None
        if mode == "replace":
            target.replace(master_path)
    except OSError as exc:
        if mode == "replace":
            target.unlink(missing_ok=True)
        where = current.name if current is not None else target.name
        raise MergeError(f"Merge failed at {where}: {format_exception_message(exc)}") from exc
    return MergeResult(path=master_path, fragments=len(fragments), lines=lines)


def stats_as_dict(stats: DownloadStats) -> Dict[str, int]:
    return asdict(stats)


def outcome_as_dict(outcome: FetchOutcome) -> Dict[str, Any]:
    payload = asdict(outcome)
    payload["fragment"] = str(outcome.fragment) if outcome.fragment else None
    return payload


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    this_year = date.today().year

    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config", help="Path to YAML/JSON config file.")
    pre_args, _ = pre_parser.parse_known_args(argv)
    config_defaults: Dict[str, Any] = {}
    if pre_args.config:
        config_defaults = config_to_parser_defaults(load_config_file(Path(pre_args.config)))

    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--config", help="Path to YAML/JSON config file.")
    parser.add_argument(
        "--start-year",
        type=int,
        default=this_year,
        help="First year to download (inclusive). Defaults to the current year.",
    )
    parser.add_argument(
        "--end-year",
        type=int,
        default=this_year,
        help="Last year to download (inclusive). Defaults to the current year.",
    )
    parser.add_argument(
        "--directory",
        "--outdir",
        dest="directory",
        default=DEFAULT_OUTDIR,
        help="Directory for the quarterly fragments and master.tsv.",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=DEFAULT_MAX_WORKERS,
        help="Concurrent downloads. 0 starts one download per quarter at once.",
    )
    parser.add_argument("--timeout-seconds", type=float, default=DEFAULT_TIMEOUT_SECONDS, help="HTTP timeout in seconds.")
    parser.add_argument(
        "--spool-max-mb",
        type=int,
        default=DEFAULT_SPOOL_MAX_MB,
        help="Archive bytes kept in memory per download before spilling to a temp file.",
    )
    parser.add_argument("--user-agent", help="HTTP User-Agent. Falls back to EDGAR_USER_AGENT.")
    parser.add_argument(
        "--merge-mode",
        choices=MERGE_MODES,
        default="replace",
        help="replace rebuilds master.tsv each run; append adds to an existing master.tsv.",
    )
    parser.add_argument("--skip-download", action="store_true", help="Only merge fragments already on disk.")
    parser.add_argument("--skip-merge", action="store_true", help="Download fragments without building master.tsv.")
    parser.add_argument("--dry-run", action="store_true", help="Print planned archive URLs and exit.")
    parser.add_argument("--logs-dir", default=DEFAULT_LOGS_DIR, help="Root directory for per-run logs.")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    if config_defaults:
        parser.set_defaults(**config_defaults)
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    run_started_at = utc_now_iso()
    run_started_monotonic = time.monotonic()
    run_dir = Path(args.logs_dir) / datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    run_dir.mkdir(parents=True, exist_ok=True)
    run_log_path = run_dir / "run.log"
    failures_csv_path = run_dir / "failures.csv"
    summary_json_path = run_dir / "summary.json"

    original_stdout = sys.stdout
    original_stderr = sys.stderr
    run_log_handle = open(run_log_path, "a", encoding="utf-8")
    failures_handle = open(failures_csv_path, "w", encoding="utf-8", newline="")
    failure_writer = csv.DictWriter(
        failures_handle,
        fieldnames=("timestamp", "stage", "url", "status", "error"),
    )
    failure_writer.writeheader()
    failures_handle.flush()
    sys.stdout = TeeStream(original_stdout, run_log_handle)
    sys.stderr = TeeStream(original_stderr, run_log_handle)

    stats = DownloadStats()
    outcomes: List[FetchOutcome] = []
    summary_status = "completed"
    fatal_error: Optional[str] = None

    def record_failure(*, stage: str, error: str, url: str = "", status: str = "") -> None:
        failure_writer.writerow(
            {
                "timestamp": datetime.now().astimezone().isoformat(timespec="seconds"),
                "stage": stage,
                "url": url,
                "status": status,
                "error": error,
            }
        )
        failures_handle.flush()

    try:
        log_event("RUN_PATHS", run_dir=run_dir, run_log=run_log_path, failure_log=failures_csv_path)
        if args.config:
            log_event("RUN_CONFIG", config=args.config)
        if args.max_workers < 0:
            raise SystemExit("--max-workers must be 0 or a positive integer.")
        if args.timeout_seconds <= 0:
            raise SystemExit("--timeout-seconds must be greater than 0.")
        if args.spool_max_mb <= 0:
            raise SystemExit("--spool-max-mb must be greater than 0.")
        if args.skip_download and args.skip_merge:
            raise SystemExit("--skip-download and --skip-merge together leave nothing to do.")

        endpoints = generate_endpoints(args.start_year, args.end_year)
        stats.endpoints = len(endpoints)
        log_event(
            "RUN_PLAN",
            start_year=args.start_year,
            end_year=args.end_year,
            endpoints=len(endpoints),
            directory=args.directory,
        )
        if not endpoints:
            log_event("RANGE_EMPTY", start_year=args.start_year, end_year=args.end_year)

        if args.dry_run:
            for endpoint in endpoints:
                log_event("PLANNED", year=endpoint.year, quarter=endpoint.quarter, url=endpoint.url)
            return

        directory = Path(args.directory)
        directory.mkdir(parents=True, exist_ok=True)

        if not args.skip_download:
            user_agent = args.user_agent or os.getenv("EDGAR_USER_AGENT") or DEFAULT_USER_AGENT
            pool_size = args.max_workers or max(1, len(endpoints))
            session = build_session(user_agent, pool_size=pool_size)
            outcomes = download_index_files(
                endpoints,
                directory,
                session=session,
                max_workers=args.max_workers,
                timeout_seconds=args.timeout_seconds,
                spool_max_bytes=args.spool_max_mb * 1024 * 1024,
                progress=not args.no_progress,
            )
            for outcome in outcomes:
                if not outcome.ok:
                    stats.failures += 1
                    record_failure(stage="fetch", url=outcome.url, status=outcome.status, error=outcome.error or "")
                elif not outcome.entry_found:
                    stats.missing_entry += 1
                else:
                    stats.downloaded += 1

        if not args.skip_merge:
            try:
                merged = merge_index_files(directory, mode=args.merge_mode)
            except MergeError as exc:
                log_event("MERGE_FATAL", directory=directory, error=str(exc))
                raise SystemExit(1) from exc
            stats.merged_fragments = merged.fragments
            stats.merged_lines = merged.lines
            log_event("MERGE_DONE", path=merged.path, fragments=merged.fragments, lines=merged.lines, mode=args.merge_mode)

        log_event("RUN_SUMMARY", **stats_as_dict(stats))
    except SystemExit as exc:
        summary_status = "failed"
        fatal_error = str(exc.__cause__ or exc)
        record_failure(stage="fatal", error=fatal_error)
        raise
    except Exception as exc:  # noqa: BLE001
        summary_status = "failed"
        fatal_error = f"{type(exc).__name__}: {exc}"
        record_failure(stage="fatal", error=fatal_error)
        raise
    finally:
        elapsed_seconds = time.monotonic() - run_started_monotonic
        run_summary = {
            "started_at": run_started_at,
            "finished_at": utc_now_iso(),
            "status": summary_status,
            "fatal_error": fatal_error,
            "elapsed_seconds": round(elapsed_seconds, 3),
            "run_dir": str(run_dir),
            "run_log": str(run_log_path),
            "failures_csv": str(failures_csv_path),
            "summary_json": str(summary_json_path),
            "args": vars(args),
            "stats": stats_as_dict(stats),
            "outcomes": [outcome_as_dict(outcome) for outcome in outcomes],
        }
        try:
            summary_json_path.write_text(json.dumps(run_summary, indent=2), encoding="utf-8")
            log_event("SUMMARY_WRITTEN", path=summary_json_path)
        except Exception as exc:  # noqa: BLE001
            log_event("SUMMARY_WRITE_WARN", error=str(exc))
        finally:
            sys.stdout = original_stdout
            sys.stderr = original_stderr
            failures_handle.close()
            run_log_handle.close()


if __name__ == "__main__":
    main()
