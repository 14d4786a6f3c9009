#!/usr/bin/env python3
"""Endpoint catalog for the EDGAR quarterly full-index archives."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Tuple
from urllib.parse import urlparse

EDGAR_PREFIX = "https://www.sec.gov/Archives/edgar/full-index/"
QUARTERS: Tuple[str, ...] = ("QTR1", "QTR2", "QTR3", "QTR4")
ARCHIVE_NAME = "master.zip"
TARGET_ENTRY = "master.idx"
# Description, comments, blank line, column names and the dashed rule.
HEADER_LINES = 11
FRAGMENT_SUFFIX = ".tsv"
MASTER_FILENAME = "master.tsv"

FRAGMENT_NAME_RE = re.compile(r"^(\d{4})-(QTR[1-4])\.tsv$")


@dataclass(frozen=True)
class Endpoint:
    year: int
    quarter: str
    url: str

    @property
    def fragment_name(self) -> str:
        return f"{self.year}-{self.quarter}{FRAGMENT_SUFFIX}"


def current_quarter(today: date) -> int:
    return (today.month - 1) // 3 + 1


def build_index_url(year: int, quarter: str, prefix: str = EDGAR_PREFIX) -> str:
    if quarter not in QUARTERS:
        raise ValueError(f"Unknown quarter '{quarter}'. Choices: {', '.join(QUARTERS)}")
    return f"{prefix.rstrip('/')}/{year}/{quarter}/{ARCHIVE_NAME}"


def generate_endpoints(
    start_year: int,
    end_year: int,
    today: Optional[date] = None,
    prefix: str = EDGAR_PREFIX,
) -> List[Endpoint]:
    """Return one endpoint per quarter in ``[start_year, end_year]``.

    Quarters of ``today.year`` that have not started yet are left out. An empty
    range (``start_year > end_year``) yields an empty list.
    """
    today = today or date.today()
    last_quarter_this_year = current_quarter(today)
    endpoints: List[Endpoint] = []
    for year in range(start_year, end_year + 1):
        for index, quarter in enumerate(QUARTERS, start=1):
            if year == today.year and index > last_quarter_this_year:
                break
            endpoints.append(Endpoint(year=year, quarter=quarter, url=build_index_url(year, quarter, prefix)))
    return endpoints


def fragment_name_from_url(url: str) -> str:
    # .../<year>/<QTRn>/master.zip
    segments = [segment for segment in urlparse(url).path.split("/") if segment]
    if len(segments) < 3:
        raise ValueError(f"Cannot derive fragment name from URL: {url}")
    year, quarter = segments[-3], segments[-2]
    if not year.isdigit() or quarter not in QUARTERS:
        raise ValueError(f"URL has no <year>/<QTRn> segments: {url}")
    return f"{year}-{quarter}{FRAGMENT_SUFFIX}"


def parse_fragment_name(name: str) -> Optional[Tuple[int, int]]:
    match = FRAGMENT_NAME_RE.match(name)
    if not match:
        return None
    return int(match.group(1)), QUARTERS.index(match.group(2)) + 1


def fragment_sort_key(name: str) -> Tuple[int, int]:
    parsed = parse_fragment_name(name)
    if parsed is None:
        raise ValueError(f"Not a fragment file name: {name}")
    return parsed
