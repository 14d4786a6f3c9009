import io
import random
import threading
import time
import zipfile
from typing import Callable, Dict, Optional, Union

HEADER = b"".join(f"header line {number}\n".encode("ascii") for number in range(1, 12))


def make_zip(entries: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buffer.getvalue()


class FakeResponse:
    def __init__(self, status_code: int = 200, body: bytes = b"", reason: str = "OK") -> None:
        self.status_code = status_code
        self.reason = reason
        self.body = body
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self.body), 7):
            yield self.body[start : start + 7]

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


Route = Union[FakeResponse, Exception, Callable[[str], FakeResponse]]


class FakeSession:
    """Stands in for requests.Session; routes URLs to canned responses."""

    def __init__(
        self,
        routes: Optional[Dict[str, Route]] = None,
        default: Optional[Route] = None,
        max_latency: float = 0.0,
    ) -> None:
        self.routes = routes or {}
        self.default = default
        self.max_latency = max_latency
        self.calls: list = []
        self.in_flight = 0
        self.peak_in_flight = 0
        self._lock = threading.Lock()

    def get(self, url: str, stream: bool = False, timeout: Optional[float] = None) -> FakeResponse:
        with self._lock:
            self.calls.append(url)
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.max_latency:
                time.sleep(random.uniform(0, self.max_latency))
            route = self.routes.get(url, self.default)
            if route is None:
                return FakeResponse(404, reason="Not Found")
            if isinstance(route, Exception):
                raise route
            if callable(route):
                return route(url)
            return FakeResponse(route.status_code, route.body, route.reason)
        finally:
            with self._lock:
                self.in_flight -= 1
