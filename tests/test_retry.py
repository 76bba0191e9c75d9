import pytest

import utils
from errors import BookmarkServiceError, FeedParseError, FetchError
from utils import RetryHelper, retry_with_backoff, safe_filename, validate_url


@pytest.fixture
def recorded_sleeps(monkeypatch):
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(utils, "sleep", fake_sleep)
    return delays


class Flaky:
    def __init__(self, failures, error_factory):
        self.failures = failures
        self.error_factory = error_factory
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory(self.calls)
        return "ok"


def test_delays_double_from_base():
    helper = RetryHelper(max_attempts=4, base_delay=1.0)

    assert [helper.calculate_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_late_attempts_are_not_capped():
    helper = RetryHelper(max_attempts=10, base_delay=1.0)

    assert helper.calculate_delay(10) == 512.0


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_backoff(recorded_sleeps):
    operation = Flaky(3, lambda n: FetchError("https://x.example/", f"attempt {n} failed", status=503))

    result = await retry_with_backoff(operation, attempts=4, base_delay=1.0)

    assert result == "ok"
    assert operation.calls == 4
    assert recorded_sleeps == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried(recorded_sleeps):
    operation = Flaky(5, lambda n: FeedParseError("not a feed"))

    with pytest.raises(FeedParseError):
        await retry_with_backoff(operation, attempts=3)

    assert operation.calls == 1
    assert recorded_sleeps == []


@pytest.mark.asyncio
async def test_client_errors_from_linkding_are_not_retried(recorded_sleeps):
    operation = Flaky(5, lambda n: BookmarkServiceError("bad request", status=400))

    with pytest.raises(BookmarkServiceError):
        await retry_with_backoff(operation, attempts=3)

    assert operation.calls == 1


@pytest.mark.asyncio
async def test_last_error_is_reraised_when_attempts_run_out(recorded_sleeps):
    operation = Flaky(10, lambda n: BookmarkServiceError(f"failure {n}", status=502))

    with pytest.raises(BookmarkServiceError, match="failure 3"):
        await retry_with_backoff(operation, attempts=3, base_delay=0.5)

    assert operation.calls == 3
    assert recorded_sleeps == [0.5, 1.0]


@pytest.mark.parametrize("url, expected", [
    ("https://links.example.com", True),
    ("http://localhost.localdomain:9090", True),
    ("ftp://files.example.com", False),
    ("links.example.com", False),
    ("", False),
    (None, False),
])
def test_validate_url(url, expected):
    assert validate_url(url) is expected


def test_safe_filename_replaces_path_separators():
    assert safe_filename("https://a.example/b?c") == "https___a.example_b_c"
    assert safe_filename("...") == "untitled"
