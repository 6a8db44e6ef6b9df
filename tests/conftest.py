import pytest

from scan_engine.activity import ACTIVITY
from scan_engine.config import CONFIG_ENV_VAR, clear_config_cache


class FakeClock:
    """Monotonic clock whose sleep() advances time instead of blocking."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _isolated_state(monkeypatch: pytest.MonkeyPatch, tmp_path):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.chdir(tmp_path)
    clear_config_cache()
    ACTIVITY.clear()
    yield
    ACTIVITY.clear()
