import pytest

from flakeguard.config import load_settings
from flakeguard.executor.retry import Backoff, RetryPolicy

VARIABLES = [
    "RETRY_MAX_ATTEMPTS",
    "RETRY_BACKOFF",
    "RETRY_BACKOFF_SECONDS",
    "RETRY_TIMEOUT_SECONDS",
    "POLL_INTERVAL_SECONDS",
    "BUSY_SELECTOR",
    "STEP_TIMEOUT_SECONDS",
    "MCP_SERVER_COMMAND",
    "MCP_SERVER_ARGS",
    "CHROME_PATH",
    "VERBOSE",
    "LOG_LEVEL",
]


@pytest.fixture
def env_file(tmp_path, monkeypatch):
    for name in VARIABLES:
        monkeypatch.delenv(name, raising=False)
    return tmp_path / ".env"


def test_defaults(env_file) -> None:
    settings = load_settings(env_file)

    assert settings.max_attempts == 3
    assert settings.backoff is Backoff.FIXED
    assert settings.timeout_per_attempt == 10.0
    assert settings.busy_selector is None
    assert settings.server_args == ("-y", "chrome-devtools-mcp@latest")
    assert settings.log_level == "WARNING"


def test_environment_overrides(env_file, monkeypatch) -> None:
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("RETRY_BACKOFF", "NONE")
    monkeypatch.setenv("RETRY_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("BUSY_SELECTOR", ".euiStat__title-isLoading")
    monkeypatch.setenv("VERBOSE", "yes")

    settings = load_settings(env_file)

    assert settings.max_attempts == 5
    assert settings.backoff is Backoff.NONE
    assert settings.timeout_per_attempt == 2.5
    assert settings.busy_selector == ".euiStat__title-isLoading"
    assert settings.verbose
    assert settings.log_level == "INFO"


def test_dotenv_file_is_loaded(env_file, monkeypatch) -> None:
    # Register the variable with monkeypatch so teardown removes what the .env load sets.
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "0")
    monkeypatch.delenv("RETRY_MAX_ATTEMPTS")
    env_file.write_text("RETRY_MAX_ATTEMPTS=7\n", encoding="utf-8")

    assert load_settings(env_file).max_attempts == 7


@pytest.mark.parametrize(
    "name,value",
    [("RETRY_MAX_ATTEMPTS", "three"), ("RETRY_TIMEOUT_SECONDS", "soon"), ("RETRY_BACKOFF", "exponential")],
)
def test_invalid_values_name_the_variable(env_file, monkeypatch, name, value) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        load_settings(env_file)


def test_policy_from_settings(env_file, monkeypatch) -> None:
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "4")
    monkeypatch.setenv("RETRY_BACKOFF_SECONDS", "0.1")

    policy = RetryPolicy.from_settings(load_settings(env_file))

    assert policy == RetryPolicy(max_attempts=4, backoff=Backoff.FIXED, timeout_per_attempt=10.0, backoff_interval=0.1)
