"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for gcp_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from gcp_mock import MockCloudClient  # noqa: E402
from provisioner.config import Config  # noqa: E402

TEST_PROJECT_ID = "test-project"
TEST_PROJECT_NUMBER = "123456789012"
TEST_REPOSITORY = "octo-org/octo-repo"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host credentials and settings out of every test."""
    for var in (
        "GCP_PROJECT_ID",
        "GITHUB_REPOSITORY",
        "FEDERATION_CONFIG",
        "GCP_PROJECT_NUMBER",
        "PROBE_CONCURRENCY",
        "EXECUTE_CONCURRENCY",
        "MAX_ATTEMPTS",
        "RETRY_BACKOFF_BASE",
        "RETRY_BACKOFF_MAX",
        "REQUEST_TIMEOUT",
        "OPERATION_TIMEOUT",
        "DRY_RUN",
        "SUMMARY_PATH",
        "MAX_RESOURCES_PER_SESSION",
        "ENABLE_AUDIT_LOGGING",
        "GOOGLE_APPLICATION_CREDENTIALS",
        "GOOGLE_CREDENTIALS",
        "GOOGLE_CLOUD_KEYFILE_JSON",
        "GCP_SA_KEY",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def config() -> Config:
    """Configuration with a known project number and no retry delay."""
    return Config(
        project_id=TEST_PROJECT_ID,
        repository=TEST_REPOSITORY,
        project_number=TEST_PROJECT_NUMBER,
        max_attempts=3,
        retry_backoff_base_seconds=0.0,
        retry_backoff_max_seconds=0.0,
    )


@pytest.fixture
def client(config: Config) -> MockCloudClient:
    return MockCloudClient(config)
