"""Shared test fixtures."""

import pytest

from kwmon_cli.models import RepositoryTarget
from kwmon_cli.state import WatermarkStore

from tests.helpers import FakeFetcher


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def store(tmp_path):
    return WatermarkStore(tmp_path / "state" / "watermarks.json")


@pytest.fixture
def target():
    return RepositoryTarget(
        url="https://github.com/acme/widgets",
        owner="acme",
        name="widgets",
        branches=("main",),
        keywords=frozenset({"security"}),
    )


@pytest.fixture
def alerts():
    """Collects dispatched alert events."""
    return []


CONFIG_YAML = """
general:
  state_file: {state_file}
github:
  token: ${{GITHUB_TOKEN}}
polling:
  check_interval_minutes: 5
repositories:
  - url: https://github.com/acme/widgets
    keywords: [security, CVE]
    branches: [main]
alerting:
  from_address: kwmon@example.com
  to_address: team@example.com, lead@example.com
  smtp:
    host: smtp.example.com
    port: 587
    username: kwmon
    password: ${{SMTP_PASSWORD}}
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "kwmon_config.yaml"
    path.write_text(CONFIG_YAML.format(state_file=tmp_path / "watermarks.json"), encoding="utf-8")
    return path
