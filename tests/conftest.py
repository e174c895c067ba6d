"""Pytest configuration for all tests."""

import pytest


REQUIRED_ENV = {
    "SHIPWRIGHT_JIRA_BASE_URL": "https://example.atlassian.net",
    "SHIPWRIGHT_JIRA_EMAIL": "bot@example.com",
    "SHIPWRIGHT_JIRA_API_TOKEN": "jira-token-123456",
    "SHIPWRIGHT_JIRA_PROJECT_KEY": "PROJ",
    "SHIPWRIGHT_GITHUB_TOKEN": "ghp_testtoken123456",
    "SHIPWRIGHT_GITHUB_OWNER": "acme",
    "SHIPWRIGHT_GITHUB_REPO": "web",
    "SHIPWRIGHT_REPO_PATH": "/srv/repos/web",
    "ANTHROPIC_API_KEY": "sk-ant-test-key",
}


@pytest.fixture
def settings_env(monkeypatch):
    """Set the minimal environment ShipwrightSettings needs.

    Any SHIPWRIGHT_ variables from the real environment are removed first
    so tests see only what they set.
    """
    import os

    for name in list(os.environ):
        if name.startswith("SHIPWRIGHT_"):
            monkeypatch.delenv(name, raising=False)
    for name, value in REQUIRED_ENV.items():
        monkeypatch.setenv(name, value)
    return monkeypatch
