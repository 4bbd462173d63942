"""Pytest configuration and shared fixtures."""

import os
import sys
from dataclasses import replace
from pathlib import Path

import pytest
from hypothesis import settings

from ticketflow.config import Config

# Configure Hypothesis profiles for different environments
settings.register_profile("ci", max_examples=100, deadline=None)
settings.register_profile("dev", max_examples=50, deadline=None)
settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "dev"))


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "hypothesis: marks property-based tests using Hypothesis",
    )


SAMPLE_TICKET = """---
title: Add login page
description: Build a login page with email and password fields
priority: high
labels:
  - frontend
  - auth
acceptanceCriteria:
  - Form validates email
  - Errors are shown inline
estimatedHours: 3
---

Use the existing design system components.
"""


def make_config(root: Path, **overrides) -> Config:
    """Build a Config whose folders all live under root."""
    config = Config(
        intake_dir=str(root / "tickets" / "todo"),
        in_progress_dir=str(root / "tickets" / "doing"),
        review_dir=str(root / "tickets" / "review"),
        failed_dir=str(root / "tickets" / "failed"),
        completed_dir=str(root / "tickets" / "completed"),
        repos_dir=str(root / "repos"),
        move_delay=0.0,
        poll_interval=0.05,
        watch_stability=0.0,
        execution_timeout=10.0,
        kill_grace=1.0,
        push_retry_delay=0.0,
        merge_settle_delay=0.0,
        shutdown_timeout=5.0,
        log_file="",
    )
    return replace(config, **overrides)


@pytest.fixture
def config(tmp_path):
    """Config rooted in a temporary directory."""
    return make_config(tmp_path)


@pytest.fixture
def config_factory(tmp_path):
    """Factory for configs rooted in a temporary directory, with overrides."""

    def factory(**overrides) -> Config:
        return make_config(tmp_path, **overrides)

    return factory


@pytest.fixture
def python_executor():
    """Build an executor command that runs a Python snippet.

    The snippet sees the usual CLI flags in sys.argv and ignores them.
    """

    def build(code: str) -> tuple[str, ...]:
        return (sys.executable, "-c", code)

    return build


@pytest.fixture
def sample_ticket_text():
    return SAMPLE_TICKET


@pytest.fixture
def git_identity(monkeypatch):
    """Isolate git from the user's global configuration."""
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", os.devnull)
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
