# UniFi Smart Power Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Pytest configuration: report metadata and shared log capture."""

import logging
import platform
import subprocess
from datetime import datetime

import pytest

PROJECT = "UniFi Smart Power Bridge"


def _git(cmd: str) -> str:
    """Run a git command and return stripped output, or '' on failure."""
    try:
        return subprocess.check_output(
            ["git"] + cmd.split(), stderr=subprocess.DEVNULL
        ).decode().strip()
    except Exception:
        return ""


def pytest_configure(config):
    """Add project metadata to the HTML report when pytest-metadata is installed."""
    try:
        from pytest_metadata.plugin import metadata_key
    except ImportError:
        return

    config.stash[metadata_key]["Project"] = PROJECT
    config.stash[metadata_key]["Author"] = "Matthew Valancy, Valpatel Software LLC"
    config.stash[metadata_key]["Git Commit"] = _git("rev-parse --short HEAD")
    config.stash[metadata_key]["Python"] = platform.python_version()
    config.stash[metadata_key]["Timestamp"] = datetime.now().isoformat(timespec="seconds")


@pytest.fixture(autouse=True)
def _debug_logs(caplog):
    """Keep bridge debug logs in failure output."""
    caplog.set_level(logging.DEBUG, logger="src")


# Report title hook, only registered when pytest-html is available
try:
    import pytest_html  # noqa: F401

    def pytest_html_report_title(report):
        report.title = f"{PROJECT} Test Report"
except ImportError:
    pass
