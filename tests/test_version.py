"""Tests for rpoly.version — version read from pyproject.toml."""

import re

from rpoly.version import APP_NAME, VERSION


def test_version_is_string():
    """VERSION must be a non-empty string."""
    assert isinstance(VERSION, str)
    assert len(VERSION) > 0


def test_version_semver_pattern():
    """VERSION must match X.Y.Z."""
    assert re.match(r"^\d+\.\d+\.\d+", VERSION), f"VERSION '{VERSION}' does not match semver pattern"


def test_app_name():
    assert APP_NAME == "rPoly"
