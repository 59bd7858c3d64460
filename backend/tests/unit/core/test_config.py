"""Unit tests for settings parsing."""

import pytest

from classbook.core.config import Settings


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("debug", "DEBUG"),
        (" warning ", "WARNING"),
        ("LOUD", "INFO"),
        ("", "INFO"),
    ],
)
def test_log_level_is_normalised(raw, expected):
    assert Settings(log_level=raw).log_level == expected


def test_log_level_read_from_environment(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "error")

    assert Settings().log_level == "ERROR"
