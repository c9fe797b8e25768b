"""Unit tests for console output helpers."""

from __future__ import annotations

import logging

import pytest

from med2nii._console import print_error, setup_logging


def test_print_error_goes_to_stderr(capsys):
    print_error("boom")
    captured = capsys.readouterr()
    assert "Error: boom" in captured.err
    assert captured.out == ""


def test_print_error_keeps_structure_names(capsys):
    print_error("no structure named 'lung, left'")
    assert "lung, left" in capsys.readouterr().err


@pytest.mark.parametrize("verbose, level", [(True, logging.DEBUG), (False, logging.INFO)])
def test_setup_logging_level(monkeypatch, verbose, level):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
    setup_logging(verbose)
    assert calls == [{"level": level, "format": "%(levelname)s: %(message)s"}]
