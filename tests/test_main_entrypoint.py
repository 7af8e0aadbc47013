"""Tests for reconciler.__main__ entrypoint."""

from __future__ import annotations

import runpy
from unittest.mock import patch

import pytest


def test_module_entrypoint_exits_with_cli_status():
    with patch("reconciler.cli.main", return_value=2) as mock_main:
        with pytest.raises(SystemExit) as exc:
            runpy.run_module("reconciler.__main__", run_name="__main__")
    assert exc.value.code == 2
    mock_main.assert_called_once_with()
