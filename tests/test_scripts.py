"""
Unit tests for the command-line front-ends.

Tests verify:
  1. generate_text exits with status 1 and an ERROR line on bad prompt ids
  2. generate_text prints the ids and the timing report on success
"""

import sys
import os
import runpy

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

SCRIPTS = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "scripts")


def run_generate(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["generate_text.py", *argv])
    runpy.run_path(os.path.join(SCRIPTS, "generate_text.py"), run_name="__main__")


class TestGenerateText:
    def test_out_of_range_prompt_id(self, model_path, monkeypatch, capsys):
        with pytest.raises(SystemExit) as excinfo:
            run_generate(monkeypatch, "--model", model_path, "--prompt-ids", "2 999",
                         "-n", "2", "-t", "1")
        assert excinfo.value.code == 1
        assert "ERROR: token id 999" in capsys.readouterr().out

    def test_generates(self, model_path, monkeypatch, capsys):
        run_generate(monkeypatch, "--model", model_path, "--prompt-ids", "2 5 6",
                     "-n", "3", "-t", "1", "-s", "1", "--no-eos")
        out = capsys.readouterr().out
        assert "ids: 2 5 6" in out
        assert "predict time" in out
