"""Unit tests for codeintel.main (command-line front end)."""

import json
import re
from pathlib import Path
from unittest import mock

import pytest

from codeintel import config
from codeintel.config import load_settings
from codeintel.engine import CodeIntelEngine
from codeintel.history import load_patterns
from codeintel.main import build_parser, main, setup_logging

from conftest import HashingEmbedder, ScriptedOracle, make_settings


def _patch_engine(tmp_path, oracle=None, embedder=None):
    engine = CodeIntelEngine(
        make_settings(tmp_path / "index"),
        embedder=embedder or HashingEmbedder(),
        oracle=oracle or ScriptedOracle(),
        patterns=[],
    )
    return mock.patch("codeintel.main._make_engine", return_value=engine)


# ---------------------------------------------------------------------------
# build_parser
# ---------------------------------------------------------------------------


class TestBuildParser:

    def test_complete_arguments(self):
        args = build_parser().parse_args(
            ["complete", "proj", "proj/a.py", "3", "7", "--level", "block"]
        )
        assert (args.command, args.file, args.line, args.column, args.level) == (
            "complete",
            "proj/a.py",
            3,
            7,
            "block",
        )

    def test_level_defaults_to_line(self):
        args = build_parser().parse_args(["complete", "proj", "a.py", "0", "0"])
        assert args.level == "line"

    def test_unknown_level_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["complete", "p", "a.py", "0", "0", "--level", "epic"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_search_options(self):
        args = build_parser().parse_args(
            ["--index-dir", "/tmp/idx", "search", "proj", "parse config", "-k", "3"]
        )
        assert args.index_dir == "/tmp/idx"
        assert args.query == "parse config"
        assert args.k == 3
        assert not args.reindex


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------


class TestMain:

    def test_index(self, tmp_path, project, capsys):
        with _patch_engine(tmp_path):
            code = main(["index", str(project)])

        assert code == 0
        assert "Indexed 4/4 file(s), 0 error(s)" in capsys.readouterr().out

    def test_search_with_reindex(self, tmp_path, project, capsys):
        with _patch_engine(tmp_path):
            code = main(["search", str(project), "multiply_numbers", "--reindex", "-k", "2"])

        assert code == 0
        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 2
        assert all(str(project.resolve()) in line for line in lines)

    def test_search_empty_index(self, tmp_path, project, capsys):
        with _patch_engine(tmp_path):
            code = main(["search", str(project), "anything"])

        assert code == 0
        assert "No matches." in capsys.readouterr().out

    def test_complete_prints_candidate(self, tmp_path, project, capsys):
        path = project / "src" / "math_utils.py"
        with _patch_engine(tmp_path, ScriptedOracle(["b"])):
            code = main(["complete", str(project), str(path), "4", "15"])

        out = capsys.readouterr().out
        assert code == 0
        assert "confidence" in out
        assert out.rstrip().endswith("b")

    def test_complete_failure(self, tmp_path, project, capsys):
        path = project / "src" / "math_utils.py"
        with _patch_engine(tmp_path):
            code = main(["complete", str(project), str(path), "4", "15"])

        assert code == 1
        assert "Completion failed (model_unavailable)" in capsys.readouterr().out

    def test_status(self, tmp_path, capsys):
        with _patch_engine(tmp_path):
            code = main(["status"])

        out = capsys.readouterr().out
        assert code == 0
        assert "files_indexed" in out
        assert "test/hashing-v1" in out

    def test_prune_drops_other_model_vectors(self, tmp_path, project, capsys):
        with _patch_engine(tmp_path):
            main(["index", str(project)])
        capsys.readouterr()

        upgraded = HashingEmbedder(model_version="test/hashing-v2")
        with _patch_engine(tmp_path, embedder=upgraded):
            code = main(["prune"])

        out = capsys.readouterr().out
        assert code == 0
        assert re.search(r"Removed [1-9]\d* cached embedding", out)

    def test_prune_keeps_current_model(self, tmp_path, project, capsys):
        with _patch_engine(tmp_path):
            main(["index", str(project)])
        with _patch_engine(tmp_path):
            main(["prune"])

        assert "Removed 0 cached embedding(s)" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# config / patterns
# ---------------------------------------------------------------------------


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    data = tmp_path / "data"
    monkeypatch.setenv("CODEINTEL_DATA_DIR", str(data))
    for env_name in config._ENV_MAP.values():
        monkeypatch.delenv(env_name, raising=False)
    return data


class TestConfigCommand:
    """config KEY VALUE writes config.json; no engine is started."""

    def test_set_and_get(self, data_dir, capsys):
        with mock.patch("codeintel.main._make_engine") as make_engine:
            assert main(["config", "model_name", "coder"]) == 0
            assert main(["config", "top_k", "4"]) == 0
            make_engine.assert_not_called()

        saved = json.loads((data_dir / "config.json").read_text())
        assert saved == {"model_name": "coder", "top_k": "4"}
        assert load_settings().top_k == 4

        capsys.readouterr()
        assert main(["config", "model_name"]) == 0
        assert capsys.readouterr().out.strip() == "coder"

    def test_lists_file_values(self, data_dir, capsys):
        main(["config", "model_name", "coder"])
        capsys.readouterr()

        assert main(["config"]) == 0
        assert "model_name" in capsys.readouterr().out

    def test_unknown_key(self, data_dir, capsys):
        assert main(["config", "colour", "blue"]) == 1
        assert "Unknown setting: colour" in capsys.readouterr().out
        assert not (data_dir / "config.json").exists()


class TestPatternsCommand:
    """patterns add/remove/list edit patterns.yml."""

    def test_add_list_remove(self, data_dir, capsys):
        assert main(["patterns", "add", "guard", "Return early on None"]) == 0
        assert main(["patterns", "add", "guard", "Raise on None"]) == 0
        assert [(p.name, p.text) for p in load_patterns()] == [("guard", "Raise on None")]

        capsys.readouterr()
        assert main(["patterns"]) == 0
        assert "guard: Raise on None" in capsys.readouterr().out

        assert main(["patterns", "remove", "guard"]) == 0
        assert load_patterns() == []

    def test_remove_missing(self, data_dir, capsys):
        assert main(["patterns", "remove", "nope"]) == 1
        assert "No pattern named nope" in capsys.readouterr().out

    def test_add_needs_text(self, data_dir, capsys):
        assert main(["patterns", "add", "guard"]) == 1
        assert not (data_dir / "patterns.yml").exists()


# ---------------------------------------------------------------------------
# setup_logging
# ---------------------------------------------------------------------------


class TestSetupLogging:

    def test_creates_log_directory_and_file(self, tmp_path, monkeypatch):
        """setup_logging creates log/ dir and returns a log file path."""
        import logging as _logging

        monkeypatch.chdir(tmp_path)
        root = _logging.getLogger()
        for h in root.handlers[:]:
            root.removeHandler(h)
            h.close()

        log_file = setup_logging()

        assert "log/codeintel-" in log_file
        assert log_file.endswith(".log")
        assert Path(log_file).parent.is_dir()

        for h in root.handlers[:]:
            root.removeHandler(h)
            h.close()

    def test_main_with_log_flag(self, tmp_path, capsys):
        """--log flag triggers setup_logging."""
        with _patch_engine(tmp_path):
            with mock.patch("codeintel.main.setup_logging") as mock_setup:
                mock_setup.return_value = "log/codeintel-test.log"
                main(["--log", "status"])
                mock_setup.assert_called_once()
        assert "Logging to: log/codeintel-test.log" in capsys.readouterr().out

    def test_main_without_log_flag(self, tmp_path):
        """Without --log, setup_logging is not called."""
        with _patch_engine(tmp_path):
            with mock.patch("codeintel.main.setup_logging") as mock_setup:
                main(["status"])
                mock_setup.assert_not_called()
