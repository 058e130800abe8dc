"""
Unit tests for source hashing and packaging.
"""
import json
import subprocess
import sys
from unittest.mock import patch

import pytest

import bundle
from bundle import (
    build_bundle,
    compute_source_hash,
    install_requirements,
    iter_source_files,
    merge_excludes,
    paths_overlap,
)
from exceptions import DependencyInstallError, PackagingError


class TestIterSourceFiles:

    def test_sorted_relative_paths(self, lambda_source):
        (lambda_source / "pkg").mkdir()
        (lambda_source / "pkg" / "util.py").write_text("X = 1\n")
        assert iter_source_files(str(lambda_source)) == [
            "Makefile", "handler.py", "pkg/util.py", "requirements.txt",
        ]

    def test_skips_bytecode(self, lambda_source):
        (lambda_source / "__pycache__").mkdir()
        (lambda_source / "__pycache__" / "handler.cpython-312.pyc").write_bytes(b"\x00")
        (lambda_source / "stale.pyc").write_bytes(b"\x00")
        assert "stale.pyc" not in iter_source_files(str(lambda_source))
        assert not any(p.startswith("__pycache__") for p in iter_source_files(str(lambda_source)))

    def test_exclude_patterns(self, lambda_source):
        (lambda_source / ".touch").write_text("now\n")
        (lambda_source / "tests").mkdir()
        (lambda_source / "tests" / "test_handler.py").write_text("")
        files = iter_source_files(str(lambda_source), [".touch", "Makefile", "tests"])
        assert files == ["handler.py", "requirements.txt"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(PackagingError, match="does not exist"):
            iter_source_files(str(tmp_path / "nope"))


class TestComputeSourceHash:

    def test_stable(self, lambda_source):
        assert compute_source_hash(str(lambda_source)) == compute_source_hash(str(lambda_source))

    def test_changes_with_content(self, lambda_source):
        before = compute_source_hash(str(lambda_source))
        (lambda_source / "handler.py").write_text("def handler(event, context):\n    return None\n")
        assert compute_source_hash(str(lambda_source)) != before

    def test_changes_with_requirements(self, lambda_source):
        before = compute_source_hash(str(lambda_source))
        (lambda_source / "requirements.txt").write_text("requests>=2.32\n")
        assert compute_source_hash(str(lambda_source)) != before

    def test_touch_file_busts_hash(self, lambda_source):
        """Test writing .touch changes the hash even though it is never packaged."""
        (lambda_source / ".touch").write_text("Mon Jan 01 00:00:00 UTC 2024\n")
        before = compute_source_hash(str(lambda_source))
        (lambda_source / ".touch").write_text("Tue Jan 02 00:00:00 UTC 2024\n")
        assert compute_source_hash(str(lambda_source)) != before

    def test_rename_changes_hash(self, lambda_source):
        before = compute_source_hash(str(lambda_source))
        (lambda_source / "handler.py").rename(lambda_source / "main.py")
        assert compute_source_hash(str(lambda_source)) != before


class TestInstallRequirements:

    def test_skips_without_requirements(self, tmp_path):
        with patch("bundle.subprocess.run") as mock_run:
            assert install_requirements(str(tmp_path / "requirements.txt"), str(tmp_path / "out")) is False
        mock_run.assert_not_called()

    def test_runs_pip_into_target(self, lambda_source, tmp_path):
        requirements = str(lambda_source / "requirements.txt")
        target = str(tmp_path / "staging")
        with patch("bundle.subprocess.run") as mock_run:
            assert install_requirements(requirements, target, ["--no-compile"]) is True
        cmd = mock_run.call_args[0][0]
        assert cmd == [
            sys.executable, "-m", "pip", "install", "-r", requirements, "-t", target, "--no-compile",
        ]
        assert mock_run.call_args[1]["check"] is True
        assert mock_run.call_args[1]["stdout"] is sys.stderr

    def test_pip_failure(self, lambda_source, tmp_path):
        with patch("bundle.subprocess.run", side_effect=subprocess.CalledProcessError(1, "pip")):
            with pytest.raises(DependencyInstallError) as exc_info:
                install_requirements(str(lambda_source / "requirements.txt"), str(tmp_path / "out"))
        assert exc_info.value.returncode == 1
        assert exc_info.value.command[:3] == [sys.executable, "-m", "pip"]
        assert isinstance(exc_info.value, PackagingError)


class TestPathsOverlap:

    def test_same_directory(self, tmp_path):
        assert paths_overlap(str(tmp_path / "a"), str(tmp_path / "a" / "."))

    def test_nested_either_way(self, tmp_path):
        assert paths_overlap(str(tmp_path / "lambdas"), str(tmp_path / "lambdas" / "hello"))
        assert paths_overlap(str(tmp_path / "lambdas" / "hello"), str(tmp_path / "lambdas"))

    def test_siblings(self, tmp_path):
        assert not paths_overlap(str(tmp_path / "lambdas" / "hello"), str(tmp_path / "build" / "hello"))
        assert not paths_overlap(str(tmp_path / "hello"), str(tmp_path / "hello2"))


class TestMergeExcludes:

    def test_defaults_always_present(self):
        assert merge_excludes(["tests"]) == ["tests", ".touch", "Makefile"]
        assert merge_excludes(None) == [".touch", "Makefile"]
        assert merge_excludes([".touch"]) == [".touch", "Makefile"]


class TestBuildBundle:

    def test_excludes_touch_and_makefile(self, lambda_source, tmp_path):
        (lambda_source / ".touch").write_text("now\n")
        staging = tmp_path / "build" / "hello"
        with patch("bundle.subprocess.run") as mock_run:
            result = build_bundle(str(lambda_source), str(staging))

        assert iter_source_files(str(staging)) == ["handler.py", "requirements.txt"]
        assert result["staging_dir"] == str(staging)
        assert result["source_hash"] == compute_source_hash(str(lambda_source))
        cmd = mock_run.call_args[0][0]
        assert cmd[cmd.index("-t") + 1] == str(staging)

    def test_user_excludes_keep_defaults(self, lambda_source, tmp_path):
        (lambda_source / ".touch").write_text("now\n")
        (lambda_source / "notes.md").write_text("")
        staging = tmp_path / "build" / "hello"
        with patch("bundle.subprocess.run"):
            build_bundle(str(lambda_source), str(staging), exclude=["*.md"])
        assert iter_source_files(str(staging)) == ["handler.py", "requirements.txt"]

    def test_stale_staging_removed(self, lambda_source, tmp_path):
        staging = tmp_path / "build" / "hello"
        staging.mkdir(parents=True)
        (staging / "old.py").write_text("")
        with patch("bundle.subprocess.run"):
            build_bundle(str(lambda_source), str(staging))
        assert not (staging / "old.py").exists()

    def test_without_requirements(self, lambda_source, tmp_path):
        (lambda_source / "requirements.txt").unlink()
        with patch("bundle.subprocess.run") as mock_run:
            build_bundle(str(lambda_source), str(tmp_path / "build" / "hello"))
        mock_run.assert_not_called()

    @pytest.mark.parametrize("staging", [".", "..", "pkg"])
    def test_refuses_overlapping_staging_dir(self, lambda_source, staging):
        """Test the source tree survives a staging dir that equals, contains or sits in it."""
        with patch("bundle.subprocess.run"):
            with pytest.raises(PackagingError, match="overlaps"):
                build_bundle(str(lambda_source), str(lambda_source / staging))
        assert (lambda_source / "handler.py").exists()
        assert (lambda_source / "Makefile").exists()
        assert (lambda_source / "requirements.txt").exists()


class TestCli:

    def test_hash(self, lambda_source, capsys):
        assert bundle.main(["hash", str(lambda_source)]) == 0
        assert capsys.readouterr().out.strip() == compute_source_hash(str(lambda_source))

    def test_build_prints_json(self, lambda_source, tmp_path, capsys):
        staging = tmp_path / "build" / "hello"
        with patch("bundle.subprocess.run"):
            code = bundle.main([
                "build", "--source-dir", str(lambda_source), "--staging-dir", str(staging),
            ])
        assert code == 0
        result = json.loads(capsys.readouterr().out)
        assert result["staging_dir"] == str(staging)
        assert (staging / "handler.py").exists()

    def test_build_extra_exclude_keeps_defaults(self, lambda_source, tmp_path):
        (lambda_source / ".touch").write_text("now\n")
        staging = tmp_path / "build" / "hello"
        with patch("bundle.subprocess.run"):
            code = bundle.main([
                "build", "--source-dir", str(lambda_source), "--staging-dir", str(staging),
                "--exclude=requirements.txt",
            ])
        assert code == 0
        assert iter_source_files(str(staging)) == ["handler.py"]

    def test_build_overlapping_staging(self, lambda_source):
        code = bundle.main([
            "build", "--source-dir", str(lambda_source), "--staging-dir", str(lambda_source),
        ])
        assert code == 1
        assert (lambda_source / "handler.py").exists()

    def test_build_missing_source(self, tmp_path):
        code = bundle.main([
            "build", "--source-dir", str(tmp_path / "nope"), "--staging-dir", str(tmp_path / "out"),
        ])
        assert code == 1

    def test_no_subcommand(self, capsys):
        assert bundle.main([]) == 2
