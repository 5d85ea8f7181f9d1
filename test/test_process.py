#!/usr/bin/env python3
"""
Tests for external command execution.
"""

import subprocess
import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rnaseq_pipeline.utils.process import (
    CommandError,
    ToolNotFoundError,
    format_command,
    run_command,
    run_pipe,
)


class TestRunCommand(unittest.TestCase):
    """
    Unit tests for the run_command function.
    """

    def setUp(self):
        """
        Set up mocks before each test method runs.
        """
        self.mock_run = patch('rnaseq_pipeline.utils.process.subprocess.run').start()
        self.mock_run.return_value = subprocess.CompletedProcess(
            args=[], returncode=0, stdout="done\n", stderr=""
        )
        self.logger = MagicMock()

    def tearDown(self):
        """
        Clean up mocks after each test method runs.
        """
        patch.stopall()

    def test_runs_without_shell(self):
        result = run_command(["samtools", "index", Path("/data/s1.bam")], self.logger)

        self.mock_run.assert_called_once()
        args, kwargs = self.mock_run.call_args
        self.assertEqual(args[0], ["samtools", "index", "/data/s1.bam"])
        self.assertTrue(kwargs["check"])
        self.assertNotIn("shell", kwargs)
        self.assertEqual(result.stdout, "done\n")

    def test_logs_the_command(self):
        run_command(["fastqc", "--outdir", "/qc dir", "a.fq"], self.logger, sample_id="s1")

        self.logger.info.assert_any_call(
            "Executing command",
            command="fastqc --outdir '/qc dir' a.fq",
            tool="fastqc",
            sample_id="s1",
        )

    def test_missing_executable(self):
        self.mock_run.side_effect = FileNotFoundError("STAR")

        with self.assertRaises(ToolNotFoundError) as ctx:
            run_command(["STAR", "--version"], self.logger)
        self.assertEqual(ctx.exception.tool, "STAR")
        self.assertIn("not found on PATH", str(ctx.exception))

    def test_failure_carries_stderr_tail(self):
        stderr = "\n".join(f"line {i}" for i in range(30))
        self.mock_run.side_effect = subprocess.CalledProcessError(
            returncode=2, cmd=["featureCounts"], stderr=stderr
        )

        with self.assertRaises(CommandError) as ctx:
            run_command(["featureCounts", "-a", "genes.gtf"], self.logger, tool="featureCounts")
        error = ctx.exception
        self.assertEqual(error.returncode, 2)
        self.assertIn("exit code 2", str(error))
        self.assertIn("line 29", str(error))
        self.assertNotIn("line 9\n", str(error))
        self.assertIsInstance(error, RuntimeError)

    def test_timeout(self):
        self.mock_run.side_effect = subprocess.TimeoutExpired(cmd=["salmon"], timeout=5)

        with self.assertRaises(CommandError) as ctx:
            run_command(["salmon", "quant"], self.logger, timeout=5)
        self.assertIn("timed out after 5 seconds", str(ctx.exception))


def test_format_command_quotes_arguments():
    assert format_command(["echo", "a b", Path("/x/y")]) == "echo 'a b' /x/y"


def test_run_pipe_success(tmp_path):
    logger = MagicMock()
    out = tmp_path / "out.txt"
    run_pipe(["printf", "hello"], ["tee", str(out)], logger)

    assert out.read_text() == "hello"


def test_run_pipe_producer_failure():
    with pytest.raises(CommandError) as excinfo:
        run_pipe(["false"], ["cat"], MagicMock())
    assert excinfo.value.tool == "false"


def test_run_pipe_missing_consumer():
    with pytest.raises(ToolNotFoundError):
        run_pipe(["printf", "x"], ["definitely-not-a-real-tool-xyz"], MagicMock())


def test_run_command_stdout_to_file(tmp_path):
    out = tmp_path / "sub" / "view.sam"
    with patch('rnaseq_pipeline.utils.process.subprocess.run') as mock_run:
        mock_run.return_value = subprocess.CompletedProcess(args=[], returncode=0, stderr="")
        run_command(["samtools", "view", "a.bam"], MagicMock(), stdout_path=out)

    _, kwargs = mock_run.call_args
    assert "capture_output" not in kwargs
    assert kwargs["stderr"] == subprocess.PIPE
    assert out.parent.is_dir()
