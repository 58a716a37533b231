"""Tests for rkvbench.pipeline: stage ordering, failures and outcomes."""

from __future__ import annotations

import os
import sys
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

from pipeline_test_helpers import RecordingSuite, RecordingUploader, make_config
from rkvbench.errors import (
    EXIT_CONFIGURATION,
    EXIT_EMPTY_ARTIFACTS,
    EXIT_EXECUTION,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_PUBLISH,
    EXIT_STAGING,
    ConfigurationError,
    EmptyArtifactError,
    ExecutionError,
    PublishError,
    StagingError,
)
from rkvbench.executor import CommandBenchmark
from rkvbench.pipeline import Pipeline, PipelineState, run_pipeline
from rkvbench.publisher import CliUploader

S = PipelineState


class PipelineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmpdir = Path(self._tmp.name)
        self.bench_dir = self.tmpdir / "bench"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _environ(self, **overrides: str) -> dict[str, str]:
        env = {
            "RKV_BENCH_KEY_COUNT": "1000",
            "RKV_BENCH_KEY_LENGTH": "16",
            "RKV_BENCH_DATA_DIR": str(self.bench_dir),
            "RKV_BENCH_DESTINATION_URI": "s3://bucket/reports/run1",
        }
        env.update(overrides)
        return env


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


class TestScenarios(PipelineTestCase):
    def test_single_report_is_published(self) -> None:
        suite = RecordingSuite({"report.html": "<html>ok</html>"})
        uploader = RecordingUploader()

        outcome = run_pipeline(self._environ(), suite=suite, uploader=uploader)

        self.assertEqual(outcome.state, S.DONE)
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.exit_code, EXIT_OK)
        self.assertEqual(
            outcome.history, [S.CONFIGURING, S.EXECUTING, S.COLLECTING, S.PUBLISHING, S.DONE]
        )
        self.assertEqual(
            uploader.calls,
            [(self.bench_dir / "report.html", "s3://bucket/reports/run1/report.html")],
        )
        assert outcome.config is not None
        self.assertEqual(outcome.config.key_count, 1000)
        self.assertEqual(outcome.config.key_length, 16)
        self.assertEqual(suite.calls, [outcome.config])

    def test_no_destination_skips_publish(self) -> None:
        suite = RecordingSuite()
        uploader = RecordingUploader()

        outcome = run_pipeline(
            self._environ(RKV_BENCH_DESTINATION_URI=""), suite=suite, uploader=uploader
        )

        self.assertEqual(outcome.state, S.DONE)
        self.assertEqual(outcome.history, [S.CONFIGURING, S.EXECUTING, S.COLLECTING, S.DONE])
        self.assertTrue(outcome.publish_skipped)
        self.assertIsNone(outcome.publish_result)
        self.assertEqual(uploader.calls, [])
        self.assertEqual(len(suite.calls), 1)

    def test_invalid_key_count_fails_before_side_effects(self) -> None:
        suite = RecordingSuite()
        uploader = RecordingUploader()

        outcome = run_pipeline(
            self._environ(RKV_BENCH_KEY_COUNT="-5"), suite=suite, uploader=uploader
        )

        self.assertEqual(outcome.state, S.FAILED)
        self.assertEqual(outcome.history, [S.CONFIGURING, S.FAILED])
        assert outcome.failure is not None
        self.assertEqual(outcome.failure.stage, S.CONFIGURING)
        self.assertIsInstance(outcome.failure.error, ConfigurationError)
        self.assertEqual(outcome.exit_code, EXIT_CONFIGURATION)
        self.assertIn("key_count", outcome.failure.describe())
        self.assertEqual(suite.calls, [])
        self.assertEqual(uploader.calls, [])
        self.assertFalse(self.bench_dir.exists())

    def test_blank_key_length_fails(self) -> None:
        suite = RecordingSuite()
        outcome = run_pipeline(self._environ(RKV_BENCH_KEY_LENGTH=""), suite=suite)
        self.assertEqual(outcome.exit_code, EXIT_CONFIGURATION)
        self.assertEqual(suite.calls, [])


# ---------------------------------------------------------------------------
# Stage failures
# ---------------------------------------------------------------------------


class TestStageFailures(PipelineTestCase):
    def test_benchmark_failure_never_publishes(self) -> None:
        suite = RecordingSuite(exit_code=101, stderr="thread 'main' panicked\n")
        uploader = RecordingUploader()

        outcome = run_pipeline(self._environ(), suite=suite, uploader=uploader)

        self.assertEqual(outcome.state, S.FAILED)
        assert outcome.failure is not None
        self.assertEqual(outcome.failure.stage, S.EXECUTING)
        self.assertIsInstance(outcome.failure.error, ExecutionError)
        self.assertEqual(outcome.exit_code, EXIT_EXECUTION)
        self.assertEqual(uploader.calls, [])
        self.assertTrue(outcome.failure.describe().startswith("execution failed: "))
        # Partial artifacts stay in place for inspection.
        self.assertTrue((self.bench_dir / "report.html").exists())

    def test_staging_path_is_a_file(self) -> None:
        self.bench_dir.write_text("not a directory")
        suite = RecordingSuite()
        uploader = RecordingUploader()

        outcome = run_pipeline(self._environ(), suite=suite, uploader=uploader)

        assert outcome.failure is not None
        self.assertIsInstance(outcome.failure.error, StagingError)
        self.assertEqual(outcome.exit_code, EXIT_STAGING)
        self.assertEqual(suite.calls, [])
        self.assertEqual(uploader.calls, [])

    def test_empty_artifacts(self) -> None:
        suite = RecordingSuite(files={})
        uploader = RecordingUploader()

        outcome = run_pipeline(self._environ(), suite=suite, uploader=uploader)

        assert outcome.failure is not None
        self.assertEqual(outcome.failure.stage, S.COLLECTING)
        self.assertIsInstance(outcome.failure.error, EmptyArtifactError)
        self.assertEqual(outcome.exit_code, EXIT_EMPTY_ARTIFACTS)
        self.assertEqual(uploader.calls, [])

    def test_partial_publish_failure(self) -> None:
        suite = RecordingSuite({"a.html": "a", "b.html": "b"})
        uploader = RecordingUploader(fail_on={"b.html"})

        outcome = run_pipeline(self._environ(), suite=suite, uploader=uploader)

        self.assertEqual(outcome.state, S.FAILED)
        assert outcome.failure is not None
        self.assertEqual(outcome.failure.stage, S.PUBLISHING)
        self.assertIsInstance(outcome.failure.error, PublishError)
        self.assertEqual(outcome.exit_code, EXIT_PUBLISH)
        assert outcome.publish_result is not None
        self.assertEqual(len(outcome.publish_result.transferred), 1)
        self.assertIn("s3://bucket/reports/run1/a.html", uploader.remote)
        self.assertIn("partial-copy error", outcome.failure.reason)

    def test_interrupt_during_benchmark(self) -> None:
        suite = RecordingSuite(raise_exc=KeyboardInterrupt())
        uploader = RecordingUploader()

        outcome = run_pipeline(self._environ(), suite=suite, uploader=uploader)

        self.assertEqual(outcome.state, S.FAILED)
        assert outcome.failure is not None
        self.assertTrue(outcome.failure.interrupted)
        self.assertEqual(outcome.failure.reason, "interrupted")
        self.assertEqual(outcome.exit_code, EXIT_INTERRUPTED)
        self.assertEqual(outcome.failure.describe(), "executing failed: interrupted")
        self.assertEqual(uploader.calls, [])

    def test_rerun_without_new_output_is_empty(self) -> None:
        config = make_config(self.bench_dir, destination_uri="s3://b/r")
        first = Pipeline(config, RecordingSuite(), RecordingUploader()).run()
        self.assertTrue(first.ok)
        # Make the first run's report clearly older than the second run.
        stamp = time.time() - 3600
        os.utime(self.bench_dir / "report.html", (stamp, stamp))

        uploader = RecordingUploader()
        second = Pipeline(config, RecordingSuite(files={}), uploader).run()

        self.assertEqual(second.state, S.FAILED)
        assert second.failure is not None
        self.assertEqual(second.failure.stage, S.COLLECTING)
        self.assertIsInstance(second.failure.error, EmptyArtifactError)
        self.assertEqual(second.exit_code, EXIT_EMPTY_ARTIFACTS)
        self.assertEqual(uploader.calls, [])

    def test_unexpected_suite_error(self) -> None:
        suite = RecordingSuite(raise_exc=RuntimeError("suite crashed"))
        outcome = Pipeline(make_config(self.bench_dir), suite).run()

        self.assertEqual(outcome.state, S.FAILED)
        assert outcome.failure is not None
        self.assertEqual(outcome.failure.stage, S.EXECUTING)
        self.assertEqual(outcome.exit_code, 1)
        self.assertEqual(outcome.failure.describe(), "executing failed: suite crashed")

    def test_unexpected_uploader_error(self) -> None:
        uploader = mock.MagicMock()
        uploader.upload.side_effect = OSError("disk vanished")
        config = make_config(self.bench_dir, destination_uri="s3://b/r")

        outcome = Pipeline(config, RecordingSuite(), uploader).run()

        self.assertEqual(outcome.state, S.FAILED)
        assert outcome.failure is not None
        self.assertEqual(outcome.failure.stage, S.PUBLISHING)
        self.assertEqual(outcome.exit_code, 1)

    def test_non_executable_upload_client(self) -> None:
        client = self.tmpdir / "aws"
        client.write_text("#!/bin/sh\nexit 0\n")
        client.chmod(0o644)
        config = make_config(self.bench_dir, destination_uri="s3://b/r")

        outcome = Pipeline(config, RecordingSuite(), CliUploader([str(client), "s3", "cp"])).run()

        self.assertEqual(outcome.state, S.FAILED)
        assert outcome.failure is not None
        self.assertIsInstance(outcome.failure.error, PublishError)
        self.assertEqual(outcome.exit_code, EXIT_PUBLISH)
        self.assertIn("permission error", outcome.failure.reason)

    def test_destination_without_uploader(self) -> None:
        config = make_config(self.bench_dir, destination_uri="ftp://host/reports")

        outcome = Pipeline(config, RecordingSuite()).run()

        assert outcome.failure is not None
        self.assertEqual(outcome.failure.stage, S.PUBLISHING)
        self.assertIsInstance(outcome.failure.error, PublishError)
        self.assertEqual(outcome.exit_code, EXIT_PUBLISH)
        self.assertIn("No uploader", outcome.failure.reason)


# ---------------------------------------------------------------------------
# Pipeline class
# ---------------------------------------------------------------------------


class TestPipeline(PipelineTestCase):
    def test_republish_same_tree_is_idempotent(self) -> None:
        config = make_config(self.bench_dir, destination_uri="s3://bucket/reports/run1")
        uploader = RecordingUploader()
        suite = RecordingSuite({"report.html": "x", "raw/estimates.json": "{}"})

        first = Pipeline(config, suite, uploader).run()
        remote_after_first = dict(uploader.remote)
        second = Pipeline(config, suite, uploader).run()

        self.assertTrue(first.ok)
        self.assertTrue(second.ok)
        self.assertEqual(uploader.remote, remote_after_first)
        self.assertEqual(
            sorted(uploader.remote),
            [
                "s3://bucket/reports/run1/raw/estimates.json",
                "s3://bucket/reports/run1/report.html",
            ],
        )

    def test_append_run_id(self) -> None:
        config = make_config(
            self.bench_dir,
            destination_uri="s3://bucket/reports",
            run_id="run_20240101_000000",
            append_run_id=True,
        )
        uploader = RecordingUploader()
        Pipeline(config, RecordingSuite(), uploader).run()
        self.assertEqual(
            uploader.calls[0][1], "s3://bucket/reports/run_20240101_000000/report.html"
        )

    def test_on_state_callback(self) -> None:
        seen: list[PipelineState] = []
        config = make_config(self.bench_dir)
        outcome = Pipeline(config, RecordingSuite(), on_state=seen.append).run()
        self.assertEqual(seen, [S.EXECUTING, S.COLLECTING, S.DONE])
        self.assertEqual(outcome.history, seen)

    def test_separate_data_and_staging_dirs(self) -> None:
        data_dir = self.tmpdir / "data"
        config = make_config(data_dir, staging_dir=self.bench_dir)
        outcome = Pipeline(config, RecordingSuite()).run()
        self.assertTrue(outcome.ok)
        self.assertTrue(data_dir.is_dir())
        self.assertTrue((self.bench_dir / "report.html").exists())

    def test_default_uploader_for_file_destination(self) -> None:
        remote = self.tmpdir / "remote"
        config = make_config(self.bench_dir, destination_uri=remote.as_uri())
        outcome = Pipeline(config, RecordingSuite({"report.html": "hi"})).run()
        self.assertTrue(outcome.ok)
        self.assertEqual((remote / "report.html").read_text(), "hi")

    def test_real_benchmark_process(self) -> None:
        code = (
            "import os, pathlib, sys; "
            "pathlib.Path(sys.argv[1], 'report.html').write_text(os.environ['RKV_BENCH_KEY_COUNT'])"
        )
        config = make_config(
            self.bench_dir,
            destination_uri="s3://bucket/reports/run1",
            command=(sys.executable, "-c", code, "{data_dir}"),
        )
        uploader = RecordingUploader()
        outcome = Pipeline(config, CommandBenchmark(os.environ), uploader).run()
        self.assertTrue(outcome.ok, outcome.failure and outcome.failure.describe())
        self.assertEqual(uploader.remote["s3://bucket/reports/run1/report.html"], b"1000")

    def test_default_suite_inherits_environment(self) -> None:
        with mock.patch.dict(os.environ, {"PATH": "/opt/cargo/bin:/usr/bin"}):
            pipeline = Pipeline(make_config(self.bench_dir))
        assert isinstance(pipeline.suite, CommandBenchmark)
        self.assertEqual(pipeline.suite.base_env["PATH"], "/opt/cargo/bin:/usr/bin")

    def test_to_dict(self) -> None:
        config = make_config(self.bench_dir, destination_uri="s3://b/p")
        outcome = Pipeline(config, RecordingSuite(), RecordingUploader()).run()
        d = outcome.to_dict()
        self.assertEqual(d["state"], "done")
        self.assertEqual(d["exit_code"], 0)
        self.assertEqual(d["artifacts"], ["report.html"])
        self.assertTrue(d["publish"]["ok"])


class TestRunPipelineProfile(PipelineTestCase):
    def test_profile_path(self) -> None:
        profile = self.tmpdir / "profile.yaml"
        profile.write_text(f"key_count: 42\ndata_dir: {self.bench_dir}\n")
        suite = RecordingSuite()
        outcome = run_pipeline({}, profile_path=profile, suite=suite)
        self.assertTrue(outcome.ok)
        self.assertEqual(suite.calls[0].key_count, 42)

    def test_bad_profile_is_configuration_error(self) -> None:
        profile = self.tmpdir / "profile.yaml"
        profile.write_text("key_cnt: 42\n")
        suite = RecordingSuite()
        outcome = run_pipeline({}, profile_path=profile, suite=suite)
        self.assertEqual(outcome.exit_code, EXIT_CONFIGURATION)
        self.assertEqual(suite.calls, [])


if __name__ == "__main__":
    unittest.main()
