"""
Processing tests for PropQueue

Tests group failure isolation, output reporting and the subprocess worker
runner.
"""

import fcntl
import io
import logging
import os
import tempfile
import textwrap
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

import sys
sys.path.append(str(Path(__file__).parent.parent))

from propqueue.config import QueueConfig
from propqueue.errors import ConfigurationError, WorkerFailure
from propqueue.storage import QueueStorage
from propqueue.worker import Processor, WorkerResult, WorkerRunner


WHEN = datetime(2024, 3, 9, 7, 5, 2, tzinfo=timezone.utc)


class FakeRunner:
    """Stands in for the worker: deletes entries unless told to fail"""

    def __init__(self, queue_dir, failures=None, outputs=None):
        self.queue_dir = Path(queue_dir)
        self.failures = failures or {}
        self.outputs = outputs or {}
        self.calls = []

    def run(self, filename, merge_stderr=False):
        self.calls.append((filename, merge_stderr))
        if filename in self.failures:
            return WorkerResult(*self.failures[filename])
        (self.queue_dir / filename).unlink()
        return WorkerResult(0, self.outputs.get(filename, ""))


def warnings_in(records):
    return [r.getMessage() for r in records if r.levelno >= logging.WARNING]


class ProcessorTestCase(unittest.TestCase):
    """Shared temporary queue setup"""

    ignore_patterns = ()

    def setUp(self):
        """Set up test environment"""
        self.temp_dir = tempfile.mkdtemp()
        self.queue_dir = Path(self.temp_dir) / "queue"
        self.config = QueueConfig(
            queue_dir=self.queue_dir,
            worker_path="/bin/false",
            ignore_patterns=self.ignore_patterns,
        )
        self.storage = QueueStorage(self.config)
        self.stream = io.StringIO()

    def tearDown(self):
        """Clean up test environment"""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def processor(self, runner):
        return Processor(self.storage, self.config, runner=runner, stream=self.stream)


class TestGroupIsolation(ProcessorTestCase):
    """Test a failure only holds back its own group"""

    def setUp(self):
        super().setUp()
        self.a = [
            self.storage.enqueue("amy", "ad", "password", WHEN + timedelta(seconds=i), [f"pw{i}"]).filename
            for i in range(3)
        ]
        self.b = self.storage.enqueue("bob", "ad", "password", WHEN, ["pw"]).filename

    def test_failed_group_is_skipped(self):
        """Test later entries of a failed group are not attempted"""
        runner = FakeRunner(self.queue_dir, failures={self.a[0]: (1, "bind failed\n")})

        with self.assertLogs('propqueue.worker', level='WARNING'):
            summary = self.processor(runner).process(silent=False)

        self.assertEqual([call[0] for call in runner.calls], [self.a[0], self.b])
        self.assertEqual(summary.invoked, [self.a[0], self.b])
        self.assertEqual(summary.failed, 1)
        self.assertEqual(summary.skipped, 2)
        self.assertEqual(summary.succeeded, 1)
        self.assertEqual(summary.skipped_groups, {"amy-ad-password"})

        # Failed and deferred entries stay queued for the next run
        self.assertEqual(self.storage.snapshot(), self.a)

    def test_failure_record(self):
        """Test failed results expose a WorkerFailure"""
        runner = FakeRunner(self.queue_dir, failures={self.a[0]: (2, "oops\n")})

        with self.assertLogs('propqueue.worker', level='WARNING'):
            summary = self.processor(runner).process()

        failed = [r for r in summary.results if r.failed]
        self.assertEqual(len(failed), 1)
        failure = failed[0].failure
        self.assertIsInstance(failure, WorkerFailure)
        self.assertEqual(failure.filename, self.a[0])
        self.assertEqual(failure.returncode, 2)
        self.assertEqual(failure.output, "oops\n")

    def test_all_succeed(self):
        """Test a clean run drains the queue"""
        runner = FakeRunner(self.queue_dir)

        summary = self.processor(runner).process()

        self.assertEqual(len(runner.calls), 4)
        self.assertEqual(summary.succeeded, 4)
        self.assertEqual(self.storage.snapshot(), [])

    def test_enable_and_disable_share_group(self):
        """Test a failed enable also defers a later disable for that account"""
        enable = self.storage.enqueue("cat", "ad", "enable", WHEN).filename
        disable = self.storage.enqueue("cat", "ad", "disable", WHEN + timedelta(seconds=5)).filename
        runner = FakeRunner(self.queue_dir, failures={enable: (1, "")})

        with self.assertLogs('propqueue.worker', level='WARNING'):
            self.processor(runner).process()

        called = [call[0] for call in runner.calls]
        self.assertIn(enable, called)
        self.assertNotIn(disable, called)

    def test_foreign_files_ignored(self):
        """Test files that are not entries are never handed to the worker"""
        (self.queue_dir / "notes.txt").write_text("hello\n")
        (self.queue_dir / "jdoe-ad-disable-20240309T070502Z-00").write_text("jdoe\nad\ndisable\n")
        runner = FakeRunner(self.queue_dir)

        with self.assertLogs('propqueue.worker', level='WARNING') as logs:
            self.processor(runner).process()

        called = [call[0] for call in runner.calls]
        self.assertNotIn("notes.txt", called)
        self.assertEqual(len(called), 4)
        # One warning for the whole run naming both files
        self.assertEqual(len(logs.output), 1)
        self.assertIn("notes.txt", logs.output[0])
        self.assertIn("jdoe-ad-disable-20240309T070502Z-00", logs.output[0])

    def test_lock_free_while_worker_runs(self):
        """Test other processes can take the queue lock during a worker run"""
        lock_states = []
        storage = self.storage

        class LockCheckingRunner(FakeRunner):
            def run(self, filename, merge_stderr=False):
                with open(storage.config.lock_path, 'a') as other:
                    try:
                        fcntl.flock(other.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    except BlockingIOError:
                        lock_states.append((storage.lock.locked, False))
                    else:
                        fcntl.flock(other.fileno(), fcntl.LOCK_UN)
                        lock_states.append((storage.lock.locked, True))
                return super().run(filename, merge_stderr)

        self.processor(LockCheckingRunner(self.queue_dir)).process()

        self.assertEqual(lock_states, [(False, True)] * 4)

    def test_enqueue_during_worker_run(self):
        """Test an enqueue from inside a worker run does not block"""
        storage = self.storage
        added = []

        class EnqueueingRunner(FakeRunner):
            def run(self, filename, merge_stderr=False):
                if not added:
                    other = QueueStorage(storage.config)
                    added.append(other.enqueue("zoe", "ad", "enable", WHEN).filename)
                return super().run(filename, merge_stderr)

        summary = self.processor(EnqueueingRunner(self.queue_dir)).process()

        # Entries added after the snapshot wait for the next run
        self.assertNotIn(added[0], summary.invoked)
        self.assertEqual(self.storage.snapshot(), added)


class TestReporting(ProcessorTestCase):
    """Test verbose and silent output handling"""

    ignore_patterns = (r"^account \S+ not found$",)

    def setUp(self):
        super().setUp()
        self.entry = self.storage.enqueue("amy", "ad", "enable", WHEN).filename

    def test_verbose_prints_output_on_success(self):
        runner = FakeRunner(self.queue_dir, outputs={self.entry: "enabled amy\n"})

        self.processor(runner).process(silent=False)

        self.assertEqual(self.stream.getvalue(), "enabled amy\n")
        self.assertEqual(runner.calls, [(self.entry, False)])

    def test_verbose_warns_even_when_ignorable(self):
        """Test ignore patterns do not apply in verbose mode"""
        runner = FakeRunner(self.queue_dir, failures={self.entry: (1, "account amy not found\n")})

        with self.assertLogs('propqueue.worker', level='WARNING') as logs:
            summary = self.processor(runner).process(silent=False)

        self.assertEqual(self.stream.getvalue(), "account amy not found\n")
        self.assertEqual(len(warnings_in(logs.records)), 1)
        self.assertIn(self.entry, warnings_in(logs.records)[0])
        self.assertTrue(summary.results[0].ignored)
        self.assertTrue(summary.results[0].reported)

    def test_silent_success_is_quiet(self):
        runner = FakeRunner(self.queue_dir, outputs={self.entry: "enabled amy\n"})

        with self.assertLogs('propqueue.worker', level='DEBUG') as logs:
            self.processor(runner).process(silent=True)

        self.assertEqual(self.stream.getvalue(), "")
        self.assertEqual(warnings_in(logs.records), [])
        self.assertEqual(runner.calls, [(self.entry, True)])

    def test_silent_ignorable_failure_is_quiet(self):
        runner = FakeRunner(self.queue_dir, failures={self.entry: (1, "account amy not found\n")})

        with self.assertLogs('propqueue.worker', level='DEBUG') as logs:
            summary = self.processor(runner).process(silent=True)

        self.assertEqual(self.stream.getvalue(), "")
        self.assertEqual(warnings_in(logs.records), [])
        self.assertFalse(summary.results[0].reported)
        # Still deferred for the rest of the run
        self.assertEqual(summary.skipped_groups, {"amy-ad-enable"})

    def test_silent_unexpected_failure_is_reported(self):
        runner = FakeRunner(self.queue_dir, failures={self.entry: (1, "LDAP server down\n")})

        with self.assertLogs('propqueue.worker', level='WARNING') as logs:
            summary = self.processor(runner).process(silent=True)

        warnings = warnings_in(logs.records)
        self.assertEqual(len(warnings), 1)
        self.assertIn(self.entry, warnings[0])
        self.assertIn("LDAP server down", warnings[0])
        self.assertTrue(summary.results[0].reported)


WORKER_SCRIPT = textwrap.dedent("""
    import os
    import sys

    flag, path = sys.argv[1], sys.argv[2]
    assert flag == "-f", flag
    with open(path) as f:
        lines = f.read().splitlines()
    if lines[0].startswith("bad"):
        print("cannot update " + lines[0])
        sys.stdout.flush()
        print("diagnostic on stderr", file=sys.stderr)
        sys.exit(3)
    os.unlink(path)
    print("updated %s on %s (%s)" % (lines[0], lines[1], lines[2]))
""")


class TestWorkerRunner(unittest.TestCase):
    """Test the subprocess worker runner against a throwaway worker"""

    def setUp(self):
        """Set up test environment"""
        self.temp_dir = tempfile.mkdtemp()
        script = Path(self.temp_dir) / "worker.py"
        script.write_text(WORKER_SCRIPT)
        self.config = QueueConfig(
            queue_dir=Path(self.temp_dir) / "queue",
            worker_path=sys.executable,
            worker_args=(str(script), "-f"),
        )
        self.storage = QueueStorage(self.config)
        self.runner = WorkerRunner(self.config)

    def tearDown(self):
        """Clean up test environment"""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_command_line(self):
        command = self.runner.command_for("amy-ad-enable-20240309T070502Z-00")
        self.assertEqual(command[0], sys.executable)
        self.assertEqual(command[-2], "-f")
        self.assertEqual(command[-1], str(self.config.queue_dir / "amy-ad-enable-20240309T070502Z-00"))

    def test_success_deletes_entry(self):
        name = self.storage.enqueue("amy", "ad", "disable", WHEN).filename

        result = self.runner.run(name)

        self.assertTrue(result.ok)
        self.assertEqual(result.output, "updated amy on ad (disable)\n")
        self.assertEqual(self.storage.snapshot(), [])

    def test_failure_with_merged_stderr(self):
        name = self.storage.enqueue("bad-user", "ad", "enable", WHEN).filename

        result = self.runner.run(name, merge_stderr=True)

        self.assertEqual(result.returncode, 3)
        self.assertIn("cannot update bad-user", result.output)
        self.assertIn("diagnostic on stderr", result.output)
        self.assertEqual(self.storage.snapshot(), [name])

    def test_failure_without_merge_captures_stdout_only(self):
        name = self.storage.enqueue("bad-user", "ad", "enable", WHEN).filename

        result = self.runner.run(name, merge_stderr=False)

        self.assertEqual(result.returncode, 3)
        self.assertIn("cannot update bad-user", result.output)
        self.assertNotIn("diagnostic on stderr", result.output)

    def test_end_to_end_processing(self):
        """Test a real processing run with one failing group"""
        bad = [self.storage.enqueue("bad-user", "afs", "password", WHEN + timedelta(seconds=i), ["x"]).filename
               for i in range(2)]
        good = self.storage.enqueue("amy", "afs", "password", WHEN, ["x"]).filename
        stream = io.StringIO()

        with self.assertLogs('propqueue.worker', level='WARNING') as logs:
            summary = Processor(self.storage, self.config, stream=stream).process(silent=True)

        self.assertEqual(summary.invoked, [good, bad[0]])
        self.assertEqual(summary.skipped, 1)
        self.assertEqual(self.storage.snapshot(), bad)
        self.assertIn("diagnostic on stderr", warnings_in(logs.records)[0])

    def test_missing_worker_is_configuration_error(self):
        config = QueueConfig(queue_dir=self.config.queue_dir,
                             worker_path=os.path.join(self.temp_dir, "no-such-worker"))
        name = self.storage.enqueue("amy", "ad", "enable", WHEN).filename

        with self.assertRaises(ConfigurationError):
            WorkerRunner(config).run(name)


if __name__ == '__main__':
    unittest.main()
