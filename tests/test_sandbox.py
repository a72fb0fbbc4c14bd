import unittest
import sys
import os
import threading
import time

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from scanforge.errors import CommandNotAllowed, UnsafeArgument
from scanforge.sandbox import ALLOWED_COMMANDS, SandboxExecutor, command_basename

TEST_COMMANDS = {"echo", "printf", "sleep", "ls", "sh", "non_existent_command_abc"}


class TestSandboxPolicy(unittest.TestCase):
    def setUp(self):
        self.executor = SandboxExecutor()

    def test_command_basename(self):
        self.assertEqual(command_basename("/usr/local/bin/semgrep"), "semgrep")
        self.assertEqual(command_basename("C:\\tools\\nuclei.exe"), "nuclei")

    def test_rejects_unlisted_command(self):
        with self.assertRaises(CommandNotAllowed):
            self.executor.execute("rm", ["-rf", "/tmp/x"])

    def test_rejects_shell_metacharacters(self):
        for arg in ["a;b", "$(id)", "`id`", "x|y", "a&&b", "*.py", "~/x", "#frag"]:
            with self.assertRaises(UnsafeArgument, msg=arg):
                self.executor.execute("semgrep", ["--config", arg])

    def test_docker_arguments_are_checked_like_any_other(self):
        with self.assertRaises(UnsafeArgument):
            self.executor.execute("docker", ["run", "alpine;id"])

    def test_trusted_literals_skip_the_deny_list(self):
        self.assertEqual(
            self.executor.sanitize_args("docker", ["ps", "--format", "{{.Status}}"], trusted_args=["{{.Status}}"]),
            ["ps", "--format", "{{.Status}}"],
        )
        with self.assertRaises(UnsafeArgument):
            self.executor.sanitize_args("docker", ["ps", "--format", "{{.Names}}"], trusted_args=["{{.Status}}"])

    def test_default_allow_list(self):
        self.assertIn("nuclei", ALLOWED_COMMANDS)
        self.assertIn("git", ALLOWED_COMMANDS)
        self.assertNotIn("bash", ALLOWED_COMMANDS)


class TestSandboxExecution(unittest.TestCase):
    def setUp(self):
        self.executor = SandboxExecutor(allowed_commands=TEST_COMMANDS)

    def test_run_echo_success(self):
        result = self.executor.execute("echo", ["hello"])
        self.assertTrue(result.success)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(result.stdout.strip(), "hello")
        self.assertEqual(result.stderr, "")

    def test_accepts_bytes_arguments(self):
        result = self.executor.execute("echo", [b"hello"])
        self.assertEqual(result.stdout.strip(), "hello")

    def test_streams_lines_to_observer(self):
        lines = []
        result = self.executor.execute("printf", ["one\ntwo\n\nthree\n"], on_output=lambda line, stream: lines.append((line, stream)))
        self.assertTrue(result.success)
        self.assertEqual(lines, [("one", "stdout"), ("two", "stdout"), ("three", "stdout")])
        self.assertEqual(result.stdout, "one\ntwo\n\nthree\n")

    def test_command_failure(self):
        result = self.executor.execute("ls", ["non_existent_file_xyz_123"])
        self.assertFalse(result.success)
        self.assertNotEqual(result.exit_code, 0)
        self.assertTrue(len(result.stderr) > 0)

    def test_timeout_kills_process_tree(self):
        start = time.monotonic()
        result = self.executor.execute("sleep", ["5"], timeout=0.3)
        self.assertLess(time.monotonic() - start, 4)
        self.assertTrue(result.timed_out)
        self.assertFalse(result.success)
        self.assertIn("timed out", result.error_message)

    def test_timeout_reaches_forked_children(self):
        start = time.monotonic()
        result = self.executor.execute("sh", ["-c", "sleep 5 \n echo done"], timeout=0.3)
        self.assertTrue(result.timed_out)
        self.assertNotIn("done", result.stdout)
        self.assertLess(time.monotonic() - start, 4)

    def test_command_not_found(self):
        result = self.executor.execute("non_existent_command_abc", [])
        self.assertFalse(result.success)
        self.assertEqual(result.exit_code, 127)
        self.assertIn("Executable not found", result.error_message)

    def test_cancel_event_stops_command(self):
        cancel = threading.Event()
        threading.Timer(0.1, cancel.set).start()
        result = self.executor.execute("sleep", ["5"], cancel_event=cancel)
        self.assertFalse(result.success)
        self.assertTrue(result.canceled)

    def test_kill_process_by_job_id(self):
        results = []
        t = threading.Thread(target=lambda: results.append(self.executor.execute("sleep", ["5"], job_id="scan-1")))
        t.start()
        for _ in range(100):
            if "scan-1" in self.executor.running_jobs():
                break
            time.sleep(0.02)
        self.assertTrue(self.executor.kill_process("scan-1"))
        t.join(timeout=5)
        self.assertFalse(results[0].success)
        self.assertEqual(self.executor.running_jobs(), [])
        self.assertFalse(self.executor.kill_process("scan-1"))

    def test_probes_never_raise(self):
        self.assertFalse(self.executor.is_command_available("non_existent_command_abc"))
        self.assertEqual(self.executor.get_version("non_existent_command_abc"), "unknown")
        self.assertEqual(self.executor.get_version("rm"), "unknown")


if __name__ == '__main__':
    unittest.main()
