import os
import re
import shlex
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set

from scanforge.errors import CommandNotAllowed, UnsafeArgument
from scanforge.logger import setup_logger

logger = setup_logger(__name__)

ALLOWED_COMMANDS = frozenset(
    {
        # static analysis
        "semgrep",
        "bandit",
        "gosec",
        # dependencies / secrets / infra
        "trivy",
        "gitleaks",
        "checkov",
        # dynamic / discovery / pentest
        "nuclei",
        "katana",
        "zap",
        "nikto",
        "sqlmap",
        "sslscan",
        # source fetch and container runtime
        "git",
        "docker",
    }
)

DANGEROUS_CHARS = re.compile(r"[;&|`$(){}\[\]<>!*?#~]")

VERSION_RE = re.compile(r"\d+\.\d+(\.\d+)?")
# user:password@ in clone URLs
_URL_CREDENTIALS = re.compile(r"(://[^/:@\s]+):[^@\s]+@")

OutputObserver = Callable[[str, str], None]


@dataclass
class ExecutionResult:
    """
    Standardized result object for every sandboxed execution.
    """
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration: float
    timed_out: bool = False
    canceled: bool = False
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.canceled


def command_basename(command: str) -> str:
    """/usr/local/bin/semgrep -> semgrep, C:\\tools\\nuclei.exe -> nuclei"""
    base = re.split(r"[\\/]", str(command or ""))[-1]
    if base.lower().endswith(".exe"):
        base = base[:-4]
    return base


def kill_process_tree(proc: subprocess.Popen, grace: float = 1.0) -> None:
    """
    Terminates the child and everything it forked. POSIX children run in their own
    session, so the process group id equals the child pid.
    """
    if proc.poll() is not None and os.name != "nt":
        # Leader gone; helpers may still hold the group
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError, OSError):
            pass
        return

    if os.name == "nt":
        try:
            subprocess.run(
                ["taskkill", "/F", "/T", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=10,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"taskkill failed for PID {proc.pid}: {e}")
            proc.kill()
        try:
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            proc.kill()
        return

    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError, OSError):
        proc.terminate()
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        pass
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError, OSError):
        pass
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


class SandboxExecutor:
    """
    Runs allow-listed scanner binaries without a shell, streams their output line by line,
    enforces timeouts and kills whole process trees on timeout or cancellation.
    """

    def __init__(self, allowed_commands: Optional[Iterable[str]] = None, poll_interval: float = 0.05):
        self.allowed_commands = frozenset(allowed_commands) if allowed_commands is not None else ALLOWED_COMMANDS
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._running: Dict[str, Set[subprocess.Popen]] = {}

    # -- policy -----------------------------------------------------------

    def validate_command(self, command: str) -> str:
        base = command_basename(command)
        if base not in self.allowed_commands:
            logger.warning(f"Command not in allowlist: {command}")
            raise CommandNotAllowed(command)
        return base

    def sanitize_args(self, command: str, args: Iterable[object], trusted_args: Iterable[str] = ()) -> List[str]:
        """trusted_args are exact literals built by the caller, never user input."""
        normalized = [a.decode("utf-8", errors="replace") if isinstance(a, (bytes, bytearray)) else str(a) for a in args]
        trusted = frozenset(trusted_args)
        for arg in normalized:
            if arg not in trusted and DANGEROUS_CHARS.search(arg):
                logger.warning(f"Potentially dangerous argument rejected: {arg}")
                raise UnsafeArgument(arg)
        return normalized

    # -- process registry -------------------------------------------------

    def _track(self, job_id: Optional[str], proc: subprocess.Popen) -> None:
        if not job_id:
            return
        with self._lock:
            self._running.setdefault(job_id, set()).add(proc)

    def _untrack(self, job_id: Optional[str], proc: subprocess.Popen) -> None:
        if not job_id:
            return
        with self._lock:
            procs = self._running.get(job_id)
            if procs is None:
                return
            procs.discard(proc)
            if not procs:
                del self._running[job_id]

    def running_jobs(self) -> List[str]:
        with self._lock:
            return list(self._running.keys())

    def kill_process(self, job_id: str) -> bool:
        """Kills every live process tree registered for job_id. Returns False if none."""
        with self._lock:
            procs = list(self._running.pop(job_id, set()))
        killed = False
        for proc in procs:
            if proc.poll() is None:
                logger.info(f"Killing process tree for scan {job_id} (PID: {proc.pid})")
                kill_process_tree(proc)
                killed = True
        return killed

    # -- execution --------------------------------------------------------

    def _pump(self, pipe, sink: List[str], stream: str, on_output: Optional[OutputObserver]) -> None:
        try:
            for line in iter(pipe.readline, ""):
                sink.append(line)
                text = line.rstrip("\r\n")
                if on_output is not None and text.strip():
                    try:
                        on_output(text, stream)
                    except Exception as e:
                        logger.debug(f"Output observer raised: {e}")
        except (OSError, ValueError):
            pass
        finally:
            try:
                pipe.close()
            except OSError:
                pass

    def execute(
        self,
        command: str,
        args: Iterable[object] = (),
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
        *,
        job_id: Optional[str] = None,
        on_output: Optional[OutputObserver] = None,
        cancel_event=None,
        trusted_args: Iterable[str] = (),
    ) -> ExecutionResult:
        """
        Executes an allow-listed command.

        Args:
            command: Binary name or path; its basename must be allow-listed.
            args: Discrete arguments, each checked against the metacharacter deny-list.
            cwd: Working directory.
            timeout: Seconds before the process tree is killed (None or <= 0 disables).
            env: Overrides merged over the current environment.
            job_id: Registers the child so kill_process(job_id) can reach it.
            on_output: Called with (line, "stdout"|"stderr") for each non-empty line.
            cancel_event: threading.Event-like; when set, the process tree is killed.
            trusted_args: Exact argument values exempt from the deny-list.

        Raises:
            CommandNotAllowed, UnsafeArgument: before anything is spawned.
        """
        self.validate_command(command)
        argv = [command] + self.sanitize_args(command, args, trusted_args)
        cmd_str = _URL_CREDENTIALS.sub(r"\1:***@", shlex.join(argv))
        logger.debug(f"Executing command: {cmd_str}")

        full_env = dict(os.environ)
        full_env.update({"PYTHONUTF8": "1", "PYTHONIOENCODING": "utf-8"})
        if env:
            full_env.update({str(k): str(v) for k, v in env.items()})

        popen_kwargs = {}
        if os.name == "nt":
            popen_kwargs["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        else:
            popen_kwargs["start_new_session"] = True

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=full_env,
                cwd=cwd,
                **popen_kwargs,
            )
        except FileNotFoundError:
            error_msg = f"Executable not found: {command}"
            logger.error(error_msg)
            return ExecutionResult(
                command=cmd_str,
                exit_code=127,
                stdout="",
                stderr=error_msg,
                duration=time.monotonic() - start,
                error_message=error_msg,
            )
        except OSError as e:
            error_msg = f"Unexpected error executing {cmd_str}: {e}"
            logger.error(error_msg)
            return ExecutionResult(
                command=cmd_str,
                exit_code=-1,
                stdout="",
                stderr=str(e),
                duration=time.monotonic() - start,
                error_message=error_msg,
            )

        self._track(job_id, proc)
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        readers = [
            threading.Thread(target=self._pump, args=(proc.stdout, stdout_lines, "stdout", on_output), daemon=True),
            threading.Thread(target=self._pump, args=(proc.stderr, stderr_lines, "stderr", on_output), daemon=True),
        ]
        for reader in readers:
            reader.start()

        timed_out = False
        canceled = False
        deadline = start + timeout if timeout is not None and timeout > 0 else None
        try:
            while True:
                try:
                    proc.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"Command canceled: {cmd_str}")
                    canceled = True
                    kill_process_tree(proc)
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    logger.error(f"Command timed out after {timeout} seconds: {cmd_str}")
                    timed_out = True
                    kill_process_tree(proc)
                    break
            if proc.returncode is None:
                proc.wait()
        finally:
            self._untrack(job_id, proc)
            # A tree killed out-of-band via kill_process() ends up here too
            if proc.poll() is None:
                kill_process_tree(proc)
            for reader in readers:
                reader.join(timeout=2.0)

        duration = time.monotonic() - start
        rc = proc.returncode if proc.returncode is not None else -1
        if not (timed_out or canceled) and rc != 0 and cancel_event is not None and cancel_event.is_set():
            # killed through kill_process() after the job was cancelled
            canceled = True
        stdout = "".join(stdout_lines)
        stderr = "".join(stderr_lines)
        error_message = None
        if timed_out:
            error_message = f"Command timed out after {timeout} seconds: {cmd_str}"
        elif canceled:
            error_message = f"Command canceled: {cmd_str}"
        elif rc != 0:
            logger.warning(f"Command exited (RC={rc}): {cmd_str}")
            if stderr.strip():
                logger.debug(f"Stderr: {stderr.strip()[:2000]}")
        logger.info(f"{command_basename(command)} completed in {duration:.2f}s with code {rc}")

        return ExecutionResult(
            command=cmd_str,
            exit_code=rc,
            stdout=stdout,
            stderr=stderr,
            duration=duration,
            timed_out=timed_out,
            canceled=canceled,
            error_message=error_message,
        )

    # -- probes -----------------------------------------------------------

    def is_command_available(self, command: str) -> bool:
        """Best-effort; never raises."""
        try:
            if os.path.isabs(command) or "/" in command or "\\" in command:
                return os.path.exists(command)
            return shutil.which(command) is not None
        except Exception as e:
            logger.debug(f"Availability probe for {command} failed: {e}")
            return False

    def get_version(self, command: str, version_arg: str = "--version", timeout: float = 5.0) -> str:
        """Best-effort version probe; returns 'unknown' on any failure."""
        try:
            result = self.execute(command, [version_arg], timeout=timeout)
        except Exception as e:
            logger.debug(f"Version probe for {command} failed: {e}")
            return "unknown"
        if result.exit_code != 0:
            return "unknown"
        text = (result.stdout or result.stderr or "").strip()
        first_line = text.splitlines()[0] if text else ""
        match = VERSION_RE.search(first_line)
        return match.group(0) if match else "unknown"
