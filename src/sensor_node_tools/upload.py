"""Firmware build + upload through the PlatformIO CLI.

``UploadSupervisor.run_upload`` starts ``pio run -t upload`` inside the
firmware project directory, streams every output line to the caller's log
sink while the tool runs, and enforces a wall-clock deadline:

* exit code 0        -> ``UploadResult``
* exit code != 0     -> ``UploadFailed``
* deadline exceeded  -> process terminated (then killed), ``UploadTimeout``

Nothing is retried.  The child process never outlives ``run_upload``, not
even on Ctrl+C.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import queue
import subprocess
import threading
import time
from typing import Any, Callable, List, Optional

from . import (
    UPLOAD_MANIFEST,
    UPLOAD_POLL_INTERVAL_S,
    UPLOAD_TERMINATE_GRACE_S,
    UPLOAD_TIMEOUT_S,
    UPLOAD_TOOL,
)
from .exceptions import UploadError, UploadFailed, UploadTimeout
from .types import Clock, LogSink, Sleeper

logger = logging.getLogger("sensor_node_tools.upload")


@dataclasses.dataclass(frozen=True)
class UploadResult:
    """Immutable result of a successful upload.

    Attributes:
        command: The command line that was run.
        directory: Working directory of the tool.
        return_code: Always ``0``.
        output: Combined stdout/stderr of the tool.
        elapsed_seconds: Wall-clock time from spawn to exit.
    """
    command: List[str]
    directory: str
    return_code: int
    output: str
    elapsed_seconds: float


@dataclasses.dataclass
class UploadJob:
    """Book-keeping for one running upload.

    ``return_code`` stays ``None`` while the tool runs; ``finish`` sets the
    terminal outcome exactly once.
    """
    directory: str
    command: List[str]
    deadline: float
    lines: List[str] = dataclasses.field(default_factory=list)
    return_code: Optional[int] = None
    timed_out: bool = False
    finished: bool = False

    @property
    def output(self) -> str:
        return "".join(self.lines)

    def finish(self, return_code: Optional[int], timed_out: bool = False) -> None:
        if self.finished:
            raise RuntimeError(f"Upload job in {self.directory} already finished")
        self.finished = True
        self.return_code = return_code
        self.timed_out = timed_out


def _pump_lines(stream: Any, sink: "queue.Queue[Optional[str]]") -> None:
    """Reader thread: forward each line of *stream*, then ``None``."""
    try:
        for line in iter(stream.readline, ""):
            sink.put(line)
    except (OSError, ValueError) as exc:
        logger.debug("[UPLOAD-PUMP] Output stream closed: %s", exc)
    finally:
        sink.put(None)


class UploadSupervisor:
    """Runs and supervises the external upload tool.

    Example::

        supervisor = UploadSupervisor(log_sink=print)
        result = supervisor.run_upload(
            "firmware/", context="flash bench unit", environment="esp32s3",
        )
    """

    def __init__(
        self,
        tool: str = UPLOAD_TOOL,
        log_sink: Optional[LogSink] = None,
        poll_interval_s: float = UPLOAD_POLL_INTERVAL_S,
        terminate_grace_s: float = UPLOAD_TERMINATE_GRACE_S,
        popen: Callable[..., Any] = subprocess.Popen,
        clock: Clock = time.monotonic,
        sleep: Sleeper = time.sleep,
    ) -> None:
        self.tool = tool
        self.log_sink = log_sink
        self.poll_interval_s = poll_interval_s
        self.terminate_grace_s = terminate_grace_s
        self._popen = popen
        self._clock = clock
        self._sleep = sleep

    def build_command(
        self,
        environment: Optional[str] = None,
        upload_port: Optional[str] = None,
    ) -> List[str]:
        """Return the argument list for one build + upload run."""
        cmd = [self.tool, "run", "-t", "upload"]
        if environment:
            cmd.extend(["-e", environment])
        if upload_port:
            cmd.extend(["--upload-port", upload_port])
        return cmd

    def _check_project(self, directory: str, context: str) -> None:
        if not os.path.isdir(directory):
            raise UploadError(
                f"[{context}] Firmware project directory {directory!r} does not exist."
            )
        manifest = os.path.join(directory, UPLOAD_MANIFEST)
        if not os.path.isfile(manifest):
            raise UploadError(
                f"[{context}] No {UPLOAD_MANIFEST} in {directory!r}. "
                f"Point --project-dir at the PlatformIO firmware project."
            )

    def _emit(self, job: UploadJob, line: str) -> None:
        job.lines.append(line)
        text = line.rstrip("\r\n")
        logger.debug("[UPLOAD-OUT] %s", text)
        if self.log_sink is not None:
            self.log_sink(text)

    def _drain(self, job: UploadJob, lines: "queue.Queue[Optional[str]]") -> bool:
        """Forward queued lines; return ``True`` once the stream ended."""
        while True:
            try:
                line = lines.get_nowait()
            except queue.Empty:
                return False
            if line is None:
                return True
            self._emit(job, line)

    def _stop(self, process: Any, context: str) -> None:
        """Terminate, then kill, a still-running process."""
        if process.poll() is not None:
            return
        logger.warning("[UPLOAD] [%s] Terminating upload process (pid %s)", context, process.pid)
        process.terminate()
        try:
            process.wait(timeout=self.terminate_grace_s)
        except subprocess.TimeoutExpired:
            logger.warning("[UPLOAD] [%s] Process ignored SIGTERM — killing", context)
            process.kill()
            process.wait()

    def run_upload(
        self,
        directory: str,
        context: str,
        environment: Optional[str] = None,
        upload_port: Optional[str] = None,
        timeout_s: float = UPLOAD_TIMEOUT_S,
    ) -> UploadResult:
        """Build and upload the firmware in *directory*.

        Args:
            directory: PlatformIO project directory (contains ``platformio.ini``).
            context: Description of the purpose, embedded into error messages.
            environment: Optional ``[env:...]`` name passed as ``-e``.
            upload_port: Optional port passed as ``--upload-port``.
            timeout_s: Wall-clock deadline for the whole run (default: 600).

        Raises:
            UploadError: If the tool cannot be started.
            UploadTimeout: If the deadline expired; carries partial output.
            UploadFailed: If the tool exited non-zero; carries the exit code.
        """
        self._check_project(directory, context)
        cmd = self.build_command(environment, upload_port)

        logger.info(
            "[UPLOAD] [%s] Running %s in %s (timeout=%.0fs)",
            context, " ".join(cmd), directory, timeout_s,
        )

        start = self._clock()
        job = UploadJob(directory=directory, command=cmd, deadline=start + timeout_s)

        try:
            process = self._popen(
                cmd,
                cwd=directory,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as exc:
            raise UploadError(
                f"[{context}] Upload tool {self.tool!r} was not found on PATH. "
                f"Install PlatformIO Core (pip install platformio) or set "
                f"SENSOR_NODE_UPLOAD_TOOL."
            ) from exc
        except OSError as exc:
            raise UploadError(
                f"[{context}] Failed to start {' '.join(cmd)}: {exc}"
            ) from exc

        lines: "queue.Queue[Optional[str]]" = queue.Queue()
        pump = threading.Thread(
            target=_pump_lines, args=(process.stdout, lines), daemon=True,
        )
        pump.start()

        try:
            while True:
                self._drain(job, lines)
                if process.poll() is not None:
                    break
                if self._clock() >= job.deadline:
                    self._stop(process, context)
                    pump.join(timeout=self.terminate_grace_s)
                    self._drain(job, lines)
                    job.finish(None, timed_out=True)
                    msg = (
                        f"[{context}] Upload did not finish within {timeout_s:.0f}s "
                        f"and was terminated. Command: {' '.join(cmd)}. "
                        f"Output tail: {job.output[-500:] or '(empty)'}"
                    )
                    logger.error("[UPLOAD] TIMEOUT — %s", msg)
                    raise UploadTimeout(msg, command=cmd, output=job.output, timeout_s=timeout_s)
                self._sleep(self.poll_interval_s)

            # A lingering grandchild can hold the pipe open after exit
            pump.join(timeout=self.terminate_grace_s)
            self._drain(job, lines)
            job.finish(process.returncode)
        finally:
            self._stop(process, context)
            if process.stdout is not None:
                process.stdout.close()

        elapsed = self._clock() - start
        if job.return_code != 0:
            msg = (
                f"[{context}] Upload failed with exit code {job.return_code} "
                f"after {elapsed:.1f}s. Command: {' '.join(cmd)}. "
                f"Output tail: {job.output[-500:] or '(empty)'}"
            )
            logger.error("[UPLOAD] FAILED — %s", msg)
            raise UploadFailed(msg, command=cmd, return_code=job.return_code, output=job.output)

        logger.info("[UPLOAD] [%s] Upload finished in %.1fs", context, elapsed)
        return UploadResult(
            command=cmd,
            directory=directory,
            return_code=0,
            output=job.output,
            elapsed_seconds=elapsed,
        )
