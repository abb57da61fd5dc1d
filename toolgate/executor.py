"""Subprocess execution for shell commands and plugin binaries."""

import json
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from .report import CancellationError, ExecutionError

logger = logging.getLogger(__name__)

MAX_CAPTURE = 1024 * 1024  # 1 MB
DEFAULT_PLUGIN_TIMEOUT = 900
METADATA_TIMEOUT = 10
_KILL_WAIT_TIMEOUT = 5
_POLL_INTERVAL = 0.05


def plugin_timeout() -> int:
    """Timeout for plugin runs, from TOOLGATE_PLUGIN_TIMEOUT (seconds)."""
    raw = os.environ.get("TOOLGATE_PLUGIN_TIMEOUT", "")
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_PLUGIN_TIMEOUT
    return value if value > 0 else DEFAULT_PLUGIN_TIMEOUT


@dataclass
class ExecResult:
    output: str
    exit_code: int
    duration: float


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    Relies on the child having its own process group (start_new_session=True).
    """
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError:
        pass  # already exited
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.warning("process %d did not exit after SIGKILL", proc.pid)


def run_process(
    argv: list[str],
    *,
    cancel: threading.Event | None = None,
    timeout: float | None = None,
    cwd: str | None = None,
    interactive: bool = False,
    on_output=None,
) -> ExecResult:
    """Run *argv*, capturing combined stdout/stderr.

    With *interactive*, the child inherits the terminal and nothing is
    captured. *on_output* receives decoded chunks as they arrive.

    Raises ExecutionError for start failures, timeouts and non-zero exits
    (the partial output rides along), CancellationError when *cancel* is set
    while the child runs.
    """
    if not argv:
        raise ExecutionError("empty command")

    popen_kwargs: dict = dict(cwd=cwd, start_new_session=True)
    if not interactive:
        popen_kwargs.update(
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
        )

    start = time.monotonic()
    try:
        proc = subprocess.Popen(argv, **popen_kwargs)
    except FileNotFoundError:
        raise ExecutionError(f"command not found: {argv[0]}")
    except OSError as e:
        raise ExecutionError(f"failed to start {argv[0]}: {e}")

    chunks: list[bytes] = []
    total = 0
    truncated = False

    def _reader():
        nonlocal total, truncated
        try:
            while True:
                chunk = proc.stdout.read1(4096)
                if not chunk:
                    break
                if on_output is not None:
                    on_output(chunk.decode("utf-8", errors="replace"))
                if truncated:
                    continue  # keep draining to prevent pipe backpressure
                kept = chunk[: MAX_CAPTURE - total]
                chunks.append(kept)
                total += len(kept)
                if total >= MAX_CAPTURE:
                    truncated = True
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader_thread = None
    if proc.stdout is not None:
        reader_thread = threading.Thread(target=_reader, daemon=True)
        reader_thread.start()

    deadline = start + timeout if timeout else None
    cancelled = timed_out = False
    while True:
        try:
            proc.wait(timeout=_POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            pass
        if cancel is not None and cancel.is_set():
            cancelled = True
        elif deadline is not None and time.monotonic() > deadline:
            timed_out = True
        if cancelled or timed_out:
            _kill_process_tree(proc)
            break

    if reader_thread is not None:
        reader_thread.join(timeout=2)
        proc.stdout.close()

    output = b"".join(chunks).decode("utf-8", errors="replace")
    if truncated:
        output += "\n[output truncated at 1MB]"
    duration = time.monotonic() - start

    if cancelled:
        raise CancellationError("operation cancelled")
    if timed_out:
        raise ExecutionError(f"command timed out after {timeout:g}s", output=output)
    if proc.returncode != 0:
        raise ExecutionError(
            f"exit code {proc.returncode}", output=output, exit_code=proc.returncode
        )
    return ExecResult(output=output, exit_code=0, duration=duration)


def run_shell(command: str, **kwargs) -> ExecResult:
    """Execute a shell string via ``/bin/sh -c``."""
    return run_process(["/bin/sh", "-c", command], **kwargs)


# -- Plugins -----------------------------------------------------------------


@dataclass
class Plugin:
    name: str
    path: Path
    description: str = ""
    usage: str = ""
    version: str = ""
    schema: dict | None = field(default=None, repr=False)

    def execute(
        self,
        argv: list[str],
        cancel: threading.Event | None = None,
        timeout: float | None = None,
        interactive: bool = False,
        on_output=None,
    ) -> ExecResult:
        if timeout is None:
            timeout = plugin_timeout()
        try:
            return run_process(
                [str(self.path), *argv],
                cancel=cancel,
                timeout=timeout,
                interactive=interactive,
                on_output=on_output,
            )
        except ExecutionError as e:
            if e.exit_code is not None:
                raise ExecutionError(
                    "plugin execution failed", output=e.output, exit_code=e.exit_code
                ) from e
            raise


def _query_json(path: Path, flag: str):
    try:
        proc = subprocess.run(
            [str(path), flag],
            capture_output=True,
            stdin=subprocess.DEVNULL,
            timeout=METADATA_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("plugin %s %s failed: %s", path, flag, e)
        return None
    if proc.returncode != 0:
        return None
    try:
        return json.loads(proc.stdout.decode("utf-8", errors="replace"))
    except ValueError:
        return None


def load_plugin(path: Path) -> Plugin | None:
    """Ask an executable for its metadata. Returns None when it is not a plugin."""
    meta = _query_json(path, "--metadata")
    if not isinstance(meta, dict) or not isinstance(meta.get("name"), str) or not meta["name"]:
        logger.warning("ignoring %s: no usable --metadata output", path)
        return None
    schema = _query_json(path, "--schema")
    return Plugin(
        name=meta["name"],
        path=path,
        description=str(meta.get("description", "")),
        usage=str(meta.get("usage", "")),
        version=str(meta.get("version", "")),
        schema=schema if isinstance(schema, dict) else None,
    )


class PluginRegistry:
    """Executables in a plugins directory, addressed as ``@name``."""

    def __init__(self, plugins_dir: str | Path | None = None):
        self.plugins_dir = Path(plugins_dir) if plugins_dir else None
        self._plugins: dict[str, Plugin] = {}
        if self.plugins_dir is not None:
            self.reload()

    def reload(self) -> None:
        self._plugins = {}
        if self.plugins_dir is None or not self.plugins_dir.is_dir():
            return
        for entry in sorted(self.plugins_dir.iterdir()):
            if entry.is_dir() or not os.access(entry, os.X_OK):
                continue
            plugin = load_plugin(entry)
            if plugin is not None:
                self.register(plugin)
        logger.debug("loaded %d plugin(s) from %s", len(self._plugins), self.plugins_dir)

    def register(self, plugin: Plugin) -> None:
        key = plugin.name if plugin.name.startswith("@") else "@" + plugin.name
        self._plugins[key] = plugin

    def get(self, name: str) -> Plugin | None:
        return self._plugins.get(name) or self._plugins.get("@" + name)

    def names(self) -> list[str]:
        return sorted(self._plugins)

    def __len__(self) -> int:
        return len(self._plugins)
