"""
Sandboxed process execution and the ``bash`` tool.

Commands run under a child :class:`~relay.core.scope.Scope` carrying the requested deadline.
stdout and stderr are read on their own threads into :class:`LimitedBuffer` instances, so a chatty
process can never grow memory past the configured cap.
"""

import json
import logging
import os
import subprocess
import threading
from typing import (
    Any,
    Dict,
    IO,
    List,
    Mapping,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from relay.config import settings
from relay.core.schema import (
    ToolCallPart,
    ToolResponse,
)
from relay.core.scope import (
    Scope,
    ScopeError,
)
from relay.tools import (
    AgentTool,
    ToolContext,
    parse_params,
    pydantic_parameters,
    register_tool,
)

logger = logging.getLogger(__name__)

NO_OUTPUT_MESSAGE = "[command completed successfully with no output]"
_READ_CHUNK = 8192
_POLL_INTERVAL = 0.05


class WorkingDirError(ValueError):
    """Raised when a requested working directory escapes the base directory or is unusable."""


# ---------------------------------------------------------------------------
# Output capture
# ---------------------------------------------------------------------------
class LimitedBuffer:
    """Byte sink that keeps at most *limit* bytes and records whether anything was dropped."""

    def __init__(self, limit: int):
        self.limit = limit
        self.truncated = False
        self._chunks: List[bytes] = []
        self._size = 0
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        """Append *data*, discarding what does not fit.  Always reports the full length written."""
        if self.limit <= 0:
            return len(data)
        with self._lock:
            remaining = self.limit - self._size
            if remaining > 0:
                kept = data[:remaining]
                self._chunks.append(kept)
                self._size += len(kept)
            if len(data) > remaining:
                self.truncated = True
        return len(data)

    def getvalue(self) -> bytes:
        with self._lock:
            return b"".join(self._chunks)

    def text(self) -> str:
        return self.getvalue().decode("utf-8", errors="replace")

    def __len__(self) -> int:
        return self._size


class ExecResult(BaseModel):
    """Outcome of one sandboxed process run."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    timed_out: bool = False
    truncated: bool = False
    error: str = ""

    def succeeded(self) -> bool:
        """True for a clean exit with no error and no timeout."""
        return self.exit_code == 0 and not self.error and not self.timed_out

    def to_json(self) -> str:
        """The JSON result envelope; optional keys only appear when set."""
        data: Dict[str, Any] = {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
        }
        if self.timed_out:
            data["timed_out"] = True
        if self.truncated:
            data["truncated"] = True
        if self.error:
            data["error"] = self.error
        return json.dumps(data)

    def to_text(self) -> str:
        """Raw stdout on clean success, the JSON envelope otherwise."""
        if self.succeeded():
            return self.stdout or NO_OUTPUT_MESSAGE
        return self.to_json()


# ---------------------------------------------------------------------------
# Working directory confinement
# ---------------------------------------------------------------------------
def resolve_working_dir(base_dir: str, working_dir: Optional[str]) -> str:
    """
    Resolve *working_dir* relative to *base_dir* and confine it there.

    A blank *working_dir* means the base directory itself.  A missing target directory is created
    once it has passed the confinement check.

    Raises
    ------
    WorkingDirError
        If the target leaves *base_dir* or exists but is not a directory.
    """
    abs_base = os.path.abspath(base_dir)
    if not working_dir or not working_dir.strip():
        return abs_base
    abs_target = os.path.abspath(os.path.join(abs_base, working_dir))
    rel = os.path.relpath(abs_target, abs_base)
    if rel.startswith("..") or (rel == "." and abs_target != abs_base):
        raise WorkingDirError(f"working_dir must stay within {abs_base}")
    if os.path.exists(abs_target):
        if not os.path.isdir(abs_target):
            raise WorkingDirError(f"working_dir is not a directory: {abs_target}")
        return abs_target
    try:
        os.makedirs(abs_target, exist_ok=True)
    except OSError as exc:
        raise WorkingDirError(f"cannot create working_dir {abs_target}: {exc}") from exc
    return abs_target


# ---------------------------------------------------------------------------
# Process execution
# ---------------------------------------------------------------------------
def _pump(stream: IO[bytes], sink: LimitedBuffer) -> None:
    """Copy *stream* into *sink* until EOF, draining past the cap so the child never blocks."""
    try:
        for chunk in iter(lambda: stream.read(_READ_CHUNK), b""):
            sink.write(chunk)
    finally:
        stream.close()


def run_command(
    scope: Scope,
    argv: List[str],
    cwd: str,
    timeout: float,
    *,
    name: str = "command",
    env: Optional[Mapping[str, str]] = None,
    stdout_limit: Optional[int] = None,
    stderr_limit: Optional[int] = None,
) -> ExecResult:
    """
    Run *argv* in *cwd* and capture its output.

    The process is killed when *timeout* elapses (reported as ``timed_out``) or when *scope* is
    cancelled (reported as an error).  Never raises for process failures; they are described by the
    returned :class:`ExecResult`.
    """
    limit = settings.OUTPUT_LIMIT_BYTES
    stdout_buf = LimitedBuffer(stdout_limit if stdout_limit is not None else limit)
    stderr_buf = LimitedBuffer(stderr_limit if stderr_limit is not None else limit)
    run_scope = scope.with_timeout(timeout)

    process_env = None
    if env:
        process_env = dict(os.environ)
        process_env.update(env)

    try:
        proc = subprocess.Popen(  # pylint: disable=consider-using-with
            argv,
            cwd=cwd,
            env=process_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        logger.debug("Failed to start %s: %s", argv[0], exc)
        return ExecResult(exit_code=-1, error=str(exc))

    readers = [
        threading.Thread(target=_pump, args=(proc.stdout, stdout_buf), daemon=True),
        threading.Thread(target=_pump, args=(proc.stderr, stderr_buf), daemon=True),
    ]
    for reader in readers:
        reader.start()

    reason: Optional[ScopeError] = None
    while proc.poll() is None:
        reason = run_scope.error()
        if reason is not None:
            _kill(proc)
            break
        try:
            proc.wait(timeout=_POLL_INTERVAL)
        except subprocess.TimeoutExpired:
            continue
    proc.wait()
    for reader in readers:
        reader.join()

    result = ExecResult(
        stdout=stdout_buf.text(),
        stderr=stderr_buf.text(),
        truncated=stdout_buf.truncated or stderr_buf.truncated,
    )
    # A deadline that belongs to the parent is still this run's timeout; only cancellation differs.
    if reason == ScopeError.DEADLINE_EXCEEDED:
        result.timed_out = True
        result.exit_code = -1
        result.error = f"{name} timed out"
    elif reason == ScopeError.CANCELLED:
        result.exit_code = -1
        result.error = f"{name} cancelled"
    elif proc.returncode != 0:
        result.exit_code = proc.returncode
        if proc.returncode < 0:
            result.error = f"signal: killed by signal {-proc.returncode}"
        else:
            result.error = f"exit status {proc.returncode}"
    return result


def _kill(proc: "subprocess.Popen[bytes]") -> None:
    """Kill the process group started for *proc* so shell children die too."""
    try:
        os.killpg(proc.pid, 9)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def run_shell(
    scope: Scope,
    command: str,
    working_dir: Optional[str],
    timeout: float,
    base_dir: str,
) -> ExecResult:
    """Run *command* with ``/bin/sh -c`` inside the confined working directory."""
    cwd = resolve_working_dir(base_dir, working_dir)
    return run_command(scope, ["/bin/sh", "-c", command], cwd, timeout, name="bash")


# ---------------------------------------------------------------------------
# bash tool
# ---------------------------------------------------------------------------
class BashParams(BaseModel):
    """Input for the bash tool."""

    command: str = Field("", description="Command to run (will be executed via /bin/sh -c)")
    description: str = Field(
        "",
        description=(
            "Brief human-readable description of what this command does "
            "(e.g. 'Installing dependencies', 'Running tests')"
        ),
    )
    timeout_seconds: int = Field(0, description="Optional timeout in seconds")
    working_dir: str = Field(
        "", description="Optional working directory scoped to the project root"
    )


class BashTool(AgentTool):
    """Execute a shell command confined to the project directory."""

    name = "bash"
    description = "Execute a shell command and return stdout/stderr"

    def __init__(self, base_dir: str):
        self.base_dir = base_dir or os.getcwd()

    def parameters(self) -> Dict[str, Any]:
        schema = pydantic_parameters(BashParams)
        schema["required"] = ["command", "description"]
        return schema

    def run(self, scope: Scope, call: ToolCallPart) -> ToolResponse:
        params = parse_params(call, BashParams)
        if isinstance(params, ToolResponse):
            return params
        if not params.command.strip():
            return ToolResponse.error(
                'command is required; provide a string like {"command":"echo hello world"}'
            )
        timeout = (
            float(params.timeout_seconds)
            if params.timeout_seconds > 0
            else settings.DEFAULT_TOOL_TIMEOUT
        )
        try:
            result = run_shell(scope, params.command, params.working_dir, timeout, self.base_dir)
        except WorkingDirError as exc:
            return ToolResponse.error(f"invalid working_dir: {exc}")
        logger.debug("bash exited %d (timed_out=%s)", result.exit_code, result.timed_out)
        return ToolResponse.text(result.to_json())


@register_tool("bash")
def _bash(context: ToolContext) -> AgentTool:
    return BashTool(context.base_dir)
