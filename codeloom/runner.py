from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
import json
import logging
import shutil
from typing import Any, Optional

from .config import Settings, get_settings
from .errors import ExecutionFault, RuntimeUnavailable
from .schemas import FeedbackResponse, LessonView


log = logging.getLogger(__name__)


HTML_RENDERED = "HTML rendered in preview."
CSS_APPLIED = "CSS applied in preview."
JS_NO_OUTPUT = "Code executed successfully (no output)."
PY_NO_OUTPUT = "Code executed successfully."
PY_NOT_READY = "Python runtime not ready."
ALREADY_RUNNING = "Code is already running."


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RuntimeState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    UNAVAILABLE = "unavailable"


@dataclass
class RunResult:
    state: RunState
    output: str
    language: str
    rejected: bool = False

    @property
    def ok(self) -> bool:
        return self.state is RunState.SUCCEEDED


class PreviewSurface:
    """Sandboxed preview document; each write replaces the whole thing."""

    def __init__(self) -> None:
        self.document = ""
        self.writes = 0

    def write(self, document: str) -> None:
        self.document = document
        self.writes += 1


async def _communicate(argv: list[str], stdin_text: str, timeout_s: float) -> tuple[int, str, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise RuntimeUnavailable(f"cannot start {argv[0]}: {e}") from e

    try:
        out, err = await asyncio.wait_for(proc.communicate(stdin_text.encode()), timeout_s)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ExecutionFault(f"Execution timed out after {timeout_s:g}s")
    return proc.returncode, out.decode(errors="replace"), err.decode(errors="replace")


def _last_json_line(stdout: str) -> dict[str, Any]:
    lines = stdout.rstrip("\n").splitlines()
    if not lines:
        raise ExecutionFault("runtime produced no report")
    try:
        return json.loads(lines[-1])
    except json.JSONDecodeError as e:
        raise ExecutionFault("runtime report was unreadable") from e


# -----------------------------------------------------------------------------
# JavaScript
# -----------------------------------------------------------------------------

# Runs the program from stdin in a fresh vm context. The console methods are
# swapped for capturing hooks and put back in `finally`, fault or not.
NODE_HARNESS = r"""
const vm = require('vm');
const src = require('fs').readFileSync(0, 'utf8');
const timeout = Number(process.argv[1]) || 10000;
const logs = [];
const box = { console: {} };
const methods = ['log', 'info', 'warn', 'error'];
for (const m of methods) box.console[m] = (...a) => process.stderr.write(a.join(' ') + '\n');
const saved = {};
let error = null;
for (const m of methods) {
  saved[m] = box.console[m];
  box.console[m] = (...args) => logs.push(args.map(a => String(a)).join(' '));
}
try {
  vm.runInNewContext(src, box, { timeout, filename: 'lesson.js' });
} catch (e) {
  error = (e && e.message) ? e.message : String(e);
} finally {
  for (const m of methods) box.console[m] = saved[m];
}
process.stdout.write('\n' + JSON.stringify({ logs, error }) + '\n');
"""


class NodeRuntime:
    def __init__(self, executable: str = "node", timeout_s: float = 10.0):
        self.executable = executable
        self.timeout_s = timeout_s

    async def run(self, code: str) -> str:
        if shutil.which(self.executable) is None:
            raise RuntimeUnavailable("JavaScript runtime not available.")
        argv = [self.executable, "-e", NODE_HARNESS, str(int(self.timeout_s * 1000))]
        # Slack on top of the in-vm timeout for process startup.
        _, stdout, _ = await _communicate(argv, code, self.timeout_s + 5)
        report = _last_json_line(stdout)
        if report.get("error") is not None:
            raise ExecutionFault(f"Error: {report['error']}")
        return "\n".join(report.get("logs") or []) or JS_NO_OUTPUT


# -----------------------------------------------------------------------------
# Python
# -----------------------------------------------------------------------------

# Executes stdin in a fresh namespace; a trailing expression is evaluated
# separately so its value can be reported.
PYTHON_HARNESS = r"""
import ast, contextlib, io, json, sys
src = sys.stdin.read()
buf = io.StringIO()
result = error = None
try:
    tree = ast.parse(src, "<lesson>", "exec")
    tail = None
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        tail = ast.Expression(tree.body.pop().value)
    ns = {"__name__": "__main__"}
    with contextlib.redirect_stdout(buf):
        exec(compile(tree, "<lesson>", "exec"), ns)
        if tail is not None:
            value = eval(compile(tail, "<lesson>", "eval"), ns)
            if value is not None:
                result = str(value)
except (Exception, SystemExit) as e:
    error = "%s: %s" % (type(e).__name__, e)
sys.__stdout__.write("\n" + json.dumps({"stdout": buf.getvalue(), "result": result, "error": error}) + "\n")
"""


class PythonRuntime:
    """Lazily loaded interpreter, one per runner session.

    ``ensure_loading`` starts the load in the background; the load polls for
    the interpreter a bounded number of times and then checks it starts.
    A failed load is terminal until ``retry``.
    """

    def __init__(
        self,
        executable: str,
        timeout_s: float = 10.0,
        attempts: int = 50,
        interval_s: float = 0.1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.executable = executable
        self.timeout_s = timeout_s
        self.attempts = attempts
        self.interval_s = interval_s
        self._sleep = sleep

        self.state = RuntimeState.UNLOADED
        self.error: Optional[str] = None
        self.version: Optional[str] = None
        self._path: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def ready(self) -> bool:
        return self.state is RuntimeState.READY

    def ensure_loading(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.ensure_future(self.load())
        return self._task

    def retry(self) -> asyncio.Task:
        if self.state is RuntimeState.UNAVAILABLE:
            self._task = None
            self.state = RuntimeState.UNLOADED
            self.error = None
        return self.ensure_loading()

    async def _locate(self) -> str:
        for _ in range(self.attempts):
            found = shutil.which(self.executable)
            if found:
                return found
            await self._sleep(self.interval_s)
        raise RuntimeUnavailable(f"Python interpreter {self.executable!r} not found")

    async def load(self) -> bool:
        if self.ready:
            return True
        self.state = RuntimeState.LOADING
        try:
            path = await self._locate()
            rc, out, err = await _communicate(
                [path, "-I", "-c", "import sys; print(sys.version.split()[0])"], "", self.timeout_s
            )
            if rc != 0:
                raise RuntimeUnavailable(f"interpreter check failed: {err.strip()[:200]}")
        except (RuntimeUnavailable, ExecutionFault) as e:
            self.state = RuntimeState.UNAVAILABLE
            self.error = f"Failed to load Python runtime: {e}"
            log.warning("%s", self.error)
            return False

        self._path = path
        self.version = out.strip()
        self.state = RuntimeState.READY
        log.info("python runtime ready (%s)", self.version)
        return True

    async def run(self, code: str) -> str:
        if not self.ready or self._path is None:
            raise RuntimeUnavailable(PY_NOT_READY)
        _, stdout, _ = await _communicate([self._path, "-I", "-c", PYTHON_HARNESS], code, self.timeout_s)
        report = _last_json_line(stdout)

        printed = (report.get("stdout") or "").rstrip("\n")
        if report.get("error"):
            lines = [printed] if printed else []
            raise ExecutionFault("\n".join(lines + [f"Python Error: {report['error']}"]))

        parts = [p for p in (printed, report.get("result")) if p]
        return "\n".join(parts) or PY_NO_OUTPUT


# -----------------------------------------------------------------------------
# Dispatch
# -----------------------------------------------------------------------------

class CodeRunner:
    """Runs lesson code by language and asks the tutor for feedback.

    One run at a time: a request while a run (or its feedback call) is in
    flight is rejected.
    """

    def __init__(
        self,
        tutor: Any = None,
        preview: Optional[PreviewSurface] = None,
        python: Optional[PythonRuntime] = None,
        node: Optional[NodeRuntime] = None,
        on_feedback: Optional[Callable[[FeedbackResponse], None]] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.tutor = tutor
        self.preview = preview or PreviewSurface()
        self.python = python or PythonRuntime(settings.python_executable, settings.run_timeout_s)
        self.node = node or NodeRuntime(settings.node_executable, settings.run_timeout_s)
        self.on_feedback = on_feedback

        self.state = RunState.IDLE
        self.last_result: Optional[RunResult] = None
        self.lesson_id: Optional[str] = None
        self._generation = 0

    def prepare(self, lesson: LessonView) -> None:
        """Called when a lesson opens; starts the Python load early."""
        self.lesson_id = lesson.id
        self._generation += 1
        if lesson.language == "python":
            self.python.ensure_loading()

    async def run(self, lesson: LessonView, code: str) -> RunResult:
        if self.state is not RunState.IDLE:
            return RunResult(RunState.FAILED, ALREADY_RUNNING, lesson.language, rejected=True)

        self.state = RunState.RUNNING
        generation = self._generation
        try:
            result = await self._execute(lesson, code)
            self.state = result.state
            self.last_result = result
            await self._request_feedback(lesson, code, result.output, generation)
        finally:
            self.state = RunState.IDLE
        return result

    async def _execute(self, lesson: LessonView, code: str) -> RunResult:
        language = lesson.language
        try:
            if language == "javascript":
                output = await self.node.run(code)
            elif language == "html":
                self.preview.write(code)
                output = HTML_RENDERED
            elif language == "css":
                self.preview.write(f"<style>\n{code}\n</style>")
                output = CSS_APPLIED
            elif language == "python":
                output = await self.python.run(code)
            else:
                return RunResult(RunState.FAILED, f"Unsupported language: {language}", language)
        except (RuntimeUnavailable, ExecutionFault) as e:
            return RunResult(RunState.FAILED, str(e), language)
        except Exception as e:
            log.exception("code runner failed for %s", language)
            return RunResult(RunState.FAILED, f"System Error: {e}", language)
        return RunResult(RunState.SUCCEEDED, output, language)

    async def _request_feedback(self, lesson: LessonView, code: str, output: str, generation: int) -> None:
        if self.tutor is None:
            return
        try:
            feedback = await self.tutor.code_feedback(lesson, code, output)
        except Exception:
            log.exception("code feedback request failed for lesson %s", lesson.id)
            return
        if generation != self._generation:
            log.debug("dropping feedback for lesson %s, runner moved on", lesson.id)
            return
        if self.on_feedback is not None:
            self.on_feedback(feedback)

    def close(self) -> None:
        self._generation += 1
