# sss_runtime.py

import os
import re
import math
import asyncio
from pathlib import Path
from typing import Any, List, Optional, Literal, Dict
from dataclasses import dataclass, field

import yaml
from koine import Parser

from sss.sss_transformer import SSSTransformer
from sss.sss_checker import TypeChecker
from sss.sss_interpreter import Evaluator, make_root_scope, is_num
from sss.sss_pipes import ProcessRuntime
from sss.sss_printer import Printer
from sss.sss_datatypes import Program, ScriptError, ScriptSyntaxError, CheckError

GRAMMAR_PATH = Path(__file__).parent / "grammar" / "sss_grammar.yaml"

# ===================================================================
# 1. Configuration
# ===================================================================


def _env_flag(value: Optional[str]) -> bool:
    return bool(value) and value.strip().lower() not in ("0", "false", "no", "off")


@dataclass
class RuntimeConfig:
    """Tunables for the process runtime and the evaluator."""
    line_buffer: int = 1024
    line_limit: int = 1024 * 1024
    kill_timeout: float = 2.0
    max_call_depth: int = 100
    encoding: str = "utf-8"
    debug: bool = False

    @classmethod
    def from_env(cls, environ=None) -> 'RuntimeConfig':
        """Build a config from SSS_* environment variables, falling back to the defaults."""
        env = os.environ if environ is None else environ
        cfg = cls()
        if "SSS_LINE_BUFFER" in env:
            cfg.line_buffer = int(env["SSS_LINE_BUFFER"])
        if "SSS_LINE_LIMIT" in env:
            cfg.line_limit = int(env["SSS_LINE_LIMIT"])
        if "SSS_KILL_TIMEOUT" in env:
            cfg.kill_timeout = float(env["SSS_KILL_TIMEOUT"])
        if "SSS_MAX_CALL_DEPTH" in env:
            cfg.max_call_depth = int(env["SSS_MAX_CALL_DEPTH"])
        if "SSS_ENCODING" in env:
            cfg.encoding = env["SSS_ENCODING"]
        cfg.debug = _env_flag(env.get("SSS_DEBUG"))
        return cfg


# ===================================================================
# 2. Script Execution
# ===================================================================

Token = Dict[str, Any]


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)

    @property
    def exit_status(self) -> int:
        """Process exit status: 1 on error, a final num value modulo 256, or 0.

        Infinite and NaN values map to 1.
        """
        if self.status == 'error':
            return 1
        if is_num(self.value):
            if isinstance(self.value, float) and not math.isfinite(self.value):
                return 1
            return int(self.value) & 0xFF
        return 0

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


class ScriptRunner:
    """Parses, checks, and executes SSS scripts."""

    _parser: Optional[Parser] = None
    _transformer: Optional[SSSTransformer] = None

    def __init__(self, args: Optional[List[str]] = None, cwd: Optional[str] = None,
                 stdout=None, config: Optional[RuntimeConfig] = None):
        self.args = list(args or [])
        self.cwd = cwd or os.getcwd()
        self.stdout = stdout
        self.config = config or RuntimeConfig.from_env()

        if ScriptRunner._parser is None:
            with open(GRAMMAR_PATH, encoding="utf-8") as f:
                ScriptRunner._parser = Parser(yaml.safe_load(f))

        if ScriptRunner._transformer is None:
            ScriptRunner._transformer = SSSTransformer()

        self.parser = ScriptRunner._parser
        self.transformer = ScriptRunner._transformer
        self.evaluator: Optional[Evaluator] = None
        self.last_runtime: Optional[ProcessRuntime] = None
        self.side_effects: List[Dict] = []

    # --- Loading ---

    def parse(self, source: str) -> Program:
        """Parse and transform source text; raises ScriptSyntaxError."""
        try:
            parse_out = self.parser.parse(source)
        except Exception as e:
            raise ScriptSyntaxError(f"parse failed: {e}") from e
        if isinstance(parse_out, dict) and 'status' in parse_out:
            if parse_out.get('status') != 'success':
                message = parse_out.get('error_message') or parse_out.get('message') or "parse failed"
                raise ScriptSyntaxError(message, self._syntax_error_loc(parse_out, message))
            ast_node = parse_out.get('ast')
            if ast_node is None:
                raise ScriptSyntaxError("parser returned no syntax tree")
        else:
            ast_node = parse_out
        return self.transformer.transform(ast_node)

    @staticmethod
    def _syntax_error_loc(parse_out: Dict, message: str) -> Optional[Token]:
        node = parse_out.get('error_node') or {}
        if node.get('line'):
            return {'line': node.get('line'), 'col': node.get('col')}
        # koine embeds the position in the message as L<line>:C<col>
        m = re.search(r"L(\d+):C(\d+)", message)
        if m:
            return {'line': int(m.group(1)), 'col': int(m.group(2))}
        return None

    def check(self, source: str) -> Program:
        """Parse and type check without executing anything."""
        return TypeChecker().check(self.parse(source))

    # --- Error reporting ---

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            out.append(f"{prefix} {ln} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_stacktrace(self, e: Optional[ScriptError] = None) -> str:
        stack = getattr(e, 'call_stack', None) or getattr(self.evaluator, 'call_stack', None) or []
        if not stack:
            return ""
        pf = Printer().pformat
        frames = []
        for frame in stack:
            args_s = " ".join(pf(a) for a in frame.get('args') or [])
            frames.append(f"({frame.get('name')}{' ' + args_s if args_s else ''})")
        return "SSS stacktrace: " + " ".join(frames)

    def _format_error(self, e: ScriptError, source: str) -> tuple[str, Optional[dict]]:
        msg = str(e)
        loc = e.loc
        if loc is None and not isinstance(e, (ScriptSyntaxError, CheckError)):
            node = getattr(self.evaluator, 'current_node', None)
            loc = getattr(node, 'loc', None)
        token = None
        if loc and loc.get('line') is not None:
            token = {'line': loc.get('line'), 'col': loc.get('col')}
            context = self._source_context(source, token['line'], token['col'])
            if context:
                msg = f"{msg}\n{context}"
        st = self._format_stacktrace(e)
        if st:
            msg += "\n" + st
        return msg, token

    def _error_result(self, e: ScriptError, source: str) -> ExecutionResult:
        err_msg, err_token = self._format_error(e, source)
        self.side_effects.append({'topics': ['stderr'], 'message': err_msg})
        return ExecutionResult(
            status='error',
            error_message=err_msg,
            error_kind=e.kind,
            error_token=err_token,
            side_effects=self.side_effects,
        )

    # --- Execution ---

    async def handle_script(self, source_code: str) -> ExecutionResult:
        """The main entry point to execute a script."""
        self.side_effects = []
        self.evaluator = None
        try:
            program = self.check(source_code)
        except ScriptError as e:
            return self._error_result(e, source_code)

        runtime = ProcessRuntime(self.config, stdout=self.stdout)
        self.last_runtime = runtime
        self.evaluator = Evaluator(runtime, self.config)
        failure: Optional[ScriptError] = None
        result = None
        try:
            result = await self.evaluator.run_program(program, make_root_scope(self.cwd, self.args))
        except ScriptError as e:
            failure = e
            await runtime.shutdown(abort=True)
        except (Exception, asyncio.CancelledError):
            await runtime.shutdown(abort=True)
            raise
        else:
            await runtime.shutdown()

        for diagnostic in runtime.diagnostics:
            self.side_effects.append({'topics': ['stderr'], 'message': str(diagnostic)})
        if failure is not None:
            return self._error_result(failure, source_code)
        return ExecutionResult(status='success', value=result, side_effects=self.side_effects)
