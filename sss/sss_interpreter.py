"""
The SSS evaluator: an async tree-walking interpreter over a checked Program.
"""

import os
import sys
from typing import Any, Dict, List

from sss.sss_datatypes import (
    Scope, STR,
    Program, FunctionDef, Block, Declaration, Assignment, ExprStatement,
    BinaryOp, FunctionCall, MethodCall, FieldAccess, Index, ArrayLiteral,
    Literal, Identifier,
    ScriptError, EvaluationError, RuntimeTypeError, UndefinedNameError,
)
from sss.sss_pipes import Pipe, ConcatPipe, ZipPipe, RunResult, ProcessRuntime
from sss.sss_printer import Printer


def is_num(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def make_root_scope(cwd: str, args: List[str]) -> Scope:
    """The outermost scope holding CWD (mutable) and ARG (constant)."""
    root = Scope()
    root.declare("CWD", cwd, STR, const=False)
    root.declare("ARG", list(args), STR.array_of(), const=True)
    return root


class Evaluator:
    """The SSS execution engine."""

    def __init__(self, runtime: ProcessRuntime, config=None):
        self.runtime = runtime
        self.config = config if config is not None else runtime.config
        self.functions: Dict[str, FunctionDef] = {}
        self.printer = Printer()
        self.call_stack = []
        self.current_node = None
        self.last_value: Any = None

    def _push_frame(self, name, args, call_site_node):
        self.call_stack.append({
            'name': name,
            'args': args,
            'call_site': getattr(call_site_node, 'loc', None),
        })

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def _dbg(self, *parts):
        if self.config.debug:
            print("[DBG]", *parts, file=sys.stderr)

    # --- Program and statements ---

    async def run_program(self, program: Program, root: Scope) -> Any:
        """Execute top-level statements in order; returns the last expression statement's value."""
        self.functions = {fn.name: fn for fn in program.functions}
        global_scope = Scope(parent=root)
        self.last_value = None
        for stmt in program.statements:
            await self.exec_statement(stmt, global_scope)
        return self.last_value

    async def exec_statement(self, stmt, scope: Scope) -> Any:
        self.current_node = stmt
        match stmt:
            case Declaration(name=name, type=declared, value=value, const=const):
                result = await self.eval(value, scope)
                scope.declare(name, result, declared, const, stmt.loc)
                self._dbg("declare", name, declared, "const" if const else "var")
                return None
            case Assignment(name=name, value=value):
                result = await self.eval(value, scope)
                if name == "CWD" and scope.find_owner(name) is scope.root:
                    # Relative paths are taken from the previous CWD.
                    result = os.path.normpath(os.path.join(self._cwd(scope), result))
                scope.assign(name, result, stmt.loc)
                return None
            case ExprStatement(expr=expr):
                result = await self.eval(expr, scope)
                if isinstance(result, RunResult):
                    # A discarded run completes before the next statement.
                    if isinstance(expr, (FunctionCall, MethodCall)):
                        for channel in result.handle.channels:
                            await channel.discard()
                    await result.exit_code()
                self.last_value = result
                return result
            case Block(statements=statements):
                inner = Scope(parent=scope)
                for s in statements:
                    await self.exec_statement(s, inner)
                return None
        raise TypeError(f"Unknown statement node: {type(stmt).__name__}")

    # --- Expressions ---

    async def eval(self, node, scope: Scope) -> Any:
        """Evaluate an expression node to a runtime value."""
        self.current_node = node
        match node:
            case Literal(value=value):
                return value
            case Identifier(name=name):
                binding = scope.lookup(name)
                if binding is None:
                    raise UndefinedNameError(f"undefined name '{name}'", node.loc)
                return binding.value
            case ArrayLiteral(elements=elements):
                return [await self.eval(e, scope) for e in elements]
            case Index(target=target, index=index):
                seq = await self.eval(target, scope)
                i = await self.eval(index, scope)
                if not isinstance(seq, list) or not is_num(i):
                    raise RuntimeTypeError("indexing needs an array and a num", node.loc)
                if i != int(i) or not 0 <= int(i) < len(seq):
                    raise EvaluationError(f"index {self.printer.pformat(i)} out of range for array of length {len(seq)}", node.loc)
                return seq[int(i)]
            case BinaryOp(op=op, left=left, right=right):
                # Strictly left to right: the left operand is complete before the right starts.
                lhs = await self.eval(left, scope)
                rhs = await self.eval(right, scope)
                self.current_node = node
                return self.apply_operator(op, lhs, rhs, node)
            case FunctionCall(name=name, args=args):
                values = [await self.eval(a, scope) for a in args]
                self.current_node = node
                return await self.call(name, values, scope, node)
            case MethodCall(receiver=receiver, name=name, args=args):
                target = await self.eval(receiver, scope)
                values = [await self.eval(a, scope) for a in args]
                self.current_node = node
                return await self.call_method(target, name, values, scope, node)
            case FieldAccess(receiver=receiver, name=name):
                target = await self.eval(receiver, scope)
                if not isinstance(target, RunResult):
                    raise RuntimeTypeError(f"field '{name}' needs a run result", node.loc)
                try:
                    return await target.get_field(name)
                except AttributeError:
                    raise UndefinedNameError(f"run result has no field '{name}'", node.loc) from None
        raise TypeError(f"Unknown expression node: {type(node).__name__}")

    def apply_operator(self, op: str, lhs, rhs, node=None):
        loc = getattr(node, 'loc', None)
        if is_num(lhs) and is_num(rhs):
            match op:
                case "+":
                    return lhs + rhs
                case "-":
                    return lhs - rhs
                case "*":
                    return lhs * rhs
                case "/":
                    if rhs == 0:
                        raise EvaluationError("division by zero", loc)
                    result = lhs / rhs
                    # Exact integer division stays an int.
                    if isinstance(lhs, int) and isinstance(rhs, int) and lhs % rhs == 0:
                        return lhs // rhs
                    return result
                case "%":
                    if rhs == 0:
                        raise EvaluationError("modulo by zero", loc)
                    return lhs % rhs
        elif op == "+":
            if isinstance(lhs, str) and isinstance(rhs, str):
                return lhs + rhs
            if isinstance(lhs, Pipe) and isinstance(rhs, Pipe):
                return ConcatPipe(lhs, rhs)
            if isinstance(lhs, list) and isinstance(rhs, list):
                return lhs + rhs
        raise RuntimeTypeError(
            f"operator '{op}' cannot be applied to {self._type_name(lhs)} and {self._type_name(rhs)}", loc)

    def _type_name(self, value) -> str:
        if is_num(value):
            return "num"
        if isinstance(value, str):
            return "str"
        if isinstance(value, Pipe):
            return "pipe"
        if isinstance(value, list):
            return "array"
        if isinstance(value, RunResult):
            return "run result"
        return type(value).__name__

    # --- Calls ---

    def _cwd(self, scope: Scope) -> str:
        return scope.root["CWD"]

    async def call(self, name: str, args: list, scope: Scope, node=None) -> Any:
        loc = getattr(node, 'loc', None)
        match name:
            case "run":
                return await self.runtime.run(self._command(args[0], loc), self._cwd(scope))
            case "zip":
                self._require_pipes(args, "zip", loc)
                return ZipPipe(args[0], args[1])
            case "write":
                await self._write(args[0], args[1] if len(args) > 1 else None, scope, loc)
                return None

        fn = self.functions.get(name)
        if fn is None:
            raise UndefinedNameError(f"undefined function '{name}'", loc)
        return await self.call_function(fn, args, scope, node)

    async def call_function(self, fn: FunctionDef, args: list, scope: Scope, node=None) -> Any:
        # Function bodies see their parameters and the outermost scope.
        call_scope = Scope(parent=scope.root)
        for param, value in zip(fn.params, args):
            call_scope.declare(param.name, value, param.type)
        self._push_frame(fn.name, args, node)
        self._dbg("call", fn.name, "argc", len(args))
        try:
            if len(self.call_stack) > self.config.max_call_depth:
                raise EvaluationError(f"call depth limit ({self.config.max_call_depth}) exceeded in '{fn.name}'",
                                      getattr(node, 'loc', None))
            result = None
            for stmt in fn.body.statements:
                result = await self.exec_statement(stmt, call_scope)
        except ScriptError as e:
            # Frames are popped on the way out; keep the stack as it was at the failure.
            if getattr(e, 'call_stack', None) is None:
                e.call_stack = list(self.call_stack)
            raise
        finally:
            self._pop_frame()
        return result if fn.return_type is not None else None

    async def call_method(self, target, name: str, args: list, scope: Scope, node=None) -> Any:
        loc = getattr(node, 'loc', None)
        if not isinstance(target, Pipe):
            raise RuntimeTypeError(f"a {self._type_name(target)} has no method '{name}'", loc)
        match name:
            case "run":
                return await self.runtime.run(self._command(args[0], loc), self._cwd(scope), stdin=target)
            case "write":
                await self._write(target, args[0] if args else None, scope, loc)
                return None
            case "zip":
                self._require_pipes([target, *args], ".zip", loc)
                return ZipPipe(target, args[0])
        raise UndefinedNameError(f"pipe has no method '{name}'", loc)

    def _command(self, command, loc):
        if isinstance(command, str):
            return command
        if isinstance(command, list) and all(isinstance(a, str) for a in command):
            return command
        raise RuntimeTypeError("run expects a str or str[] command", loc)

    def _require_pipes(self, args, what, loc):
        if len(args) != 2 or not all(isinstance(a, Pipe) for a in args):
            raise RuntimeTypeError(f"{what} expects two pipes", loc)

    async def _write(self, value, path, scope: Scope, loc):
        if path is not None and not isinstance(path, str):
            raise RuntimeTypeError("write target path must be a str", loc)
        if not isinstance(value, Pipe):
            if not (is_num(value) or isinstance(value, (str, list))):
                raise RuntimeTypeError(f"cannot write a {self._type_name(value)}", loc)
            value = self.printer.pformat(value)
        await self.runtime.write(value, path, self._cwd(scope))
