"""
Static type checker and binder for SSS programs.

Walks a Program once before execution and validates:
  - declared types against initializer types
  - name resolution along the scope chain, duplicate declarations
  - `const` immutability
  - calls against user signatures and the builtin `run`/`write`/`zip`
  - pipe methods and run-record field access
Every expression's type is recorded and available via `type_of`.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from sss.sss_datatypes import (
    Type, NUM, STR, PIPE, RESULT, VOID, EMPTY_ARRAY, RESULT_FIELDS,
    Program, FunctionDef, Block, Declaration, Assignment, ExprStatement,
    BinaryOp, FunctionCall, MethodCall, FieldAccess, Index, ArrayLiteral,
    Literal, Identifier,
    TypeMismatchError, RedeclarationError, BindingError, UndefinedNameError,
)

BUILTIN_FUNCTIONS = frozenset({"run", "write", "zip"})
PIPE_METHODS = frozenset({"run", "write", "zip"})

# Types `write` can emit; pipes are streamed line by line.
WRITABLE = (STR, NUM, PIPE)


@dataclass
class Symbol:
    name: str
    type: Type
    const: bool = False


class TypeScope:
    """Static counterpart of the runtime Scope: names to declared types."""
    def __init__(self, parent: Optional['TypeScope'] = None):
        self.symbols: Dict[str, Symbol] = {}
        self.parent = parent

    def lookup(self, name: str) -> Optional[Symbol]:
        scope = self
        while scope is not None:
            if name in scope.symbols:
                return scope.symbols[name]
            scope = scope.parent
        return None

    def declare(self, symbol: Symbol):
        self.symbols[symbol.name] = symbol


def builtin_scope() -> TypeScope:
    """The outermost scope: CWD and ARG, supplied by the host before evaluation."""
    scope = TypeScope()
    scope.declare(Symbol("CWD", STR, const=False))
    scope.declare(Symbol("ARG", STR.array_of(), const=True))
    return scope


class TypeChecker:
    def __init__(self):
        self.functions: Dict[str, FunctionDef] = {}
        self._types: Dict[int, Type] = {}
        self._outer = builtin_scope()

    def type_of(self, node) -> Optional[Type]:
        return self._types.get(id(node))

    def check(self, program: Program) -> Program:
        """Validate the whole program; raise a CheckError subclass on the first problem."""
        self.functions = {}
        self._types = {}
        # Functions are visible everywhere, including before their definition.
        for fn in program.functions:
            if fn.name in BUILTIN_FUNCTIONS:
                raise RedeclarationError(f"'{fn.name}' is a builtin and cannot be redefined", fn.loc)
            if fn.name in self.functions:
                raise RedeclarationError(f"function '{fn.name}' is already defined", fn.loc)
            self.functions[fn.name] = fn

        for fn in program.functions:
            self._check_function(fn)

        global_scope = TypeScope(self._outer)
        for stmt in program.statements:
            self._check_statement(stmt, global_scope)
        return program

    # --- Definitions and statements ---

    def _check_function(self, fn: FunctionDef):
        scope = TypeScope(self._outer)
        for p in fn.params:
            self._declare(scope, p.name, p.type, False, p.loc)
        last_type = None
        for stmt in fn.body.statements:
            last_type = self._check_statement(stmt, scope)
        if fn.return_type is not None:
            trailing = fn.body.statements[-1] if fn.body.statements else None
            if not isinstance(trailing, ExprStatement) or not fn.return_type.accepts(last_type):
                raise TypeMismatchError(
                    f"function '{fn.name}' must end with an expression of type {fn.return_type}",
                    (trailing or fn).loc,
                )

    def _declare(self, scope: TypeScope, name: str, type_: Type, const: bool, loc):
        if name in scope.symbols:
            raise RedeclarationError(f"'{name}' is already declared in this scope", loc)
        if name in self._outer.symbols:
            raise RedeclarationError(f"'{name}' is a builtin name and cannot be redeclared", loc)
        scope.declare(Symbol(name, type_, const))

    def _check_statement(self, stmt, scope: TypeScope) -> Optional[Type]:
        """Check a statement; returns the expression type for expression statements."""
        match stmt:
            case Declaration(name=name, type=declared, value=value, const=const):
                actual = self._check_expr(value, scope)
                if not declared.accepts(actual):
                    raise TypeMismatchError(
                        f"cannot initialize '{name}' of type {declared} with a value of type {actual}",
                        stmt.loc,
                    )
                self._declare(scope, name, declared, const, stmt.loc)
                return None
            case Assignment(name=name, value=value):
                symbol = scope.lookup(name)
                if symbol is None:
                    raise UndefinedNameError(f"cannot assign to undeclared name '{name}'", stmt.loc)
                if symbol.const:
                    raise BindingError(f"cannot assign to constant '{name}'", stmt.loc)
                actual = self._check_expr(value, scope)
                if not symbol.type.accepts(actual):
                    raise TypeMismatchError(
                        f"cannot assign a value of type {actual} to '{name}' of type {symbol.type}",
                        stmt.loc,
                    )
                return None
            case ExprStatement(expr=expr):
                return self._check_expr(expr, scope)
            case Block(statements=statements):
                inner = TypeScope(scope)
                for s in statements:
                    self._check_statement(s, inner)
                return None
        raise TypeError(f"Unknown statement node: {type(stmt).__name__}")

    # --- Expressions ---

    def _check_expr(self, node, scope: TypeScope) -> Type:
        t = self._infer(node, scope)
        self._types[id(node)] = t
        return t

    def _value(self, node, scope: TypeScope, what: str) -> Type:
        """Check an expression whose value is used; void and run records are not values."""
        t = self._check_expr(node, scope)
        if t == VOID:
            raise TypeMismatchError(f"{what} has no value", node.loc)
        return t

    def _infer(self, node, scope: TypeScope) -> Type:
        match node:
            case Literal(value=str()):
                return STR
            case Literal():
                return NUM
            case Identifier(name=name):
                symbol = scope.lookup(name)
                if symbol is None:
                    raise UndefinedNameError(f"undefined name '{name}'", node.loc)
                return symbol.type
            case ArrayLiteral(elements=elements):
                return self._infer_array(node, elements, scope)
            case Index(target=target, index=index):
                t = self._value(target, scope, "indexed expression")
                if not t.array:
                    raise TypeMismatchError(f"cannot index a value of type {t}", node.loc)
                if self._value(index, scope, "index") != NUM:
                    raise TypeMismatchError("array index must be a num", index.loc)
                if t == EMPTY_ARRAY:
                    raise TypeMismatchError("cannot index an empty array literal", node.loc)
                return t.element
            case BinaryOp(op=op, left=left, right=right):
                lt = self._value(left, scope, "left operand")
                rt = self._value(right, scope, "right operand")
                return self._infer_binary(op, lt, rt, node)
            case FunctionCall(name=name, args=args):
                arg_types = [self._value(a, scope, f"argument to '{name}'") for a in args]
                return self._infer_call(node, name, arg_types)
            case MethodCall(receiver=receiver, name=name, args=args):
                rt = self._value(receiver, scope, "method receiver")
                arg_types = [self._value(a, scope, f"argument to '.{name}'") for a in args]
                return self._infer_method(node, rt, name, arg_types)
            case FieldAccess(receiver=receiver, name=name):
                rt = self._value(receiver, scope, "field receiver")
                if rt != RESULT:
                    raise TypeMismatchError(f"a value of type {rt} has no field '{name}'", node.loc)
                if name not in RESULT_FIELDS:
                    raise UndefinedNameError(
                        f"run result has no field '{name}' (expected one of: {', '.join(RESULT_FIELDS)})",
                        node.loc,
                    )
                return RESULT_FIELDS[name]
        raise TypeError(f"Unknown expression node: {type(node).__name__}")

    def _infer_array(self, node, elements, scope) -> Type:
        if not elements:
            return EMPTY_ARRAY
        types = [self._value(e, scope, "array element") for e in elements]
        first = types[0]
        if first.array or first == RESULT:
            raise TypeMismatchError(f"arrays cannot hold values of type {first}", node.loc)
        for t, e in zip(types[1:], elements[1:]):
            if t != first:
                raise TypeMismatchError(f"array elements must all be {first}, found {t}", e.loc)
        return first.array_of()

    def _infer_binary(self, op: str, lt: Type, rt: Type, node) -> Type:
        if lt == NUM and rt == NUM:
            return NUM
        if op == "+":
            if lt == rt and lt in (STR, PIPE):
                return lt
            if lt.array and rt.array:
                if lt == EMPTY_ARRAY:
                    return rt
                if rt.accepts(lt) or lt.accepts(rt):
                    return lt
        raise TypeMismatchError(f"operator '{op}' cannot be applied to {lt} and {rt}", node.loc)

    def _check_command(self, node, t: Type, what: str):
        if t not in (STR, STR.array_of(), EMPTY_ARRAY):
            raise TypeMismatchError(f"{what} expects a str or str[] command, got {t}", node.loc)

    def _infer_call(self, node: FunctionCall, name: str, arg_types: List[Type]) -> Type:
        match name:
            case "run":
                self._arity(node, name, arg_types, 1)
                self._check_command(node, arg_types[0], "run")
                return RESULT
            case "zip":
                self._arity(node, name, arg_types, 2)
                if arg_types != [PIPE, PIPE]:
                    raise TypeMismatchError(
                        f"zip expects (pipe, pipe), got ({', '.join(map(str, arg_types))})", node.loc)
                return PIPE
            case "write":
                if len(arg_types) not in (1, 2):
                    raise TypeMismatchError(f"write expects 1 or 2 arguments, got {len(arg_types)}", node.loc)
                if arg_types[0] not in WRITABLE:
                    raise TypeMismatchError(f"cannot write a value of type {arg_types[0]}", node.loc)
                if len(arg_types) == 2 and arg_types[1] != STR:
                    raise TypeMismatchError("write target path must be a str", node.loc)
                return VOID

        fn = self.functions.get(name)
        if fn is None:
            raise UndefinedNameError(f"undefined function '{name}'", node.loc)
        self._arity(node, name, arg_types, len(fn.params))
        for param, actual in zip(fn.params, arg_types):
            if not param.type.accepts(actual):
                raise TypeMismatchError(
                    f"argument '{param.name}' of '{name}' expects {param.type}, got {actual}", node.loc)
        return fn.return_type if fn.return_type is not None else VOID

    def _infer_method(self, node: MethodCall, receiver: Type, name: str, arg_types: List[Type]) -> Type:
        if receiver != PIPE:
            raise TypeMismatchError(f"a value of type {receiver} has no method '{name}'", node.loc)
        match name:
            case "run":
                self._arity(node, ".run", arg_types, 1)
                self._check_command(node, arg_types[0], ".run")
                return RESULT
            case "write":
                if len(arg_types) > 1:
                    raise TypeMismatchError(f".write expects at most 1 argument, got {len(arg_types)}", node.loc)
                if arg_types and arg_types[0] != STR:
                    raise TypeMismatchError(".write target path must be a str", node.loc)
                return VOID
            case "zip":
                self._arity(node, ".zip", arg_types, 1)
                if arg_types[0] != PIPE:
                    raise TypeMismatchError(f".zip expects a pipe, got {arg_types[0]}", node.loc)
                return PIPE
        raise UndefinedNameError(
            f"pipe has no method '{name}' (expected one of: {', '.join(sorted(PIPE_METHODS))})", node.loc)

    def _arity(self, node, name: str, arg_types: List[Type], expected: int):
        if len(arg_types) != expected:
            raise TypeMismatchError(f"'{name}' expects {expected} argument(s), got {len(arg_types)}", node.loc)
