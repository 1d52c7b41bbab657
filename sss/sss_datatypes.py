"""
Defines the core data types for the SSS language.

This module holds the error taxonomy, the static type descriptors, the
abstract syntax tree produced by the transformer and the runtime scope used
by the evaluator. AST nodes are frozen dataclasses, one per grammar
production; each node owns its children and records its source location in
`loc`, which does not take part in equality.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

# =================================================================
# Errors
# =================================================================

class ScriptError(Exception):
    """Base class for every error the interpreter reports to a script author."""
    kind = "ScriptError"

    def __init__(self, message: str, loc: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.loc = loc

    def __str__(self):
        return f"{self.kind}: {self.message}"


class ScriptSyntaxError(ScriptError):
    kind = "SyntaxError"


class CheckError(ScriptError):
    """Raised by the type checker; aborts loading before any execution."""
    kind = "CheckError"


class TypeMismatchError(CheckError):
    kind = "TypeMismatchError"


class RedeclarationError(CheckError):
    kind = "RedeclarationError"


class BindingError(CheckError):
    kind = "BindingError"


class UndefinedNameError(BindingError):
    kind = "UndefinedNameError"


class EvaluationError(ScriptError):
    """A fatal error raised while a checked script is running."""
    kind = "EvaluationError"


class RuntimeTypeError(EvaluationError):
    kind = "RuntimeTypeError"


class ProcessLaunchError(ScriptError):
    kind = "ProcessLaunchError"


class StreamIOError(ScriptError):
    kind = "StreamIOError"


# =================================================================
# Types
# =================================================================

@dataclass(frozen=True)
class Type:
    """A static type: `num`, `str`, `pipe`, arrays of those, plus internal kinds."""
    base: str
    array: bool = False

    def __str__(self):
        return f"{self.base}[]" if self.array else self.base

    @property
    def element(self) -> 'Type':
        if not self.array:
            raise ValueError(f"{self} is not an array type")
        return Type(self.base)

    def array_of(self) -> 'Type':
        return Type(self.base, True)

    def accepts(self, other: 'Type') -> bool:
        """True when a value of type `other` may be stored where `self` is expected."""
        if self == other:
            return True
        # The empty array literal fits any array type.
        return self.array and other == EMPTY_ARRAY


NUM = Type("num")
STR = Type("str")
PIPE = Type("pipe")
RESULT = Type("result")
VOID = Type("void")
EMPTY_ARRAY = Type("empty", True)

SCALAR_TYPES = {"num": NUM, "str": STR, "pipe": PIPE}

# Fields of the record returned by `run`, resolved by name.
RESULT_FIELDS: Dict[str, Type] = {
    "exit_code": NUM,
    "stdout": PIPE,
    "stderr": PIPE,
}


# =================================================================
# Abstract Syntax Tree
# =================================================================

def _loc_field():
    return field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Literal:
    value: Union[int, float, str]
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class Identifier:
    name: str
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class ArrayLiteral:
    elements: Tuple[Any, ...]
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Any
    right: Any
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: Tuple[Any, ...]
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class MethodCall:
    receiver: Any
    name: str
    args: Tuple[Any, ...]
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class FieldAccess:
    receiver: Any
    name: str
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class Index:
    target: Any
    index: Any
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class Declaration:
    name: str
    type: Type
    value: Any
    const: bool = False
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class Assignment:
    name: str
    value: Any
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class ExprStatement:
    expr: Any
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class Block:
    statements: Tuple[Any, ...]
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class Param:
    name: str
    type: Type
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class FunctionDef:
    name: str
    params: Tuple[Param, ...]
    return_type: Optional[Type]
    body: Block
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class Program:
    items: Tuple[Any, ...]
    loc: Optional[dict] = _loc_field()

    @property
    def functions(self) -> Tuple[FunctionDef, ...]:
        return tuple(i for i in self.items if isinstance(i, FunctionDef))

    @property
    def statements(self) -> tuple:
        return tuple(i for i in self.items if not isinstance(i, FunctionDef))


# =================================================================
# Runtime Scope
# =================================================================

@dataclass
class Binding:
    value: Any
    type: Optional[Type] = None
    const: bool = False


class Scope:
    """A runtime scope: bindings for one block or call, chained to its parent.

    Lookup walks outward through `parent`; declaration always targets the
    scope it is called on.
    """
    def __init__(self, parent: Optional['Scope'] = None):
        self.bindings: Dict[str, Binding] = {}
        self.parent = parent

    def find_owner(self, name: str) -> Optional['Scope']:
        scope = self
        while scope is not None:
            if name in scope.bindings:
                return scope
            scope = scope.parent
        return None

    def __contains__(self, name: str) -> bool:
        return self.find_owner(name) is not None

    def __getitem__(self, name: str) -> Any:
        owner = self.find_owner(name)
        if owner is None:
            raise KeyError(name)
        return owner.bindings[name].value

    def lookup(self, name: str) -> Optional[Binding]:
        owner = self.find_owner(name)
        return owner.bindings[name] if owner is not None else None

    def declare(self, name: str, value: Any, type: Optional[Type] = None, const: bool = False,
                loc: Optional[dict] = None):
        if name in self.bindings:
            raise RedeclarationError(f"'{name}' is already declared in this scope", loc)
        self.bindings[name] = Binding(value, type, const)

    def assign(self, name: str, value: Any, loc: Optional[dict] = None):
        binding = self.lookup(name)
        if binding is None:
            raise UndefinedNameError(f"cannot assign to undeclared name '{name}'", loc)
        if binding.const:
            raise BindingError(f"cannot assign to constant '{name}'", loc)
        binding.value = value

    @property
    def root(self) -> 'Scope':
        scope = self
        while scope.parent is not None:
            scope = scope.parent
        return scope

    def __repr__(self):
        return f"<Scope {list(self.bindings)}>"
