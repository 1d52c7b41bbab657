"""
A pretty-printer for SSS syntax trees and runtime values.
"""

from sss.sss_datatypes import (
    Program, FunctionDef, Param, Block, Declaration, Assignment, ExprStatement,
    BinaryOp, FunctionCall, MethodCall, FieldAccess, Index, ArrayLiteral,
    Literal, Identifier, Type,
)


class Printer:
    """Formats AST nodes as canonical SSS source and runtime values for display."""

    def __init__(self, indent_width=4):
        self._indent_char = " " * indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._handlers.get(type(obj))
        if handler is not None:
            return handler(obj, level)
        if isinstance(obj, list):
            return self._pformat_list(obj, level)
        # Runtime objects (pipes, run results) describe themselves.
        return repr(obj)

    def _create_handlers(self):
        return {
            int: self._pformat_int,
            float: self._pformat_float,
            str: lambda o, l: o,
            bool: lambda o, l: "1" if o else "0",
            Type: lambda o, l: str(o),
            Program: self._pformat_program,
            FunctionDef: self._pformat_fun_def,
            Param: lambda o, l: f"{o.name}:{o.type}",
            Block: self._pformat_block,
            Declaration: self._pformat_declaration,
            Assignment: lambda o, l: f"{self._indent(l)}{o.name} = {self._expr(o.value)};",
            ExprStatement: lambda o, l: f"{self._indent(l)}{self._expr(o.expr)};",
            BinaryOp: lambda o, l: self._expr(o),
            FunctionCall: lambda o, l: self._expr(o),
            MethodCall: lambda o, l: self._expr(o),
            FieldAccess: lambda o, l: self._expr(o),
            Index: lambda o, l: self._expr(o),
            ArrayLiteral: lambda o, l: self._expr(o),
            Literal: lambda o, l: self._expr(o),
            Identifier: lambda o, l: o.name,
        }

    def _indent(self, level):
        return self._indent_char * level

    # --- Values ---

    def _pformat_int(self, obj, level):
        return str(obj)

    def _pformat_float(self, obj, level):
        if obj.is_integer():
            return str(int(obj))
        return repr(obj)

    def _pformat_list(self, obj, level):
        return "[" + ", ".join(self.pformat(v, level) for v in obj) + "]"

    # --- Statements ---

    def _pformat_program(self, obj, level):
        return "\n".join(self.pformat(item, level) for item in obj.items)

    def _pformat_fun_def(self, obj, level):
        params = ", ".join(self.pformat(p) for p in obj.params)
        ret = f" -> {obj.return_type}" if obj.return_type is not None else ""
        return f"{self._indent(level)}fun {obj.name}({params}){ret} {self._pformat_block(obj.body, level, inline=True)}"

    def _pformat_block(self, obj, level, inline=False):
        lines = [self.pformat(s, level + 1) for s in obj.statements]
        opener = "{" if inline else self._indent(level) + "{"
        return "\n".join([opener, *lines, self._indent(level) + "}"])

    def _pformat_declaration(self, obj, level):
        kw = "const" if obj.const else "var"
        return f"{self._indent(level)}{kw} {obj.name}:{obj.type} = {self._expr(obj.value)};"

    # --- Expressions ---

    def _expr(self, node):
        match node:
            case Literal(value=str() as s):
                return f'"{s}"'
            case Literal(value=float() as f):
                return repr(f)
            case Literal(value=v):
                return str(v)
            case Identifier(name=n):
                return n
            case ArrayLiteral(elements=els):
                return "[" + ", ".join(self._expr(e) for e in els) + "]"
            case BinaryOp(op=op, left=left, right=right):
                # Left operands chain naturally; a nested right operand needs parentheses.
                rhs = self._expr(right)
                if isinstance(right, BinaryOp):
                    rhs = f"({rhs})"
                return f"{self._expr(left)} {op} {rhs}"
            case FunctionCall(name=n, args=args):
                return f"{n}({self._arglist(args)})"
            case MethodCall(receiver=r, name=n, args=args):
                return f"{self._receiver(r)}.{n}({self._arglist(args)})"
            case FieldAccess(receiver=r, name=n):
                return f"{self._receiver(r)}.{n}"
            case Index(target=t, index=i):
                return f"{self._receiver(t)}[{self._expr(i)}]"
        raise TypeError(f"Cannot format {type(node).__name__} as an expression")

    def _receiver(self, node):
        text = self._expr(node)
        return f"({text})" if isinstance(node, BinaryOp) else text

    def _arglist(self, args):
        return ", ".join(self._expr(a) for a in args)
