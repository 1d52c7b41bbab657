import pytest

from sss.sss_printer import Printer
from sss.sss_datatypes import (
    Program, FunctionDef, Param, Block, Declaration, Assignment, ExprStatement,
    BinaryOp, FunctionCall, MethodCall, FieldAccess, Index, ArrayLiteral,
    Literal, Identifier, NUM, STR, PIPE,
)
from sss.sss_pipes import FlowControl, LineChannel, StreamPipe, ZipPipe


@pytest.fixture
def printer():
    return Printer()


@pytest.mark.parametrize("value, expected", [
    (3, "3"),
    (2.5, "2.5"),
    (4.0, "4"),
    ("plain text", "plain text"),
    (["a", 1], "[a, 1]"),
    ([], "[]"),
    (STR.array_of(), "str[]"),
])
def test_values(printer, value, expected):
    assert printer.pformat(value) == expected


def test_expressions(printer):
    expr = MethodCall(
        BinaryOp("+", Identifier("a"), Identifier("b")),
        "run",
        (ArrayLiteral((Literal("sort"), Literal("-r"))),),
    )
    assert printer.pformat(expr) == '(a + b).run(["sort", "-r"])'


def test_right_nested_binary_operation_is_parenthesized(printer):
    left_nested = BinaryOp("*", BinaryOp("+", Literal(2), Literal(3)), Literal(4))
    right_nested = BinaryOp("+", Literal(2), BinaryOp("*", Literal(3), Literal(4)))
    assert printer.pformat(left_nested) == "2 + 3 * 4"
    assert printer.pformat(right_nested) == "2 + (3 * 4)"


def test_field_access_and_index(printer):
    assert printer.pformat(FieldAccess(FunctionCall("run", (Literal("ls"),)), "stdout")) == 'run("ls").stdout'
    assert printer.pformat(Index(Identifier("ARG"), Literal(0))) == "ARG[0]"
    assert printer.pformat(Literal(1.5)) == "1.5"


def test_program(printer):
    program = Program((
        FunctionDef("f", (Param("p", PIPE),), NUM, Block((ExprStatement(Literal(1)),))),
        Declaration("x", NUM, Literal(1)),
        Declaration("s", STR, Literal("a"), const=True),
        Block((Assignment("x", BinaryOp("-", Identifier("x"), Literal(1))),)),
    ))
    assert printer.pformat(program) == "\n".join([
        "fun f(p:pipe) -> num {",
        "    1;",
        "}",
        "var x:num = 1;",
        'const s:str = "a";',
        "{",
        "    x = x - 1;",
        "}",
    ])


def test_indent_width(printer):
    block = Block((ExprStatement(Identifier("a")),))
    assert Printer(indent_width=2).pformat(block) == "{\n  a;\n}"


@pytest.mark.asyncio
async def test_runtime_objects_describe_themselves(printer):
    flow = FlowControl()
    out = StreamPipe(LineChannel(flow, label="ls.stdout"))
    err = StreamPipe(LineChannel(flow))
    assert printer.pformat(out) == "<pipe ls.stdout>"
    assert printer.pformat(err) == "<pipe>"
    assert printer.pformat(ZipPipe(out, err)) == "zip(<pipe ls.stdout>, <pipe>)"
