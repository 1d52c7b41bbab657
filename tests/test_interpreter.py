import io

import pytest

from sss.sss_runtime import ScriptRunner, RuntimeConfig
from sss.sss_datatypes import (
    Literal, BinaryOp, Scope, STR, RuntimeTypeError, BindingError, UndefinedNameError, RedeclarationError,
)
from sss.sss_interpreter import Evaluator, make_root_scope
from sss.sss_pipes import ProcessRuntime


async def run_sss(src: str, args=None, **kwargs):
    out = io.StringIO()
    runner = ScriptRunner(args=args or [], stdout=out, config=kwargs.pop("config", RuntimeConfig()), **kwargs)
    res = await runner.handle_script(src)
    return res, out.getvalue()


def assert_ok(res, expected=None):
    assert res.status == 'success', f"expected success, got {res.status}: {res.error_message}"
    if expected is not None:
        assert res.value == expected


def assert_error(res, kind):
    assert res.status == 'error', f"expected error, got success: {res.value!r}"
    assert res.error_kind == kind, res.error_message


# --- Arithmetic ---

@pytest.mark.asyncio
async def test_operators_evaluate_left_to_right():
    res, _ = await run_sss("2 + 3 * 4;")
    assert_ok(res, 20)


@pytest.mark.asyncio
@pytest.mark.parametrize("src, expected", [
    ("10 - 4 - 3;", 3),
    ("7 / 2;", 3.5),
    ("8 / 2;", 4),
    ("7 % 4;", 3),
    ("1. + 1;", 2.0),
    ("2 * (3 + 4);", 14),
])
async def test_numeric_results(src, expected):
    res, _ = await run_sss(src)
    assert_ok(res, expected)


@pytest.mark.asyncio
async def test_exact_division_stays_integral():
    res, _ = await run_sss("8 / 2;")
    assert_ok(res)
    assert isinstance(res.value, int)


@pytest.mark.asyncio
@pytest.mark.parametrize("src", ["1 / 0;", "1 % 0;"])
async def test_division_by_zero_is_an_evaluation_error(src):
    res, _ = await run_sss(src)
    assert_error(res, "EvaluationError")


# --- Strings and arrays ---

@pytest.mark.asyncio
async def test_string_concatenation():
    res, _ = await run_sss('var s: str = "ab"; s = s + "cd"; s;')
    assert_ok(res, "abcd")


@pytest.mark.asyncio
async def test_arg_indexing():
    res, _ = await run_sss('ARG[1] + ARG[0];', args=["x", "y"])
    assert_ok(res, "yx")


@pytest.mark.asyncio
async def test_array_concatenation_and_index():
    res, _ = await run_sss('var a: str[] = ["a"]; a = a + ["b", "c"]; a[2];')
    assert_ok(res, "c")


@pytest.mark.asyncio
async def test_index_out_of_range():
    res, _ = await run_sss("ARG[3];", args=["only"])
    assert_error(res, "EvaluationError")
    assert "out of range" in res.error_message


# --- Bindings and scopes ---

@pytest.mark.asyncio
async def test_const_reassignment_fails_before_execution():
    res, out = await run_sss('write("side effect"); const x: num = 1; x = 2;')
    assert_error(res, "BindingError")
    assert out == ""


@pytest.mark.asyncio
async def test_undeclared_assignment_fails_before_execution():
    res, out = await run_sss('write("side effect"); y = 1;')
    assert_error(res, "UndefinedNameError")
    assert out == ""


@pytest.mark.asyncio
async def test_block_scope_shadows_and_is_discarded():
    src = """
    var x: num = 1;
    {
        var x: num = 10;
        x = x + 1;
    }
    x;
    """
    res, _ = await run_sss(src)
    assert_ok(res, 1)


@pytest.mark.asyncio
async def test_assignment_in_block_updates_outer_binding():
    res, _ = await run_sss("var x: num = 1; { x = x + 41; } x;")
    assert_ok(res, 42)


@pytest.mark.asyncio
async def test_cwd_is_preset(tmp_path):
    res, _ = await run_sss("CWD;", cwd=str(tmp_path))
    assert_ok(res, str(tmp_path))


@pytest.mark.asyncio
async def test_relative_cwd_assignment_resolves_against_previous_cwd(tmp_path):
    res, _ = await run_sss('CWD = "sub"; CWD = "deeper/../leaf"; CWD;', cwd=str(tmp_path))
    assert_ok(res, str(tmp_path / "sub" / "leaf"))


@pytest.mark.asyncio
async def test_absolute_cwd_assignment_replaces_cwd(tmp_path):
    res, _ = await run_sss(f'CWD = "sub"; CWD = "{tmp_path}/other/"; CWD;', cwd=str(tmp_path))
    assert_ok(res, str(tmp_path / "other"))


@pytest.mark.asyncio
async def test_cwd_assignment_inside_function_updates_root(tmp_path):
    src = 'fun enter(dir: str) { CWD = dir; } enter("a"); enter("b"); CWD;'
    res, _ = await run_sss(src, cwd=str(tmp_path))
    assert_ok(res, str(tmp_path / "a" / "b"))


# --- Functions ---

@pytest.mark.asyncio
async def test_function_call_before_definition():
    src = 'double(21); fun double(n: num) -> num { n * 2; }'
    res, _ = await run_sss(src)
    assert_ok(res, 42)


@pytest.mark.asyncio
async def test_function_returns_trailing_expression():
    src = """
    fun describe(name: str, n: num) -> str {
        var prefix: str = name + "=";
        prefix + ARG[n];
    }
    describe("second", 1);
    """
    res, _ = await run_sss(src, args=["a", "b"])
    assert_ok(res, "second=b")


@pytest.mark.asyncio
async def test_nested_calls():
    src = """
    fun sum_to(n: num, acc: num) -> num {
        acc + n;
    }
    fun twice(n: num) -> num { sum_to(n, n); }
    twice(5);
    """
    res, _ = await run_sss(src)
    assert_ok(res, 10)


@pytest.mark.asyncio
async def test_call_depth_limit():
    src = "fun forever(n: num) -> num { forever(n + 1); } forever(0);"
    res, _ = await run_sss(src, config=RuntimeConfig(max_call_depth=25))
    assert_error(res, "EvaluationError")
    assert "call depth" in res.error_message
    assert "SSS stacktrace: (forever 0) (forever 1)" in res.error_message


@pytest.mark.asyncio
async def test_function_without_return_type_yields_nothing():
    res, out = await run_sss('fun hello() { write("hello"); 5; } hello();')
    assert_ok(res)
    assert res.value is None
    assert out == "hello\n"


# --- write ---

@pytest.mark.asyncio
async def test_write_values_to_stdout():
    res, out = await run_sss('write("text"); write(3); write(2.5); write(6 / 2);')
    assert_ok(res)
    assert out == "text\n3\n2.5\n3\n"


@pytest.mark.asyncio
async def test_write_to_file_relative_to_cwd(tmp_path):
    res, _ = await run_sss('write("saved", "note.txt");', cwd=str(tmp_path))
    assert_ok(res)
    assert (tmp_path / "note.txt").read_text() == "saved\n"


# --- Exit status ---

@pytest.mark.asyncio
async def test_exit_status_from_final_num_statement():
    res, _ = await run_sss("var a: num = 1; a + 2;")
    assert res.exit_status == 3


@pytest.mark.asyncio
async def test_exit_status_defaults():
    res, _ = await run_sss('var a: num = 1; "done";')
    assert res.exit_status == 0
    res, _ = await run_sss("1 / 0;")
    assert res.exit_status == 1


# --- Evaluator directly ---

def test_apply_operator_rejects_mixed_operands():
    evaluator = Evaluator(ProcessRuntime(RuntimeConfig()))
    node = BinaryOp("+", Literal(1), Literal("a"))
    with pytest.raises(RuntimeTypeError):
        evaluator.apply_operator("+", 1, "a", node)


# --- Scope ---

def test_scope_assign_updates_owning_binding():
    root = make_root_scope("/tmp", [])
    root.declare("x", 1)
    inner = Scope(parent=root)
    inner.assign("x", 2)
    assert root["x"] == 2
    assert "x" not in inner.bindings


def test_scope_assign_errors_carry_location():
    root = make_root_scope("/tmp", ["a"])
    loc = {'line': 3, 'col': 5}
    with pytest.raises(BindingError) as const_err:
        root.assign("ARG", ["b"], loc)
    assert const_err.value.loc == loc
    assert root["ARG"] == ["a"]
    with pytest.raises(UndefinedNameError) as missing_err:
        Scope(parent=root).assign("nope", 1, loc)
    assert missing_err.value.loc == loc


def test_scope_redeclaration_in_same_scope():
    scope = Scope()
    scope.declare("s", "a", STR)
    with pytest.raises(RedeclarationError):
        scope.declare("s", "b", STR)
    Scope(parent=scope).declare("s", "c", STR)
    assert scope["s"] == "a"
