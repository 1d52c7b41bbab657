import pytest

from sss.__main__ import main


def test_missing_file(tmp_path, capsys):
    status = main([str(tmp_path / "nope.sss")])
    assert status == 1
    assert "Error: file not found:" in capsys.readouterr().err


def test_usage_without_arguments(capsys):
    assert main([]) == 2
    assert "usage" in capsys.readouterr().err


def test_exit_status_is_final_num(tmp_path):
    script = tmp_path / "status.sss"
    script.write_text("var a: num = 40;\na + 2;\n", encoding="utf-8")
    assert main([str(script)]) == 42


def test_arguments_become_arg(tmp_path, capsys):
    script = tmp_path / "args.sss"
    script.write_text('write(ARG[0] + "-" + ARG[1]);\n', encoding="utf-8")
    assert main([str(script), "first", "second"]) == 0
    assert capsys.readouterr().out == "first-second\n"


def test_errors_go_to_stderr(tmp_path, capsys):
    script = tmp_path / "bad.sss"
    script.write_text("const c: num = 1;\nc = 2;\n", encoding="utf-8")
    assert main([str(script)]) == 1
    err = capsys.readouterr().err
    assert err.startswith("Error on line 2, col 1: BindingError: cannot assign to constant 'c'")
    assert err.count("BindingError") == 1
