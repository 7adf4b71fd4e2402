import pytest

from flowgate.errors import ExpressionError
from flowgate.expressions import ExpressionScope, compile_expression, evaluate
from flowgate.model import EventKind, RunContext


def scope(**kw):
    ctx = RunContext(
        event=kw.pop("event", EventKind.PULL_REQUEST),
        ref=kw.pop("ref", "refs/heads/main"),
        actor=kw.pop("actor", "octocat"),
        workflow="CI",
        number="42",
    )
    return ExpressionScope(context=ctx, **kw)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("event == 'pull_request'", True),
        ("event != 'pull_request'", False),
        ("event == 'PULL_REQUEST'", True),
        ("startsWith(ref, 'refs/heads/')", True),
        ("endsWith(ref, '/release')", False),
        ("contains(actor, 'cat')", True),
        ("number == 42", True),
        ("!(event == 'push') && workflow == 'CI'", True),
        ("event == 'push' || event == 'merge_group'", False),
        ("true && !false", True),
        ("null", False),
    ],
)
def test_context_expressions(text, expected):
    assert evaluate(text, scope()) is expected


def test_matrix_values():
    s = scope(matrix={"os": "macos-14", "py": "3.12"})
    assert evaluate("matrix.os == 'macos-14' && matrix.py != '3.11'", s)
    assert not evaluate("matrix.missing == 'x'", s)


def test_function_names_are_case_insensitive():
    s = scope(matrix={"os": "windows-x86_64"})
    assert evaluate("startswith(matrix.os, 'windows-x86_64')", s)
    assert evaluate("STARTSWITH(matrix.os, 'windows') && endswith(matrix.os, 'x86_64')", s)
    assert compile_expression("Always()").uses_status_functions


def test_double_quoted_literals():
    assert evaluate('actor == "José"', scope(actor="José"))
    assert evaluate('actor == "say \\"hi\\""', scope(actor='say "hi"'))
    assert not evaluate('actor == "Jos"', scope(actor="José"))


def test_needs_results():
    s = scope(needs={"build": "success", "lint": "failure"})
    assert evaluate("needs.build.result == 'success'", s)
    assert evaluate("contains(needs.*.result, 'failure')", s)
    assert not evaluate("contains(needs.*.result, 'cancelled')", s)


@pytest.mark.parametrize(
    "text, kw, expected",
    [
        ("always()", {"ok": False, "run_cancelled": True}, True),
        ("success()", {"ok": True}, True),
        ("success()", {"ok": False}, False),
        ("success()", {"ok": True, "run_cancelled": True}, False),
        ("failure()", {"failed": True}, True),
        ("failure()", {}, False),
        ("cancelled()", {"run_cancelled": True}, True),
    ],
)
def test_status_functions(text, kw, expected):
    assert evaluate(text, scope(**kw)) is expected


def test_uses_status_functions():
    assert compile_expression("always() && event == 'merge_group'").uses_status_functions
    assert compile_expression("!cancelled()").uses_status_functions
    assert not compile_expression("event == 'merge_group'").uses_status_functions
    assert not compile_expression("contains(needs.*.result, 'failure')").uses_status_functions


def test_compile_is_cached():
    assert compile_expression("event == 'push'") is compile_expression("event == 'push'")


@pytest.mark.parametrize(
    "text",
    [
        "",
        "event ==",
        "event = 'push'",
        "secrets.TOKEN == 'x'",
        "toJSON(event)",
        "(event == 'push'",
        "event == 'push' extra",
    ],
)
def test_invalid_expressions(text):
    with pytest.raises(ExpressionError):
        compile_expression(text)


def test_bad_needs_path_fails_at_evaluation():
    with pytest.raises(ExpressionError):
        evaluate("needs.build == 'success'", scope())
