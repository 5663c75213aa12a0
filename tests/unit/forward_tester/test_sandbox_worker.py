import json

import pytest

from forward_tester.sandbox.worker import (
    PolicyViolation,
    check_source,
    extract_result,
    handle_request,
    to_jsonable,
)

DATA = {"open": [1.0, 2.0, 3.0], "high": [1.0, 2.0, 3.0], "low": [1.0, 2.0, 3.0], "close": [1.0, 2.0, 3.0], "volume": [1, 1, 1]}


def _request(code):
    return json.dumps({"code": code, "data": DATA})


@pytest.mark.parametrize(
    "code",
    [
        "import os",
        "import subprocess as sp",
        "from socket import socket",
        "from . import x",
        "x = ().__class__.__bases__",
        "open('/etc/passwd')",
        "eval('1+1')",
        "__import__('os')",
        "getattr(data, 'keys')",
    ],
)
def test_policy_rejects_dangerous_code(code):
    with pytest.raises(PolicyViolation):
        check_source(code)


def test_policy_allows_math_and_statistics():
    check_source("import math\nfrom statistics import mean\nx = math.sqrt(mean([1, 4]))")


def test_syntax_errors_surface():
    with pytest.raises(SyntaxError):
        check_source("def broken(:")


def test_extract_result_prefers_result_variable():
    assert extract_result({"result": {"entry": [True]}, "entry": [False]}) == {"entry": [True]}


def test_extract_result_calls_strategy_logic():
    namespace = {"data": DATA, "strategy_logic": lambda d: {"entry": [False] * len(d["close"])}}
    assert extract_result(namespace) == {"entry": [False, False, False]}


def test_extract_result_assembles_loose_variables():
    namespace = {"data": DATA, "entry": [True], "trade_direction": ["BUY"]}
    assert extract_result(namespace) == {"entry": [True], "direction": ["BUY"]}


def test_extract_result_none_when_nothing_defined():
    assert extract_result({"data": DATA}) is None


def test_to_jsonable_converts_nan_and_tuples():
    assert to_jsonable({"a": (1, float("nan"), True)}) == {"a": [1, None, True]}
    with pytest.raises(TypeError):
        to_jsonable({"a": object()})


def test_handle_request_runs_strategy_logic_with_helpers():
    code = (
        "def strategy_logic(data):\n"
        "    fast = ema(data['close'], 2)\n"
        "    n = len(data['close'])\n"
        "    entry = [i == n - 1 for i in range(n)]\n"
        "    direction = [BUY if e else None for e in entry]\n"
        "    return {'entry': entry, 'exit': [False] * n, 'direction': direction}\n"
    )
    response = handle_request(_request(code))
    assert response == {
        "result": {"entry": [False, False, True], "exit": [False, False, False], "direction": [None, None, "BUY"]}
    }


def test_handle_request_reports_runtime_errors():
    response = handle_request(_request("result = 1 / 0"))
    assert response["error_type"] == "StrategyRuntimeError"
    assert "ZeroDivisionError" in response["error"]


def test_handle_request_reports_policy_violation():
    response = handle_request(_request("import os\nresult = None"))
    assert response["error_type"] == "PolicyViolation"


def test_handle_request_rejects_malformed_request():
    assert handle_request("not json")["error_type"] == "ProtocolError"
    assert handle_request(json.dumps({"code": "x = 1"}))["error_type"] == "ProtocolError"


def test_guarded_import_blocks_runtime_import_tricks():
    # the allowlist also applies to imports resolved at runtime
    response = handle_request(_request("import math\nresult = {'entry': [math.isnan(1.0)] * 3}"))
    assert response == {"result": {"entry": [False, False, False]}}


def test_print_goes_to_stderr(capsys):
    response = handle_request(_request("print('hello')\nresult = None"))
    captured = capsys.readouterr()
    assert "hello" in captured.err
    assert "hello" not in captured.out
    assert response == {"result": None}


FRAME_WALK = (
    "def gen():\n"
    "    yield 1\n"
    "g = gen()\n"
    "frame = g.gi_frame.f_back.f_back\n"
    "opener = frame.f_globals['builtins'].open\n"
    "result = {'entry': [opener('/etc/passwd').read()]}\n"
)


@pytest.mark.parametrize(
    "code",
    [
        FRAME_WALK,
        "def f():\n    pass\nx = f.func_globals",
        "try:\n    1 / 0\nexcept ZeroDivisionError as e:\n    x = e.tb_frame",
        "async def c():\n    pass\nx = c().cr_frame",
        "x = ema.co_consts",
        "x = '{0.keys}'.format(data)",
        "x = '{a}'.format_map(data)",
        "x = TechnicalAnalysis.mro()",
        "import statistics\nx = statistics._sum",
    ],
)
def test_policy_rejects_introspection_attributes(code):
    with pytest.raises(PolicyViolation):
        check_source(code)


def test_frame_walk_is_rejected_before_running():
    response = handle_request(_request(FRAME_WALK))
    assert response["error_type"] == "PolicyViolation"
    assert "is not allowed" in response["error"]


def test_exposed_modules_hide_their_imports():
    response = handle_request(_request("import statistics\nresult = statistics.sys"))
    assert response["error_type"] == "StrategyRuntimeError"
    assert "AttributeError" in response["error"]


def test_from_import_of_allowed_module_still_works():
    response = handle_request(_request("from statistics import mean\nresult = {'entry': [mean([1, 3]) == 2] * 3}"))
    assert response == {"result": {"entry": [True, True, True]}}
