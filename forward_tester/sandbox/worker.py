"""
Child-process entry point for running one strategy evaluation.

Invoked as `python -I -m forward_tester.sandbox.worker`. Reads
{"code": str, "data": {open, high, low, close, volume}} as JSON on stdin and
writes exactly one JSON object on stdout:

    {"result": <whatever the strategy produced>}
    {"error": "...", "error_type": "..."}

Only the standard library and the indicator helpers are imported here.
"""

import argparse
import ast
import builtins
import json
import math
import resource
import statistics
import sys
import types

from forward_tester.sandbox.indicators import TechnicalAnalysis, atr, crossover, crossunder, ema, rsi, sma

ALLOWED_IMPORTS = frozenset({"math", "statistics"})

BLOCKED_NAMES = frozenset({
    "breakpoint", "compile", "delattr", "dir", "eval", "exec", "exit", "getattr",
    "globals", "help", "input", "locals", "memoryview", "open", "quit", "setattr", "vars",
})

# Frame, code and traceback introspection leads back to the worker's globals
BLOCKED_ATTRIBUTE_PREFIXES = ("_", "gi_", "cr_", "ag_", "f_", "tb_", "co_", "func_", "im_")

BLOCKED_ATTRIBUTES = frozenset({"format", "format_map", "mro"})


def _public_view(module: types.ModuleType) -> types.SimpleNamespace:
    """Expose a module's public functions and constants without its imported modules."""
    return types.SimpleNamespace(**{
        name: value
        for name, value in vars(module).items()
        if not name.startswith("_") and not isinstance(value, types.ModuleType)
    })


SAFE_MODULES = {
    "math": _public_view(math),
    "statistics": _public_view(statistics),
}

SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bool", "callable", "dict", "divmod", "enumerate", "filter",
    "float", "frozenset", "hasattr", "int", "isinstance", "iter", "len", "list", "map",
    "max", "min", "next", "pow", "range", "reversed", "round", "set", "slice", "sorted",
    "str", "sum", "tuple", "zip",
    "ArithmeticError", "Exception", "IndexError", "KeyError", "TypeError", "ValueError",
    "ZeroDivisionError",
)


class PolicyViolation(Exception):
    """Strategy source uses something outside the sandbox allowlist."""
    pass


def _root_module(name: str) -> str:
    return (name or "").split(".")[0]


def check_source(source: str) -> ast.Module:
    """
    Parse strategy source and enforce the import and attribute policy.

    Raises SyntaxError for unparsable code and PolicyViolation otherwise.
    """
    tree = ast.parse(source, filename="<strategy>", mode="exec")
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                if _root_module(alias.name) not in ALLOWED_IMPORTS:
                    raise PolicyViolation(f"import of '{alias.name}' is not allowed (line {node.lineno})")
        elif isinstance(node, ast.ImportFrom):
            if node.level or _root_module(node.module) not in ALLOWED_IMPORTS:
                raise PolicyViolation(f"import from '{node.module}' is not allowed (line {node.lineno})")
        elif isinstance(node, ast.Attribute):
            if node.attr.startswith(BLOCKED_ATTRIBUTE_PREFIXES) or node.attr in BLOCKED_ATTRIBUTES:
                raise PolicyViolation(f"access to '{node.attr}' is not allowed (line {node.lineno})")
        elif isinstance(node, ast.Name):
            if node.id in BLOCKED_NAMES or node.id.startswith("__"):
                raise PolicyViolation(f"use of '{node.id}' is not allowed (line {node.lineno})")
    return tree


def _guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
    if level or name not in SAFE_MODULES:
        raise ImportError(f"import of '{name}' is not allowed")
    return SAFE_MODULES[name]


def _stderr_print(*args, **kwargs):
    # stdout carries the result document
    kwargs["file"] = sys.stderr
    print(*args, **kwargs)


def safe_builtins() -> dict:
    allowed = {name: getattr(builtins, name) for name in SAFE_BUILTIN_NAMES}
    allowed["__import__"] = _guarded_import
    allowed["__build_class__"] = builtins.__build_class__
    allowed["print"] = _stderr_print
    return allowed


def build_namespace(data: dict) -> dict:
    return {
        "__builtins__": safe_builtins(),
        "__name__": "strategy",
        "data": data,
        "math": SAFE_MODULES["math"],
        "statistics": SAFE_MODULES["statistics"],
        "TechnicalAnalysis": TechnicalAnalysis,
        "sma": sma,
        "ema": ema,
        "rsi": rsi,
        "atr": atr,
        "crossover": crossover,
        "crossunder": crossunder,
        "BUY": "BUY",
        "SELL": "SELL",
    }


def extract_result(namespace: dict):
    """
    Locate the strategy output.

    `result` wins, then a callable `strategy_logic(data)`, then loose
    entry/exit/direction (or trade_direction) variables. None means the
    strategy produced nothing usable.
    """
    if "result" in namespace:
        return namespace["result"]

    logic = namespace.get("strategy_logic")
    if callable(logic):
        return logic(namespace["data"])

    if "entry" not in namespace:
        return None
    direction = namespace.get("direction", namespace.get("trade_direction"))
    assembled = {"entry": namespace["entry"]}
    if "exit" in namespace:
        assembled["exit"] = namespace["exit"]
    if direction is not None:
        assembled["direction"] = direction
    if "confidence" in namespace:
        assembled["confidence"] = namespace["confidence"]
    return assembled


def to_jsonable(value, depth: int = 0):
    """Convert strategy output to JSON primitives; NaN becomes null."""
    if depth > 8:
        raise TypeError("strategy result is nested too deeply")
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return None if math.isnan(value) or math.isinf(value) else value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v, depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v, depth + 1) for v in value]
    raise TypeError(f"strategy result contains unsupported type {type(value).__name__}")


def run_strategy(source: str, data: dict):
    tree = check_source(source)
    namespace = build_namespace(data)
    exec(compile(tree, "<strategy>", "exec"), namespace)
    return to_jsonable(extract_result(namespace))


def _set_limit(kind: int, value: int) -> None:
    soft, hard = resource.getrlimit(kind)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(kind, (value, value if hard == resource.RLIM_INFINITY else hard))


def apply_limits(cpu_seconds: int, memory_mb: int) -> None:
    """Cap CPU time, address space and file writes; forbid spawning processes."""
    if cpu_seconds > 0:
        _set_limit(resource.RLIMIT_CPU, cpu_seconds)
    if memory_mb > 0:
        _set_limit(resource.RLIMIT_AS, memory_mb * 1024 * 1024)
    _set_limit(resource.RLIMIT_FSIZE, 0)
    if hasattr(resource, "RLIMIT_NPROC"):
        _set_limit(resource.RLIMIT_NPROC, 0)


def handle_request(raw: str) -> dict:
    try:
        request = json.loads(raw)
        source = request["code"]
        data = request["data"]
    except (ValueError, KeyError, TypeError) as exc:
        return {"error": f"Invalid sandbox request: {exc}", "error_type": "ProtocolError"}

    try:
        return {"result": run_strategy(source, data)}
    except SyntaxError as exc:
        return {"error": f"Strategy syntax error: {exc.msg} (line {exc.lineno})", "error_type": "SyntaxError"}
    except PolicyViolation as exc:
        return {"error": f"Strategy rejected: {exc}", "error_type": "PolicyViolation"}
    except Exception as exc:
        return {"error": f"{type(exc).__name__}: {exc}", "error_type": "StrategyRuntimeError"}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run one strategy evaluation")
    parser.add_argument("--cpu-seconds", type=int, default=0)
    parser.add_argument("--memory-mb", type=int, default=0)
    args = parser.parse_args(argv)

    apply_limits(args.cpu_seconds, args.memory_mb)
    response = handle_request(sys.stdin.read())
    sys.stdout.write(json.dumps(response, allow_nan=False))
    sys.stdout.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
