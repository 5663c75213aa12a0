import asyncio
import json
import logging
import math
import sys
import tempfile
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from forward_tester.config import SANDBOX_MAX_OUTPUT_BYTES, SANDBOX_MEMORY_LIMIT_MB, SANDBOX_TIMEOUT_SECONDS
from forward_tester.errors import StrategyRuntimeError, StrategySandboxTimeout
from forward_tester.models import CandleSeries, Direction, SignalSeries

logger = logging.getLogger(__name__)

WORKER_MODULE = "forward_tester.sandbox.worker"
READ_CHUNK_BYTES = 64 * 1024
STDERR_TAIL_BYTES = 2000


class StrategyOutput(BaseModel):
    """Shape a strategy must return; extra keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    entry: List[bool]
    exit: Optional[List[bool]] = None
    direction: Optional[List[Optional[str]]] = None
    confidence: Optional[List[Optional[float]]] = None

    @field_validator("direction")
    @classmethod
    def validate_direction(cls, values):
        if values is None:
            return values
        normalized = []
        for value in values:
            if value is None or value == "":
                normalized.append(None)
                continue
            upper = str(value).upper()
            if upper not in (Direction.BUY.value, Direction.SELL.value):
                raise ValueError(f"direction values must be BUY, SELL or None, got {value!r}")
            normalized.append(upper)
        return normalized

    @field_validator("confidence")
    @classmethod
    def validate_confidence(cls, values):
        if values is None:
            return values
        return [None if v is None or math.isnan(v) else float(v) for v in values]


def coerce_signal_series(result: Any, length: int) -> SignalSeries:
    """
    Validate raw strategy output against the candle count.

    Raises StrategyRuntimeError describing the first problem found.
    """
    if result is None:
        raise StrategyRuntimeError("Strategy produced no result")
    if not isinstance(result, dict):
        raise StrategyRuntimeError(
            f"Strategy result must be a dict with entry/exit/direction, got {type(result).__name__}"
        )
    try:
        output = StrategyOutput.model_validate(result)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise StrategyRuntimeError(f"Strategy result field '{where}' is invalid: {first.get('msg')}") from exc

    exits = output.exit if output.exit is not None else [False] * len(output.entry)
    directions = output.direction if output.direction is not None else [None] * len(output.entry)

    for name, values in (("entry", output.entry), ("exit", exits), ("direction", directions)):
        if len(values) != length:
            raise StrategyRuntimeError(f"Strategy '{name}' has {len(values)} values, expected {length}")
    if output.confidence is not None and len(output.confidence) != length:
        raise StrategyRuntimeError(
            f"Strategy 'confidence' has {len(output.confidence)} values, expected {length}"
        )

    return SignalSeries(
        entry=list(output.entry),
        exit=list(exits),
        direction=list(directions),
        confidence=list(output.confidence) if output.confidence is not None else None,
    )


def parse_worker_output(raw: bytes, length: int) -> SignalSeries:
    """Turn the worker's stdout into a SignalSeries; never raises."""
    try:
        payload = json.loads(raw.decode("utf-8") or "null")
    except (UnicodeDecodeError, ValueError):
        return SignalSeries.empty(length, "Strategy worker returned malformed output")
    if not isinstance(payload, dict):
        return SignalSeries.empty(length, "Strategy worker returned malformed output")

    if payload.get("error"):
        return SignalSeries.empty(length, str(payload["error"]))

    try:
        return coerce_signal_series(payload.get("result"), length)
    except StrategyRuntimeError as exc:
        return SignalSeries.empty(length, str(exc))


class StrategySandbox:
    """
    Runs user strategy code in a separate interpreter with time and resource caps.

    evaluate() never raises for strategy problems: bad code, bad output and
    timeouts all come back as an all-false SignalSeries carrying `error`.
    """

    def __init__(
        self,
        timeout: float = SANDBOX_TIMEOUT_SECONDS,
        memory_limit_mb: int = SANDBOX_MEMORY_LIMIT_MB,
        max_output_bytes: int = SANDBOX_MAX_OUTPUT_BYTES,
        python_executable: str = sys.executable,
        logger: Optional[logging.Logger] = None,
    ):
        self.timeout = timeout
        self.memory_limit_mb = memory_limit_mb
        self.max_output_bytes = max_output_bytes
        self.python_executable = python_executable
        self.logger = logger or logging.getLogger(__name__)

    def _command(self, timeout: float) -> List[str]:
        return [
            self.python_executable,
            "-I",
            "-m",
            WORKER_MODULE,
            "--cpu-seconds",
            str(max(1, math.ceil(timeout)) + 1),
            "--memory-mb",
            str(self.memory_limit_mb),
        ]

    async def evaluate(self, source_code: str, candles: CandleSeries, timeout: Optional[float] = None) -> SignalSeries:
        length = len(candles)
        budget = self.timeout if timeout is None else timeout
        request = json.dumps({"code": source_code, "data": candles.to_payload()}, allow_nan=True)

        try:
            raw = await self._run_worker(request.encode("utf-8"), budget)
        except StrategySandboxTimeout as exc:
            self.logger.warning(f"Strategy timed out after {budget}s on {candles.symbol}")
            return SignalSeries.empty(length, f"StrategySandboxTimeout: {exc}")
        except StrategyRuntimeError as exc:
            self.logger.warning(f"Strategy worker failed on {candles.symbol}: {exc}")
            return SignalSeries.empty(length, str(exc))

        series = parse_worker_output(raw, length)
        if series.error:
            self.logger.info(f"Strategy produced no usable signals for {candles.symbol}: {series.error}")
        return series

    async def _run_worker(self, request: bytes, timeout: float) -> bytes:
        with tempfile.TemporaryDirectory(prefix="strategy-") as workdir:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *self._command(timeout),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=workdir,
                    env={},
                )
            except OSError as exc:
                raise StrategyRuntimeError(f"Could not start strategy worker: {exc}") from exc

            try:
                stdout, stderr = await asyncio.wait_for(self._exchange(proc, request), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise StrategySandboxTimeout(f"strategy exceeded {timeout}s") from exc
            finally:
                if proc.returncode is None:
                    try:
                        proc.kill()
                    except ProcessLookupError:
                        pass
                    await proc.wait()

        if stderr:
            self.logger.debug(f"Strategy stderr: {stderr.decode('utf-8', 'replace')}")
        if proc.returncode != 0 and not stdout:
            tail = stderr[-300:].decode("utf-8", "replace").strip()
            raise StrategyRuntimeError(f"Strategy worker exited with code {proc.returncode}: {tail}")
        return stdout

    async def _exchange(self, proc, request: bytes) -> Tuple[bytes, bytes]:
        """Send the request and read stdout up to the output cap, killing the worker past it."""
        try:
            proc.stdin.write(request)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # worker exited before reading; its exit status is reported by the caller
            pass
        finally:
            proc.stdin.close()

        stderr_task = asyncio.ensure_future(_read_tail(proc.stderr, STDERR_TAIL_BYTES))
        try:
            chunks: List[bytes] = []
            size = 0
            while True:
                chunk = await proc.stdout.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                size += len(chunk)
                if size > self.max_output_bytes:
                    proc.kill()
                    raise StrategyRuntimeError(f"Strategy output exceeded {self.max_output_bytes} bytes")
                chunks.append(chunk)
            stderr = await stderr_task
            await proc.wait()
            return b"".join(chunks), stderr
        finally:
            if not stderr_task.done():
                stderr_task.cancel()


async def _read_tail(stream, limit: int) -> bytes:
    tail = b""
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            return tail
        tail = (tail + chunk)[-limit:]
