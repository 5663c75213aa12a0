import subprocess
import sys

import pytest

from forward_tester.sandbox.strategy_sandbox import WORKER_MODULE


@pytest.fixture(scope="session")
def installed_worker():
    """The worker runs with -I, so the package must be importable from site-packages."""
    check = subprocess.run(
        [sys.executable, "-I", "-c", f"import {WORKER_MODULE}"],
        capture_output=True,
        timeout=30,
    )
    if check.returncode != 0:
        pytest.skip("forward_tester is not installed; run `pip install -e .` for sandbox tests")
    return WORKER_MODULE
