import sys

import pytest

from recovery_api.recovery.errors import CommandExecutionError, CommandTimeoutError
from recovery_api.recovery.process import AsyncProcessRunner


@pytest.mark.asyncio
async def test_returns_combined_output(tmp_path):
    runner = AsyncProcessRunner(default_timeout=10)
    script = "import sys; print('out'); print('err', file=sys.stderr)"

    output = await runner.run([sys.executable, "-c", script], cwd=tmp_path)

    assert "out" in output
    assert "err" in output


@pytest.mark.asyncio
async def test_runs_in_working_directory(tmp_path):
    runner = AsyncProcessRunner(default_timeout=10)

    output = await runner.run([sys.executable, "-c", "import os; print(os.getcwd())"], cwd=tmp_path)

    assert output.strip() == str(tmp_path)


@pytest.mark.asyncio
async def test_non_zero_exit_raises(tmp_path):
    runner = AsyncProcessRunner(default_timeout=10)
    script = "import sys; print('npm ERR! missing script'); sys.exit(3)"

    with pytest.raises(CommandExecutionError) as exc_info:
        await runner.run([sys.executable, "-c", script], cwd=tmp_path)

    assert exc_info.value.returncode == 3
    assert "missing script" in exc_info.value.output


@pytest.mark.asyncio
async def test_timeout_kills_command(tmp_path):
    runner = AsyncProcessRunner(default_timeout=10)

    with pytest.raises(CommandTimeoutError):
        await runner.run([sys.executable, "-c", "import time; time.sleep(30)"], cwd=tmp_path, timeout=0.5)
