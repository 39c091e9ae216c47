import asyncio
import sys
import time

import pytest

from sandloop.workspace.tools import (
    SPAWN_FAILURE_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    ProcessRunner,
)


@pytest.mark.asyncio
async def test_captures_stdout_and_exit_code(tmp_path):
    result = await ProcessRunner().run(sys.executable, ["-c", "print('hello')"], cwd=tmp_path)
    assert result.exit_code == 0
    assert result.success
    assert result.stdout.strip() == "hello"
    assert not result.timed_out


@pytest.mark.asyncio
async def test_nonzero_exit_is_data_not_an_error(tmp_path):
    code = "import sys; sys.stderr.write('bad things'); sys.exit(3)"
    result = await ProcessRunner().run(sys.executable, ["-c", code], cwd=tmp_path)
    assert result.exit_code == 3
    assert not result.success
    assert "bad things" in result.stderr


@pytest.mark.asyncio
async def test_runs_in_requested_cwd(tmp_path):
    code = "import os; print(os.getcwd())"
    result = await ProcessRunner().run(sys.executable, ["-c", code], cwd=tmp_path)
    assert result.stdout.strip() == str(tmp_path.resolve())


@pytest.mark.asyncio
async def test_spawn_failure_returns_minus_one(tmp_path):
    result = await ProcessRunner().run(str(tmp_path / "no-such-binary"), [])
    assert result.exit_code == SPAWN_FAILURE_EXIT_CODE
    assert result.stderr


@pytest.mark.asyncio
async def test_large_output_is_fully_drained(tmp_path):
    code = "print('x' * 500000)"
    result = await ProcessRunner().run(sys.executable, ["-c", code], cwd=tmp_path)
    assert len(result.stdout.strip()) == 500000


@pytest.mark.asyncio
async def test_timeout_kills_process(tmp_path):
    code = "import time; print('started', flush=True); time.sleep(30)"
    started = time.monotonic()
    result = await ProcessRunner(timeout=1).run(sys.executable, ["-c", code], cwd=tmp_path)

    assert time.monotonic() - started < 15
    assert result.timed_out
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert "started" in result.stdout
    assert "timed out" in result.stderr


@pytest.mark.asyncio
async def test_cancellation_kills_process(tmp_path):
    marker = tmp_path / "finished.txt"
    code = f"import time; time.sleep(5); open({str(marker)!r}, 'w').write('done')"
    task = asyncio.create_task(ProcessRunner().run(sys.executable, ["-c", code], cwd=tmp_path))
    await asyncio.sleep(0.5)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    await asyncio.sleep(6)
    assert not marker.exists()
