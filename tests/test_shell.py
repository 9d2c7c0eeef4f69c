"""Tests for external command execution."""

from __future__ import annotations

from pathlib import Path

import pytest

from brewhouse.core.errors import CommandError, CommandTimeoutError
from brewhouse.core.shell import run_capture, run_checked


class TestRunCapture:
    @pytest.mark.asyncio
    async def test_captures_output_and_code(self, tmp_path: Path) -> None:
        out, err, code = await run_capture(
            "/bin/sh", "-c", 'echo "$GREETING from $PWD"; echo oops >&2; exit 3',
            cwd=tmp_path,
            env={"GREETING": "hi"},
        )

        assert out == f"hi from {tmp_path}"
        assert err == "oops"
        assert code == 3

    @pytest.mark.asyncio
    async def test_locale_is_pinned(self) -> None:
        out, _, _ = await run_capture("/bin/sh", "-c", "echo $LANG")

        assert out == "C"

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        with pytest.raises(CommandTimeoutError) as info:
            await run_capture("sleep", "5", timeout=0.2)

        assert info.value.context["command"] == "sleep 5"

    @pytest.mark.asyncio
    async def test_missing_executable(self) -> None:
        with pytest.raises(CommandError):
            await run_capture("/nonexistent/brewhouse-tool")


class TestRunChecked:
    @pytest.mark.asyncio
    async def test_returns_stdout(self) -> None:
        assert await run_checked("/bin/sh", "-c", "echo ready") == "ready"

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self) -> None:
        with pytest.raises(CommandError) as info:
            await run_checked("/bin/sh", "-c", "echo broken >&2; exit 2")

        assert info.value.context["returncode"] == 2
        assert info.value.context["error"] == "broken"
