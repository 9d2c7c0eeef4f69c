"""Tests for the error taxonomy, exit codes and retry helpers."""

from __future__ import annotations

import pytest

from brewhouse.core.errors import (
    EXIT_FATAL_ERROR,
    EXIT_FETCH_ERROR,
    EXIT_INSTALL_ERROR,
    EXIT_RESOLUTION_ERROR,
    EXIT_SUCCESS,
    BrewError,
    ChecksumMismatch,
    CyclicDependency,
    DependencyConflict,
    NetworkPermanent,
    NetworkTransient,
    PackageNotFoundError,
    PrefixLockedError,
    RollbackFailure,
    UserError,
    call_with_retry,
    exit_code_for,
    format_error_message,
    retry_on_transient,
)


class TestExitCodes:
    """Tests for mapping failure classes onto exit codes."""

    @pytest.mark.parametrize(
        "error,code",
        [
            (None, EXIT_SUCCESS),
            (PackageNotFoundError(package="nope"), EXIT_RESOLUTION_ERROR),
            (CyclicDependency(["a", "b", "a"]), EXIT_RESOLUTION_ERROR),
            (ChecksumMismatch("aa", "bb"), EXIT_FETCH_ERROR),
            (NetworkTransient(url="https://x"), EXIT_FETCH_ERROR),
            (UserError("bad input"), EXIT_RESOLUTION_ERROR),
            (PrefixLockedError("/opt/brew"), EXIT_INSTALL_ERROR),
            (RollbackFailure(["/p"]), EXIT_FATAL_ERROR),
            (RuntimeError("unexpected"), EXIT_FATAL_ERROR),
        ],
    )
    def test_exit_code_for(self, error, code) -> None:
        assert exit_code_for(error) == code

    def test_prefix_locked_is_user_error(self) -> None:
        assert isinstance(PrefixLockedError("/opt/brew"), UserError)


class TestContext:
    def test_with_context_merges(self) -> None:
        error = BrewError("boom", context={"package": "a"})

        same = error.with_context(step="fetching")

        assert same is error
        assert error.context == {"package": "a", "step": "fetching"}
        assert str(error) == "boom [package=a, step=fetching]"

    def test_cycle_is_kept(self) -> None:
        error = CyclicDependency(["x", "y", "x"])

        assert error.cycle == ["x", "y", "x"]
        assert "x -> y -> x" in error.message

    def test_conflict_requesters_sorted(self) -> None:
        error = DependencyConflict("b", ["d", "a", "d"])

        assert error.requesters == ("a", "d")
        assert error.message == "Conflicting requirements for 'b' from a, d"

    def test_rollback_failure_paths(self) -> None:
        error = RollbackFailure(["/b", "/a", "/b"])

        assert error.paths == ["/a", "/b"]
        assert error.context["paths"] == "/a, /b"


class TestFormatErrorMessage:
    """Tests for CLI error rendering."""

    def test_uses_type_template(self) -> None:
        message = format_error_message(PackageNotFoundError(package="wget"))

        assert message.startswith("❌ Package Not Found: wget")

    def test_missing_field_falls_back(self) -> None:
        """Should not crash when the template needs context the error lacks."""
        message = format_error_message(ChecksumMismatch("aa", "bb"))

        assert message == "❌ Checksum mismatch"

    def test_unknown_subclass_uses_base_template(self) -> None:
        class Custom(BrewError):
            pass

        assert format_error_message(Custom("odd")) == "❌ odd"


class TestRetry:
    """Tests for call_with_retry and retry_on_transient."""

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self) -> None:
        calls = []

        async def flaky(value: str) -> str:
            calls.append(value)
            if len(calls) < 3:
                raise NetworkTransient(url="https://x")
            return value

        result = await call_with_retry(flaky, "ok", max_retries=3, base_delay=0.0)

        assert result == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self) -> None:
        calls = []

        async def down() -> None:
            calls.append(1)
            raise NetworkTransient(url="https://x", status=503)

        with pytest.raises(NetworkTransient):
            await call_with_retry(down, max_retries=2, base_delay=0.0)

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self) -> None:
        calls = []

        async def missing() -> None:
            calls.append(1)
            raise NetworkPermanent(url="https://x", status=404)

        with pytest.raises(NetworkPermanent):
            await call_with_retry(missing, max_retries=5, base_delay=0.0)

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_decorator_async(self) -> None:
        calls = []

        @retry_on_transient(max_retries=2, base_delay=0.0)
        async def flaky() -> int:
            calls.append(1)
            if len(calls) == 1:
                raise NetworkTransient(url="https://x")
            return len(calls)

        assert await flaky() == 2

    def test_decorator_sync(self) -> None:
        calls = []

        @retry_on_transient(max_retries=3, base_delay=0.0)
        def flaky() -> str:
            calls.append(1)
            if len(calls) < 2:
                raise NetworkTransient(url="https://x")
            return "done"

        assert flaky() == "done"
        assert flaky.__name__ == "flaky"
