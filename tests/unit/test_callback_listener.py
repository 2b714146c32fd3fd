"""Unit tests for the OAuth callback listener.

Requests are sent over real loopback sockets with httpx.
"""

import asyncio
import socket
import threading
from unittest.mock import patch

import httpx
import pytest

from google_mcp.auth.callback_listener import CallbackListener
from google_mcp.auth.models import CallbackOutcome

HOST = "127.0.0.1"
PATH = "/oauth2callback"


class CodeRecorder:
    """Async code handler recording the codes it receives."""

    def __init__(self, result: bool = True, error: Exception | None = None) -> None:
        self.codes: list[str] = []
        self.result = result
        self.error = error

    async def __call__(self, code: str) -> bool:
        self.codes.append(code)
        if self.error is not None:
            raise self.error
        return self.result


def _url(listener: CallbackListener, query: str = "", path: str = PATH) -> str:
    return f"http://{HOST}:{listener.port}{path}{query}"


async def _get(url: str) -> httpx.Response:
    async with httpx.AsyncClient(trust_env=False, timeout=5.0) as client:
        return await client.get(url)


def _port_is_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((HOST, port))
        except OSError:
            return False
    return True


@pytest.mark.unit
class TestCallbackOutcomes:
    """Tests for how each kind of redirect settles the listener."""

    @pytest.mark.asyncio
    async def test_should_exchange_code_and_authorize(self) -> None:
        on_code = CodeRecorder()

        async with CallbackListener(HOST, 0, PATH, on_code, timeout=5.0) as listener:
            response = await _get(_url(listener, "?code=ABC123&state=xyz"))
            outcome = await listener.wait()

        assert response.status_code == 200
        assert "Authentication Successful" in response.text
        assert outcome == CallbackOutcome.AUTHORIZED
        assert on_code.codes == ["ABC123"]

    @pytest.mark.asyncio
    async def test_should_report_denial_without_exchange(self) -> None:
        on_code = CodeRecorder()

        async with CallbackListener(HOST, 0, PATH, on_code, timeout=5.0) as listener:
            response = await _get(_url(listener, "?error=access_denied"))
            outcome = await listener.wait()

        assert response.status_code == 400
        assert outcome == CallbackOutcome.DENIED
        assert on_code.codes == []

    @pytest.mark.asyncio
    async def test_should_treat_missing_code_as_denial(self) -> None:
        on_code = CodeRecorder()

        async with CallbackListener(HOST, 0, PATH, on_code, timeout=5.0) as listener:
            response = await _get(_url(listener, "?state=xyz"))
            outcome = await listener.wait()

        assert response.status_code == 400
        assert outcome == CallbackOutcome.DENIED

    @pytest.mark.asyncio
    async def test_should_report_failed_exchange(self) -> None:
        on_code = CodeRecorder(result=False)

        async with CallbackListener(HOST, 0, PATH, on_code, timeout=5.0) as listener:
            response = await _get(_url(listener, "?code=bad"))
            outcome = await listener.wait()

        assert response.status_code == 400
        assert outcome == CallbackOutcome.ERROR

    @pytest.mark.asyncio
    async def test_should_contain_exception_in_handler(self) -> None:
        on_code = CodeRecorder(error=RuntimeError("token endpoint exploded"))

        async with CallbackListener(HOST, 0, PATH, on_code, timeout=5.0) as listener:
            response = await _get(_url(listener, "?code=ABC123"))
            outcome = await listener.wait()

        assert response.status_code == 500
        assert "token endpoint exploded" not in response.text
        assert outcome == CallbackOutcome.ERROR

    @pytest.mark.asyncio
    async def test_should_time_out_without_redirect(self) -> None:
        async with CallbackListener(HOST, 0, PATH, CodeRecorder(), timeout=0.2) as listener:
            outcome = await listener.wait()

        assert outcome == CallbackOutcome.TIMED_OUT


@pytest.mark.unit
class TestCallbackRouting:
    """Tests for requests that must not settle the listener."""

    @pytest.mark.asyncio
    async def test_should_return_404_for_other_paths(self) -> None:
        on_code = CodeRecorder()

        async with CallbackListener(HOST, 0, PATH, on_code, timeout=5.0) as listener:
            favicon = await _get(_url(listener, path="/favicon.ico"))
            callback = await _get(_url(listener, "?code=ABC123"))
            outcome = await listener.wait()

        assert favicon.status_code == 404
        assert callback.status_code == 200
        assert outcome == CallbackOutcome.AUTHORIZED

    @pytest.mark.asyncio
    async def test_should_reject_second_callback(self) -> None:
        on_code = CodeRecorder()

        async with CallbackListener(HOST, 0, PATH, on_code, timeout=5.0) as listener:
            first = await _get(_url(listener, "?code=first"))
            await listener.wait()
            second = await _get(_url(listener, "?code=second"))

        assert first.status_code == 200
        assert second.status_code == 410
        assert on_code.codes == ["first"]

    @pytest.mark.asyncio
    async def test_should_ignore_callback_after_timeout(self) -> None:
        on_code = CodeRecorder()

        async with CallbackListener(HOST, 0, PATH, on_code, timeout=0.1) as listener:
            outcome = await listener.wait()
            late = await _get(_url(listener, "?code=late"))

        assert outcome == CallbackOutcome.TIMED_OUT
        assert late.status_code == 410
        assert on_code.codes == []


@pytest.mark.unit
class TestListenerLifecycle:
    """Tests for binding and releasing the port."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("query", "timeout", "expected"),
        [
            ("?code=ABC123", 5.0, CallbackOutcome.AUTHORIZED),
            ("?error=access_denied", 5.0, CallbackOutcome.DENIED),
            (None, 0.1, CallbackOutcome.TIMED_OUT),
        ],
    )
    async def test_should_close_exactly_once_for_each_outcome(
        self, query: str | None, timeout: float, expected: CallbackOutcome
    ) -> None:
        listener = CallbackListener(HOST, 0, PATH, CodeRecorder(), timeout=timeout)

        async with listener:
            if query is not None:
                await _get(_url(listener, query))
            outcome = await listener.wait()
        await listener.close()

        assert outcome == expected
        assert listener.close_count == 1
        assert not listener.is_serving
        with pytest.raises(httpx.ConnectError):
            await _get(_url(listener, "?code=after-close"))

    @pytest.mark.asyncio
    async def test_should_close_once_after_handler_exception(self) -> None:
        listener = CallbackListener(
            HOST, 0, PATH, CodeRecorder(error=ValueError("boom")), timeout=5.0
        )

        async with listener:
            await _get(_url(listener, "?code=ABC123"))
            await listener.wait()

        assert listener.close_count == 1
        with pytest.raises(httpx.ConnectError):
            await _get(_url(listener, "?code=after-close"))

    @pytest.mark.asyncio
    async def test_should_free_port_after_close(self) -> None:
        async with CallbackListener(HOST, 0, PATH, CodeRecorder(), timeout=0.1) as listener:
            await listener.wait()

        assert _port_is_free(listener.port)

    @pytest.mark.asyncio
    async def test_should_raise_when_port_in_use(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind((HOST, 0))
            blocker.listen(1)
            port = blocker.getsockname()[1]

            listener = CallbackListener(HOST, port, PATH, CodeRecorder())
            with pytest.raises(OSError):
                await listener.start()

        assert listener.close_count == 0
        assert not listener.is_serving

    @pytest.mark.asyncio
    async def test_should_close_while_waiting(self) -> None:
        listener = CallbackListener(HOST, 0, PATH, CodeRecorder(), timeout=5.0)
        await listener.start()

        waiter = asyncio.ensure_future(listener.wait())
        await asyncio.sleep(0)
        await listener.close()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert listener.close_count == 1

    @pytest.mark.asyncio
    async def test_should_require_start_before_wait(self) -> None:
        listener = CallbackListener(HOST, 0, PATH, CodeRecorder())

        with pytest.raises(RuntimeError):
            await listener.wait()

    @pytest.mark.asyncio
    async def test_should_bind_off_the_event_loop_thread(self) -> None:
        loop_thread = threading.get_ident()
        lookup_threads: list[int] = []
        real_getfqdn = socket.getfqdn

        def recording_getfqdn(name: str = "") -> str:
            lookup_threads.append(threading.get_ident())
            return real_getfqdn(name)

        with patch("socket.getfqdn", side_effect=recording_getfqdn):
            async with CallbackListener(HOST, 0, PATH, CodeRecorder(), timeout=0.1) as listener:
                await listener.wait()

        assert lookup_threads
        assert loop_thread not in lookup_threads
