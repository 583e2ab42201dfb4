"""Tests for the output sink and its surfaces."""

import io
from typing import Callable

import pytest

from flatpak_buildkit.output import BufferSurface, ConsoleSurface, OutputSink, OutputSurface


class NeverReadySurface(OutputSurface):
    """A surface that accepts open requests but never becomes ready."""

    def open(self, ready: Callable[[], None]) -> None:
        pass

    def write(self, text: str) -> None:
        raise AssertionError("write before ready")


# =============================================================================
# Line styling
# =============================================================================

class TestLineStyling:
    """Tests for status and error line formatting."""

    def test_status_line(self, sink, surface):
        """Status lines are bold white with the >>> prefix."""
        sink.append_status_line("make install")
        assert surface.text == "\r\x1b[1;37m>>> make install\x1b[0m\r\n"

    def test_error_line(self, sink, surface):
        """Error lines are bold red."""
        sink.append_error_line("ERROR: boom")
        assert surface.text == "\r\x1b[1;31m>>> ERROR: boom\x1b[0m\r\n"

    def test_raw_output_is_verbatim(self, sink, surface):
        """Raw output is written unchanged."""
        sink.append_raw("partial")
        sink.append_raw(" line\n")
        assert surface.text == "partial line\n"

    def test_plain_line(self, sink, surface):
        """append_line terminates with CRLF."""
        sink.append_line("hello")
        assert surface.text == "hello\r\n"


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:
    """Tests for show, close and dispose."""

    def test_show_waits_for_delayed_ready(self):
        """show() returns only once the surface reported ready."""
        surface = BufferSurface(ready_delay=0.05)
        sink = OutputSink(surface, ready_timeout=5)
        sink.show()
        assert sink.is_open

    def test_show_times_out(self):
        """A surface that never becomes ready raises TimeoutError."""
        sink = OutputSink(NeverReadySurface(), ready_timeout=0.05)
        with pytest.raises(TimeoutError):
            sink.show()

    def test_open_requested_once(self, sink, surface):
        """Repeated show() calls do not reopen an open surface."""
        sink.show()
        sink.show()
        sink.append_raw("x")
        assert surface.open_requests == 1

    def test_surface_close_fires_sink_close(self, sink, surface):
        """Closing the surface notifies sink subscribers and marks it closed."""
        closed = []
        sink.on_close.subscribe(lambda _: closed.append(True))
        sink.show()
        surface.close()
        assert closed == [True]
        assert not sink.is_open

    def test_reopens_after_close(self, sink, surface):
        """Writing after a close opens the surface again."""
        sink.show()
        surface.close()
        sink.append_raw("again")
        assert surface.open_requests == 2
        assert surface.text == "again"

    def test_dispose_is_idempotent(self, sink):
        """dispose() can be called twice."""
        sink.show()
        sink.dispose()
        sink.dispose()

    def test_show_after_dispose_raises(self, sink):
        """A disposed sink refuses to open."""
        sink.dispose()
        with pytest.raises(RuntimeError):
            sink.show()


class TestConsoleSurface:
    """Tests for the terminal surface."""

    def test_writes_to_stream(self):
        """Text reaches the stream; styling may be stripped off a non-tty."""
        stream = io.StringIO()
        sink = OutputSink(ConsoleSurface(stream), ready_timeout=1)
        sink.append_status_line("hello")
        assert ">>> hello" in stream.getvalue()
