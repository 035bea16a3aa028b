"""Signal helpers for reporting how a supervised process ended."""

import signal

_SIGNAL_NAMES: dict[int, str] = {
    signal.SIGTERM: "SIGTERM",
    signal.SIGKILL: "SIGKILL",
    signal.SIGINT: "SIGINT",
    signal.SIGSEGV: "SIGSEGV",
    signal.SIGABRT: "SIGABRT",
    signal.SIGBUS: "SIGBUS",
    signal.SIGHUP: "SIGHUP",
    signal.SIGPIPE: "SIGPIPE",
}


def get_signal_name(sig_num: int) -> str:
    """Return "SIGTERM"-style names, or "signal N" for anything unmapped."""
    return _SIGNAL_NAMES.get(sig_num, f"signal {sig_num}")


def split_returncode(returncode: int | None) -> tuple[int | None, int | None]:
    """Split an asyncio returncode into ``(exit_code, exit_signal)``.

    asyncio reports death-by-signal as a negative returncode.
    """
    if returncode is None:
        return None, None
    if returncode < 0:
        return None, -returncode
    return returncode, None
