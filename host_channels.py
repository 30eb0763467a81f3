"""
Host Message Channels

Messages for the hosting session: info, debug and notice channels, a
warning channel for the stderr of standalone programs, and an error
channel through which native code reports a fatal error.

By default messages are printed, progress to stdout and debug output and
warnings to stderr. A host that displays messages itself passes its own
sinks.

Compiled code reaches the same channels through C callbacks installed
into the loaded module (see install()). A fatal error from native code
cannot unwind through the C frames, so it is recorded and raised as
NativeUserError once the native call has returned.
"""

import ctypes
import sys
import time
from typing import Callable, List, Optional, TypeVar

from eval_errors import NativeUserError

Sink = Callable[[str], None]
T = TypeVar("T")

MESSAGE_CALLBACK = ctypes.CFUNCTYPE(None, ctypes.c_char_p)
REGISTER_CHANNELS = ctypes.CFUNCTYPE(
    None, MESSAGE_CALLBACK, MESSAGE_CALLBACK, MESSAGE_CALLBACK, MESSAGE_CALLBACK
)

# Symbol a loaded module exports when its code wants the host channels
REGISTER_SYMBOL = "register_host_channels"


def _print_stdout(msg: str):
    print(msg)


def _print_stderr(msg: str):
    print(msg, file=sys.stderr)


class HostChannels:
    """Message sinks of the hosting session"""

    def __init__(self, info: Optional[Sink] = None, debug: Optional[Sink] = None,
                 notice: Optional[Sink] = None, warning: Optional[Sink] = None):
        self.info = info or _print_stdout
        self.debug = debug or _print_stderr
        self.notice = notice or _print_stdout
        self.warning = warning or _print_stderr
        self._errors: List[str] = []

    def user_error(self, message: str):
        self._errors.append(message)

    def raise_pending(self):
        """Raise the fatal errors native code reported, if any"""
        if self._errors:
            message = "\n".join(self._errors)
            self._errors = []
            raise NativeUserError(message)

    def native_callbacks(self) -> List[object]:
        def wrap(sink: Sink):
            return MESSAGE_CALLBACK(
                lambda raw: sink(raw.decode("utf-8", errors="replace") if raw else "")
            )
        return [wrap(self.info), wrap(self.debug), wrap(self.notice), wrap(self.user_error)]

    def install(self, register_address: int) -> List[object]:
        """Hand the channels to a loaded module.

        The returned callback objects must stay alive as long as the module
        may call them.
        """
        callbacks = self.native_callbacks()
        REGISTER_CHANNELS(register_address)(*callbacks)
        return callbacks


def debug_msg(channels: HostChannels, flag: bool, msg: str):
    if flag:
        channels.debug(msg)


def timed(channels: HostChannels, label: str, fn: Callable[[], T]) -> T:
    """Run fn, reporting its wall-clock time on the notice channel"""
    start = time.perf_counter()
    result = fn()
    elapsed = time.perf_counter() - start
    channels.notice(f"{label} executed in {elapsed:f} sec")
    return result
