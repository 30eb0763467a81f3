"""
Native Evaluation Errors

Every failure of an evaluation request is reported with one of these
exceptions. None of them is retried: each is terminal for the request
that raised it.
"""

from typing import List, Optional


class EvalError(Exception):
    """Base exception for native evaluation errors"""
    pass


class ConfigError(EvalError):
    """Invalid options (bad key, missing build directory, missing file name)"""
    pass


class UnreifyableTypeError(EvalError, TypeError):
    """The static type of a value is neither an inductive nor a supported primitive"""
    pass


class CompileError(EvalError):
    """The compiler capability reported a failure"""

    def __init__(self, message: str, diagnostics: str = ""):
        super().__init__(f"Could not compile: {message}")
        self.message = message
        self.diagnostics = diagnostics


class ToolchainError(EvalError):
    """An external compiler or linker invocation failed.

    Carries the stage name, the exit status (or signal number when the
    process was killed) and the command line needed to reproduce it.
    """

    def __init__(self, stage: str, code: Optional[int],
                 command: Optional[List[str]] = None,
                 signaled: bool = False, output: str = ""):
        self.stage = stage
        self.code = code
        self.command = list(command or [])
        self.signaled = signaled
        self.output = output
        cmdline = " ".join(self.command)
        if code is None:
            msg = f"{stage}: {output or 'toolchain unavailable'}"
        elif signaled:
            msg = f"{stage}: process was signaled with code {code} while running {cmdline}"
        else:
            msg = f"{stage}: process exited with code {code} while running {cmdline}"
        if output and code is not None:
            msg += f"\n{output}"
        super().__init__(msg)


class IllFormedValueError(EvalError):
    """A runtime value does not fit the layout of its static type.

    This means the decoder and the compiler disagree about the value
    representation, so it is reported with the type, the raw ordinal
    and whether the value was a block.
    """

    def __init__(self, reifyable, tag: Optional[int], is_block: bool,
                 detail: str = ""):
        self.reifyable = reifyable
        self.tag = tag
        self.is_block = is_block
        shape = "block" if is_block else "immediate"
        if reifyable is None:
            msg = f"Ill-formed native value representation: {shape} with ordinal {tag}"
        else:
            kind = "inductive" if getattr(reifyable, "is_inductive", False) else "primitive"
            msg = (f"Ill-formed {kind} value representation for type {reifyable}: "
                   f"{shape} with ordinal {tag}")
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class NotFoundError(EvalError, LookupError):
    """A registered entry point, symbol or global could not be found"""
    pass


class NativeUserError(EvalError):
    """Native code reported a fatal error through the host error channel"""
    pass
