"""
Native Toolchain

Drives the external C compiler and linker, builds the runtime objects on
first use, and loads finished shared modules into the running process.

Every external command runs synchronously. A non-zero exit status or a
signal aborts with ToolchainError carrying the command line, the status
and the compiler's stderr; nothing is retried.
"""

import ctypes
import os
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from eval_errors import NotFoundError, ToolchainError
from eval_options import Options
from host_channels import HostChannels, REGISTER_SYMBOL, debug_msg
from runtime_values import RuntimeValue, read_value

DEFAULT_RUNTIME_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "runtime")

# Runtime objects, built from the .c file of the same name
GC_OBJECT = "gc_stack.o"
MAIN_OBJECT = "runtime_main.o"
RUNTIME_OBJECTS = (GC_OBJECT, MAIN_OBJECT)

ENTRY_FUNCTION = ctypes.CFUNCTYPE(ctypes.c_uint64)

# Real paths of the shared modules opened by this process
_loaded_paths = set()
_load_lock = threading.Lock()


def is_loaded(path: str) -> bool:
    return os.path.realpath(path) in _loaded_paths


def find_compiler(preferred: Optional[str] = None) -> str:
    """Locate the C compiler: preferred, then $CC, then gcc, then clang"""
    candidates = [preferred, os.environ.get("CC"), "gcc", "clang"]
    tried = []
    for candidate in candidates:
        if not candidate:
            continue
        tried.append(candidate)
        path = shutil.which(candidate)
        if path:
            return path
    raise ToolchainError("locate", None, output=f"Compiler not found (tried {', '.join(tried)})")


@dataclass
class LoadedEntry:
    """An entry point resolved in a loaded module"""
    entry: Callable[[], RuntimeValue]
    register_address: Optional[int] = None
    library: Optional[ctypes.CDLL] = field(default=None, repr=False)


class Toolchain:
    """
    Runs the C compiler and linker for the evaluator.

    Handles:
    - Compiler discovery
    - Object compilation and linking (executables and shared modules)
    - One-time build of the runtime objects
    - Running standalone programs
    - Dynamic loading and symbol resolution
    """

    def __init__(self, channels: Optional[HostChannels] = None):
        self.channels = channels or HostChannels()
        self._compilers = {}

    def compiler(self, opts: Options) -> str:
        key = opts.cc
        if key not in self._compilers:
            path = find_compiler(opts.cc)
            debug_msg(self.channels, opts.debug, f"Compiler is {path}")
            self._compilers[key] = path
        return self._compilers[key]

    def is_loaded(self, path: str) -> bool:
        return is_loaded(path)

    def runtime_dir(self, opts: Options) -> str:
        return opts.runtime_dir or os.environ.get("NATIVE_EVAL_RUNTIME") or DEFAULT_RUNTIME_DIR

    def runtime_object(self, opts: Options, name: str) -> str:
        return os.path.join(self.runtime_dir(opts), name)

    def run(self, stage: str, cmd: List[str], debug: bool = False) -> subprocess.CompletedProcess:
        debug_msg(self.channels, debug, f"Executing command: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise ToolchainError(stage, None, cmd, output=str(e)) from e
        if result.returncode < 0:
            raise ToolchainError(stage, -result.returncode, cmd, signaled=True,
                                 output=result.stderr)
        if result.returncode != 0:
            raise ToolchainError(stage, result.returncode, cmd, output=result.stderr)
        return result

    def ensure_runtime(self, opts: Options) -> str:
        """Build runtime objects that are missing or older than their source"""
        rt_dir = self.runtime_dir(opts)
        for obj_name in RUNTIME_OBJECTS:
            obj = os.path.join(rt_dir, obj_name)
            src = obj[:-2] + ".c"
            if not os.path.exists(src):
                if os.path.exists(obj):
                    continue
                raise ToolchainError("runtime", None,
                                     output=f"Runtime source {src} not found")
            if os.path.exists(obj) and os.path.getmtime(obj) >= os.path.getmtime(src):
                continue
            cmd = [self.compiler(opts), "-w", "-O2", "-fPIC", "-I", rt_dir, "-c", "-o", obj, src]
            self.run("runtime", cmd, opts.debug)
        return rt_dir

    def compile_object(self, opts: Options, source: str, obj: str) -> str:
        cmd = [
            self.compiler(opts), "-w", "-g", "-fPIC",
            "-I", opts.build_dir, "-I", self.runtime_dir(opts),
            "-c", "-o", obj, source,
        ]
        self.run("compile", cmd, opts.debug)
        return obj

    def link_executable(self, opts: Options, output: str, objects: List[str]) -> str:
        cmd = [
            self.compiler(opts), "-w", "-g",
            "-L", opts.build_dir, "-L", self.runtime_dir(opts),
            "-o", output,
        ] + list(objects)
        self.run("link", cmd, opts.debug)
        return output

    def link_shared(self, opts: Options, output: str, objects: List[str]) -> str:
        cmd = [
            self.compiler(opts), "-shared", "-w", "-g",
            "-L", opts.build_dir, "-L", self.runtime_dir(opts),
            "-o", output,
        ] + list(objects)
        self.run("link", cmd, opts.debug)
        return output

    def run_program(self, path: str, debug: bool = False) -> int:
        """Run a standalone program, forwarding its output to the host"""
        prog = os.path.basename(path)
        cmd = [os.path.abspath(path)]
        debug_msg(self.channels, debug, f"Executing command: {cmd[0]}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise ToolchainError("run", None, cmd, output=str(e)) from e
        for line in result.stdout.splitlines():
            self.channels.notice(f"{prog}: {line}")
        for line in result.stderr.splitlines():
            self.channels.warning(f"{prog}: {line}")
        debug_msg(self.channels, debug, "Program terminated")
        if result.returncode < 0:
            raise ToolchainError("run", -result.returncode, cmd, signaled=True)
        if result.returncode != 0:
            raise ToolchainError("run", result.returncode, cmd)
        return result.returncode

    def load_entry(self, path: str, symbol: str) -> LoadedEntry:
        """Load a shared module and resolve its entry point in that module only.

        The module is opened with RTLD_LOCAL so its symbols never satisfy
        lookups in other modules, and the entry point is taken from the
        module's own handle. The handle is kept on the LoadedEntry.
        """
        path = os.path.realpath(path)
        with _load_lock:
            if path in _loaded_paths:
                # the dynamic loader would hand back the module already resident
                raise ToolchainError(
                    "load", None, [path],
                    output=f"A module was already loaded from {path} in this process",
                )
            try:
                library = ctypes.CDLL(path, mode=ctypes.RTLD_LOCAL)
            except OSError as e:
                raise ToolchainError("load", None, [path], output=str(e)) from e
            _loaded_paths.add(path)
        try:
            native = ENTRY_FUNCTION((symbol, library))
        except AttributeError as e:
            raise NotFoundError(f"Symbol {symbol} not found in {path}") from e
        try:
            register = ctypes.cast(library[REGISTER_SYMBOL], ctypes.c_void_p).value
        except AttributeError:
            register = None

        def entry() -> RuntimeValue:
            return read_value(native())

        return LoadedEntry(entry, register, library)
