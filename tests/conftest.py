"""
Pytest configuration and fixtures for native evaluation tests.

Provides reusable fixtures for:
- A global environment with the usual inductive and primitive types
- A scripted compiler and toolchain that record what the evaluator asks of them
- Options pointing at a temporary build directory
"""

import os
import shutil
import sys
from pathlib import Path

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend_api import CompilerInterface, CompilerResult, CompiledModules, CModule, IRResult
from eval_errors import ToolchainError
from eval_options import make_options
from host_channels import HostChannels
from runtime_values import Immediate
from terms import (
    Var, Sort, Prod, Lambda, App, Ind, Const, Construct,
    ConstructorDecl, InductiveDecl, Definition, PrimitiveTypeDecl, PrimitiveKind,
    Environment,
)
from toolchain import LoadedEntry, Toolchain, find_compiler


TYPE = Sort()


def make_environment() -> Environment:
    A = Var("A")
    return Environment([
        PrimitiveTypeDecl("int63", PrimitiveKind.INT),
        PrimitiveTypeDecl("float64", PrimitiveKind.FLOAT),
        PrimitiveTypeDecl("array", PrimitiveKind.ARRAY),
        InductiveDecl("bool", (), (ConstructorDecl("false"), ConstructorDecl("true"))),
        InductiveDecl("nat", (), (
            ConstructorDecl("O"),
            ConstructorDecl("S", (("n", Ind("nat")),)),
        )),
        InductiveDecl("option", (("A", TYPE),), (
            ConstructorDecl("None"),
            ConstructorDecl("Some", (("x", A),)),
        )),
        InductiveDecl("list", (("A", TYPE),), (
            ConstructorDecl("nil"),
            ConstructorDecl("cons", (("hd", A), ("tl", App(Ind("list"), (A,))))),
        )),
        # Constant and non-constant constructors interleaved
        InductiveDecl("shape", (), (
            ConstructorDecl("A"),
            ConstructorDecl("B", (("b", Const("int63")),)),
            ConstructorDecl("C"),
            ConstructorDecl("D", (("d1", Const("int63")), ("d2", Const("int63")))),
        )),
        # Dependent pair: the type of the second field depends on the first
        InductiveDecl("sigT", (("A", TYPE), ("P", Prod("_", A, TYPE))), (
            ConstructorDecl("existT", (("x", A), ("p", App(Var("P"), (Var("x"),))))),
        )),
        Definition("nat_alias", TYPE, Ind("nat")),
        Definition("one", Ind("nat"), App(Construct("nat", 1), (Construct("nat", 0),))),
        Definition("succ", Prod("_", Ind("nat"), Ind("nat")),
                   Lambda("n", Ind("nat"), App(Construct("nat", 1), (Var("n"),)))),
        Definition("two", Ind("nat"), App(Const("succ"), (Const("one"),))),
        Definition("const_fun", Prod("_", Ind("nat"), TYPE),
                   Lambda("n", Ind("nat"), Ind("bool"))),
        Definition("opaque", Ind("nat"), None),
    ])


@pytest.fixture
def env():
    return make_environment()


class RecordingChannels(HostChannels):
    """Host channels that keep every message instead of printing it"""

    def __init__(self):
        self.messages = {"info": [], "debug": [], "notice": [], "warning": []}
        super().__init__(
            info=self.messages["info"].append,
            debug=self.messages["debug"].append,
            notice=self.messages["notice"].append,
            warning=self.messages["warning"].append,
        )


@pytest.fixture
def channels():
    return RecordingChannels()


class ScriptedCompiler(CompilerInterface):
    """A compiler that emits a fixed module, or fails when told to"""

    def __init__(self):
        self.programs = []
        self.error = None
        self.diagnostics = "pipeline ran"

    def compile(self, options, program):
        self.programs.append(program)
        if self.error:
            return CompilerResult(error=self.error, diagnostics=self.diagnostics)
        name = options.toplevel_name
        return CompilerResult(
            modules=CompiledModules(
                CModule(f"value {name}(struct thread_info *tinfo) {{ return Val_long(0); }}\n"),
                CModule(f"extern value {name}(struct thread_info *tinfo);\n"),
                {name: "toplevel"},
            ),
            diagnostics=self.diagnostics,
        )

    def generate_glue(self, options, declarations):
        names = ", ".join(d.name for d in declarations)
        return CompilerResult(
            modules=CompiledModules(CModule(f"/* glue: {names} */\n"), CModule("/* glue header */\n")),
            logs=[f"glue for {names}"],
        )

    def generate_ffi(self, options, program):
        return CompilerResult(
            modules=CompiledModules(CModule("/* ffi */\n"), CModule("/* ffi header */\n")),
        )

    def show_ir(self, options, program):
        if self.error:
            return IRResult(error=self.error, diagnostics=self.diagnostics)
        return IRResult(ir="; ir", diagnostics=self.diagnostics)


@pytest.fixture
def compiler():
    return ScriptedCompiler()


class ScriptedToolchain(Toolchain):
    """A toolchain that builds nothing and loads entry points from a table.

    values maps identifiers to the runtime value (or callable producing
    one) their entry point returns.
    """

    def __init__(self, channels=None):
        super().__init__(channels)
        self.values = {}
        self.default = Immediate(0)
        self.commands = []
        self.loads = []
        self.fail_stage = None

    def _step(self, stage, cmd):
        self.commands.append((stage, cmd))
        if stage == self.fail_stage:
            raise ToolchainError(stage, 1, cmd, output="scripted failure")

    def ensure_runtime(self, opts):
        return self.runtime_dir(opts)

    def compile_object(self, opts, source, obj):
        self._step("compile", ["cc", "-c", "-o", obj, source])
        return obj

    def link_shared(self, opts, output, objects):
        self._step("link", ["cc", "-shared", "-o", output] + list(objects))
        return output

    def link_executable(self, opts, output, objects):
        self._step("link", ["cc", "-o", output] + list(objects))
        return output

    def run_program(self, path, debug=False):
        self._step("run", [path])
        return 0

    def load_entry(self, path, symbol):
        self._step("load", [path, symbol])
        self.loads.append(symbol)
        produce = self.values.get(symbol, self.default)
        entry = produce if callable(produce) else (lambda: produce)
        return LoadedEntry(entry)


@pytest.fixture
def toolchain(channels):
    return ScriptedToolchain(channels)


@pytest.fixture
def build_dir(tmp_path):
    d = tmp_path / "build"
    d.mkdir()
    return d


@pytest.fixture
def options(build_dir):
    return make_options([("build_dir", str(build_dir))])


@pytest.fixture
def runtime_copy(tmp_path):
    """A private copy of the runtime sources, so object files land in tmp_path"""
    src = Path(__file__).parent.parent / "runtime"
    dest = tmp_path / "runtime"
    shutil.copytree(src, dest)
    return dest


def have_c_compiler() -> bool:
    try:
        find_compiler()
    except ToolchainError:
        return False
    return True


requires_cc = pytest.mark.skipif(not have_c_compiler(), reason="no C compiler available")
