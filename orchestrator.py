"""
Native Evaluation Orchestrator

Evaluates a closed term by compiling it to native code and decoding the
result:

    quote -> compile -> emit C -> compile/link -> load -> run -> reify

Loaded entry points are kept in the artifact registry under their
identifier. When an identifier is already registered the compile, emit,
build and load steps are skipped and the resident entry point is run
again. The registry lock is held from the lookup to the insertion, so two
requests never build the same identifier.

Besides evaluation, the evaluator offers the other commands of a native
compilation session: emitting C only, building and running a standalone
executable, printing the IR, and generating glue and FFI code.
"""

import os
import re
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from artifacts import ArtifactRegistry, CompiledArtifact
from backend_api import CompilerInterface, CompilerResult
from eval_errors import CompileError, ConfigError, NotFoundError
from eval_options import Options, make_pipeline_options
from fresh_names import next_name_away_from
from host_channels import HostChannels, debug_msg, timed
from includes import (
    Import, FromLibrary, FromRelativePath, Registrations,
    import_objects, resolve_imports, runtime_imports,
)
from reify import reify
from reify_types import ReifyableType, classify
from terms import (
    Term, Const, Ind, Definition, Declaration, Environment,
)
from toolchain import Toolchain, GC_OBJECT, MAIN_OBJECT

# File stem of evaluations that were not given a name
ANONYMOUS_STEM = "eval"

_C_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*\Z")


@dataclass
class EvalResult:
    """The decoded value of an evaluation and how it was obtained"""
    term: Term
    identifier: str
    diagnostics: str = ""
    cached: bool = False


def _driver_source(name: str, header: str) -> str:
    return (
        f'\n#include "{header}"\n'
        f"\nvalue {name}(void)\n"
        f" {{ struct thread_info* tinfo = make_tinfo(); return {name}_body(tinfo); }}\n"
    )


def _driver_header(name: str) -> str:
    return f"#include <gc_stack.h>\nextern value {name}(void);\n"


def _nub(declarations: Sequence[Declaration]) -> List[Declaration]:
    """Remove duplicates but preserve order, keeping the leftmost"""
    seen = set()
    result = []
    for decl in declarations:
        if decl.name not in seen:
            seen.add(decl.name)
            result.append(decl)
    return result


class NativeEvaluator:
    """Compiles, loads, runs and reifies closed terms of an environment"""

    def __init__(self, environment: Environment, compiler: CompilerInterface,
                 toolchain: Optional[Toolchain] = None,
                 registry: Optional[ArtifactRegistry] = None,
                 registrations: Optional[Registrations] = None,
                 channels: Optional[HostChannels] = None):
        self.env = environment
        self.compiler = compiler
        self.channels = channels or HostChannels()
        self.toolchain = toolchain or Toolchain(self.channels)
        self.registry = registry if registry is not None else ArtifactRegistry()
        self.registrations = registrations or Registrations()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _debug(self, opts: Options, msg: str):
        debug_msg(self.channels, opts.debug, msg)

    def _imports(self, opts: Options, imports: Sequence[Import]) -> List[Import]:
        """Session-wide includes followed by imports, absolute ones resolved"""
        return resolve_imports(list(self.registrations.includes) + list(imports), opts.build_dir)

    def definition(self, name: str) -> Definition:
        decl = self.env.lookup(name)
        if not isinstance(decl, Definition):
            raise NotFoundError(f"{name} is not a constant definition")
        return decl

    def _with_stem(self, opts: Options, name: str) -> Options:
        if opts.filename:
            return opts
        return opts.derive(filename=name.rsplit(".", 1)[-1])

    def _print_modules(self, opts: Options, result: CompilerResult,
                       cname: str, hname: str,
                       c_imports: List[Import], h_imports: List[Import]) -> Tuple[str, str]:
        modules = result.modules
        cpath = opts.make_fname(cname)
        hpath = opts.make_fname(hname)
        self.compiler.print_program(modules.definitions, modules.name_env, cpath, c_imports)
        self.compiler.print_program(modules.header, modules.name_env, hpath, h_imports)
        return cpath, hpath

    # ------------------------------------------------------------------
    # Compilation to C
    # ------------------------------------------------------------------

    def compile(self, opts: Options, term: Term, imports: Sequence[Import] = ()) -> CompilerResult:
        """Quote term, compile it and print <stem><ext>.c and .h"""
        debug = opts.debug
        start = time.perf_counter()
        program = self.env.quote(term)
        self._debug(opts, f"Finished quoting in {time.perf_counter() - start:f} s.. compiling.")

        options = make_pipeline_options(opts, self.registrations)
        rt_imports = runtime_imports(opts.cps)
        result = self.compiler.compile(options, program)
        if not result.ok:
            debug_msg(self.channels, debug, "Pipeline debug:")
            debug_msg(self.channels, debug, result.diagnostics)
            raise CompileError(result.error or "compiler produced no output", result.diagnostics)

        self._debug(opts, "Finished compiling, printing to file.")
        start = time.perf_counter()
        hname = opts.stem + ".h"
        c_imports = rt_imports + self._imports(opts, imports) + [FromRelativePath(hname)]
        cpath, _ = self._print_modules(opts, result, opts.stem + ".c", hname, c_imports, rt_imports)
        self._debug(opts, f"Printed to file {cpath} in {time.perf_counter() - start:f} s..")
        debug_msg(self.channels, debug, "Pipeline debug:")
        debug_msg(self.channels, debug, result.diagnostics)
        return result

    def compile_only(self, opts: Options, name: str, imports: Sequence[Import] = ()) -> CompilerResult:
        self.definition(name)
        return self.compile(self._with_stem(opts, name), Const(name), imports)

    def compile_standalone(self, opts: Options, name: str, imports: Sequence[Import] = ()) -> str:
        """Compile a definition to an executable, run it and forward its output.

        The runtime's main calls the toplevel function "body".
        """
        opts = self._with_stem(opts, name)
        self.compile_only(opts, name, imports)
        rt_dir = self.toolchain.ensure_runtime(opts)
        exe = opts.make_fname(opts.stem)
        obj = self.toolchain.compile_object(opts, exe + ".c", exe + ".o")
        objects = [
            self.toolchain.runtime_object(opts, GC_OBJECT),
            obj,
            self.toolchain.runtime_object(opts, MAIN_OBJECT),
        ] + import_objects(self._imports(opts, imports), opts.build_dir, rt_dir)
        self.toolchain.link_executable(opts, exe, objects)
        self._debug(opts, f"Compilation ran fine, running {exe}")
        self.toolchain.run_program(exe, opts.debug)
        return exe

    def show_ir(self, opts: Options, name: str) -> str:
        """Write the compiler's IR for a definition to <stem><ext>.ir"""
        self.definition(name)
        opts = self._with_stem(opts, name)
        program = self.env.quote(Const(name))
        result = self.compiler.show_ir(make_pipeline_options(opts, self.registrations), program)
        if result.error is not None:
            debug_msg(self.channels, opts.debug, "Pipeline debug:")
            debug_msg(self.channels, opts.debug, result.diagnostics)
            raise CompileError(result.error, result.diagnostics)
        start = time.perf_counter()
        path = opts.make_fname(opts.stem + ".ir")
        with open(path, 'w') as f:
            f.write(result.ir + "\n")
        self._debug(opts, f"Printed to file {path} in {time.perf_counter() - start:f} s..")
        debug_msg(self.channels, opts.debug, "Pipeline debug:")
        debug_msg(self.channels, opts.debug, result.diagnostics)
        return path

    # ------------------------------------------------------------------
    # Glue and FFI code
    # ------------------------------------------------------------------

    def generate_glue(self, opts: Options, declarations: Sequence[Declaration],
                      standalone: bool = True) -> Tuple[str, str]:
        if standalone and not opts.filename:
            raise ConfigError("You need to provide a file name with the -file option.")
        options = make_pipeline_options(opts, self.registrations)
        rt_imports = runtime_imports(opts.cps) + [FromLibrary("stdio.h")]
        start = time.perf_counter()
        result = self.compiler.generate_glue(options, declarations)
        if not result.ok:
            raise CompileError(f"Could not generate glue code: {result.error}", result.diagnostics)
        self._debug(opts, f"Generated glue code in {time.perf_counter() - start:f} s..")
        if result.logs:
            self._debug(opts, "Logs:\n" + "\n".join(result.logs))

        start = time.perf_counter()
        if standalone:
            cname, hname = opts.filename + ".c", opts.filename + ".h"
        else:
            cname, hname = f"glue.{opts.stem}.c", f"glue.{opts.stem}.h"
        paths = self._print_modules(
            opts, result, cname, hname, rt_imports + [FromRelativePath(hname)], rt_imports
        )
        self._debug(opts, f"Printed glue code to file {cname} in {time.perf_counter() - start:f} s..")
        return paths

    def glue_command(self, opts: Options, names: Sequence[str]) -> Tuple[str, str]:
        declarations: List[Declaration] = []
        for name in reversed(names):
            declarations.extend(self.env.declarations_of(name))
        return self.generate_glue(opts, _nub(declarations), standalone=True)

    def ffi_command(self, opts: Options, name: str) -> Tuple[str, str]:
        self.env.inductive(name)
        program = self.env.quote(Ind(name))
        start = time.perf_counter()
        result = self.compiler.generate_ffi(make_pipeline_options(opts, self.registrations), program)
        if not result.ok:
            raise CompileError(f"Could not generate FFI glue code: {result.error}", result.diagnostics)
        self._debug(opts, f"Generated FFI glue code in {time.perf_counter() - start:f} s..")
        if result.logs:
            self._debug(opts, "Logs:\n" + "\n".join(result.logs))
        start = time.perf_counter()
        paths = self._print_modules(
            opts, result, f"ffi.{name}{opts.ext}.c", f"ffi.{name}{opts.ext}.h", [], []
        )
        self._debug(opts, f"Printed FFI glue code to file in {time.perf_counter() - start:f} s..")
        return paths

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, opts: Options, term: Term, ty: Term,
                 imports: Sequence[Import] = (), rebuild: bool = False) -> EvalResult:
        """Evaluate term of type ty natively.

        The evaluation is identified by the options' file name; a registered
        identifier is run again without rebuilding. With rebuild, or without
        a file name, a fresh identifier is derived instead, skipping names
        registered here or whose module is already open in the process.
        """
        tyinfo = classify(self.env, ty)
        base = opts.filename or ANONYMOUS_STEM
        with self.registry.lock:
            if opts.filename and not rebuild:
                artifact = self.registry.lookup(opts.filename)
                if artifact is not None:
                    self._debug(opts, f"Retrieved earlier compiled code for {opts.filename}")
                    return self._execute(opts, tyinfo, artifact, cached=True)
            taken = set(self.registry.names())

            def is_bad(name: str) -> bool:
                # a module loaded from the same path by another registry counts as used
                return name in taken or self.toolchain.is_loaded(
                    opts.make_fname(name + opts.ext + ".so"))

            fresh = next_name_away_from(base, is_bad)
            self._debug(opts, f"Found fresh name {fresh} for {base}")
            opts = opts.derive(toplevel_name=fresh + "_body", filename=fresh)
            return self._evaluate_named(opts, fresh, term, tyinfo, imports)

    def evaluate_named(self, opts: Options, identifier: str, term: Term, ty: Term,
                       imports: Sequence[Import] = ()) -> EvalResult:
        """Evaluate term under a given identifier, reusing it if registered"""
        tyinfo = classify(self.env, ty)
        with self.registry.lock:
            artifact = self.registry.lookup(identifier)
            if artifact is not None:
                self._debug(opts, f"Retrieved earlier compiled code for {identifier}")
                return self._execute(opts, tyinfo, artifact, cached=True)
            opts = opts.derive(toplevel_name=identifier + "_body", filename=identifier)
            return self._evaluate_named(opts, identifier, term, tyinfo, imports)

    def compile_shared(self, opts: Options, name: str, imports: Sequence[Import] = ()) -> EvalResult:
        """Evaluate a global definition under its own base name"""
        decl = self.definition(name)
        identifier = name.rsplit(".", 1)[-1]
        return self.evaluate_named(opts, identifier, Const(name), decl.type, imports)

    def run_existing(self, opts: Options, ty: Term, identifier: str) -> EvalResult:
        """Run an already registered entry point and decode its result as ty"""
        tyinfo = classify(self.env, ty)
        artifact = self.registry.lookup_or_fail(identifier)
        return self._execute(opts, tyinfo, artifact, cached=True)

    def _evaluate_named(self, opts: Options, identifier: str, term: Term,
                        tyinfo: ReifyableType, imports: Sequence[Import]) -> EvalResult:
        if not _C_IDENTIFIER.match(identifier):
            raise ConfigError(f"'{identifier}' is not a valid C identifier")
        result = self.compile(opts, term, imports)
        artifact = self._build_and_load(opts, identifier, imports)
        return self._execute(opts, tyinfo, artifact, diagnostics=result.diagnostics)

    def _write_driver(self, opts: Options, identifier: str) -> str:
        """Write the entry function's header and append the function to the source"""
        header = opts.stem + "_run.h"
        with open(opts.make_fname(header), 'w') as f:
            f.write(_driver_header(identifier))
        source = opts.make_fname(opts.stem + ".c")
        with open(source, 'a') as f:
            f.write(_driver_source(identifier, header))
        return source

    def _build_and_load(self, opts: Options, identifier: str,
                        imports: Sequence[Import]) -> CompiledArtifact:
        rt_dir = self.toolchain.ensure_runtime(opts)
        source = self._write_driver(opts, identifier)
        obj = self.toolchain.compile_object(opts, source, os.path.splitext(source)[0] + ".o")
        objects = [self.toolchain.runtime_object(opts, GC_OBJECT), obj]
        objects += import_objects(self._imports(opts, imports), opts.build_dir, rt_dir)
        shared = self.toolchain.link_shared(opts, opts.make_fname(opts.stem + ".so"), objects)
        self._debug(opts, f"Compilation ran fine, linking compiled code for {identifier}")

        loaded = self.toolchain.load_entry(shared, identifier)
        self._debug(opts, f"Dynamic linking succeeded, retrieving function {identifier}")
        keepalive = [loaded.library] if loaded.library is not None else []
        if loaded.register_address:
            keepalive += self.channels.install(loaded.register_address)
        artifact = CompiledArtifact(identifier, loaded.entry, shared, keepalive=keepalive)
        return self.registry.insert_if_absent(identifier, artifact)

    def _execute(self, opts: Options, tyinfo: ReifyableType, artifact: CompiledArtifact,
                 diagnostics: str = "", cached: bool = False) -> EvalResult:
        if opts.time:
            value = timed(self.channels, f"Running {artifact.identifier}", artifact.run)
        else:
            value = artifact.run()
        self.channels.raise_pending()
        self._debug(opts, "Running the dynamic linked program succeeded, reifying result")
        if opts.time:
            term = timed(self.channels, "reification", lambda: reify(self.env, tyinfo, value))
        else:
            term = reify(self.env, tyinfo, value)
        return EvalResult(term, artifact.identifier, diagnostics, cached)
