"""
Tests for the evaluation orchestrator.

The compiler and toolchain are scripted (see conftest.py), so these tests
check the pipeline itself: caching, naming, file emission, error
propagation and the auxiliary commands.
"""

import os
import sys
import threading
import time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from artifacts import ArtifactRegistry
from eval_errors import (
    CompileError, ConfigError, NativeUserError, NotFoundError,
    ToolchainError, UnreifyableTypeError, IllFormedValueError,
)
from includes import FromLibrary, FromRelativePath, Registrations
from orchestrator import NativeEvaluator, ANONYMOUS_STEM
from runtime_values import Immediate, Block
from terms import App, Const, Ind, Construct, IntLit, Prod, pretty


@pytest.fixture
def evaluator(env, compiler, toolchain, channels):
    return NativeEvaluator(env, compiler, toolchain, ArtifactRegistry(), Registrations(), channels)


def stages(toolchain):
    return [stage for stage, _ in toolchain.commands]


class TestEvaluate:

    def test_round_trip(self, evaluator, toolchain, options):
        toolchain.values["answer"] = Block(0, (Immediate(42),))
        opts = options.derive(filename="answer")
        ty = App(Ind("option"), (Const("int63"),))
        result = evaluator.evaluate(opts, Const("opaque"), ty)
        assert result.term == App(Construct("option", 1), (Const("int63"), IntLit(42)))
        assert result.identifier == "answer"
        assert not result.cached
        assert stages(toolchain) == ["compile", "link", "load"]

    def test_cache_hit_skips_build(self, evaluator, compiler, toolchain, options):
        toolchain.values["answer"] = Immediate(1)
        opts = options.derive(filename="answer")
        first = evaluator.evaluate(opts, Const("opaque"), Ind("bool"))
        second = evaluator.evaluate(opts, Const("opaque"), Ind("bool"))
        assert first.term == second.term == Construct("bool", 1)
        assert second.cached
        assert len(compiler.programs) == 1
        assert toolchain.loads == ["answer"]
        assert evaluator.registry.lookup("answer").invoked

    def test_cached_entry_is_run_again(self, evaluator, toolchain, options):
        runs = []
        toolchain.values["count"] = lambda: runs.append(1) or Immediate(len(runs))
        opts = options.derive(filename="count")
        evaluator.evaluate(opts, Const("opaque"), Const("int63"))
        result = evaluator.evaluate(opts, Const("opaque"), Const("int63"))
        assert result.term == IntLit(2)

    def test_anonymous_names_are_fresh(self, evaluator, toolchain, options):
        first = evaluator.evaluate(options, Const("opaque"), Ind("bool"))
        second = evaluator.evaluate(options, Const("opaque"), Ind("bool"))
        assert first.identifier == ANONYMOUS_STEM
        assert second.identifier == ANONYMOUS_STEM + "0"
        assert toolchain.loads == ["eval", "eval0"]

    def test_rebuild_uses_fresh_name(self, evaluator, toolchain, options):
        opts = options.derive(filename="foo")
        evaluator.evaluate(opts, Const("opaque"), Ind("bool"))
        rebuilt = evaluator.evaluate(opts, Const("opaque"), Ind("bool"), rebuild=True)
        assert rebuilt.identifier == "foo0"
        assert not rebuilt.cached
        assert sorted(evaluator.registry.names()) == ["foo", "foo0"]

    def test_name_of_module_loaded_elsewhere_is_skipped(self, evaluator, toolchain, options,
                                                        build_dir, monkeypatch):
        # Another registry already loaded eval.so from this build directory
        taken = os.path.join(str(build_dir), "eval.so")
        monkeypatch.setattr(toolchain, "is_loaded", lambda path: path == taken)
        result = evaluator.evaluate(options, Const("opaque"), Ind("bool"))
        assert result.identifier == "eval0"
        assert toolchain.loads == ["eval0"]

    def test_files_written(self, evaluator, options, build_dir):
        evaluator.evaluate(options.derive(filename="prog"), Const("opaque"), Ind("bool"))
        source = (build_dir / "prog.c").read_text()
        header = (build_dir / "prog.h").read_text()
        assert source.startswith("#include <gc_stack.h>\n")
        assert '#include "prog.h"' in source
        assert "prog_body" in source
        # Driver stub appended after the generated code
        assert source.rstrip().endswith("return prog_body(tinfo); }")
        assert "extern value prog_body" in header
        assert "extern value prog(void);" in (build_dir / "prog_run.h").read_text()
        # The stub is declared by its own header
        assert source.index('#include "prog_run.h"') < source.index("value prog(void)")

    def test_cps_header(self, evaluator, options, build_dir):
        evaluator.evaluate(options.derive(filename="prog", cps=True), Const("opaque"), Ind("bool"))
        assert (build_dir / "prog.c").read_text().startswith("#include <gc.h>\n")

    def test_ext_in_file_names(self, evaluator, toolchain, options, build_dir):
        evaluator.evaluate(options.derive(filename="prog", ext="_x"), Const("opaque"), Ind("bool"))
        assert (build_dir / "prog_x.c").exists()
        assert (build_dir / "prog_x_run.h").exists()
        _, link_cmd = toolchain.commands[1]
        assert os.path.join(str(build_dir), "prog_x.so") in link_cmd

    def test_imports_linked(self, evaluator, toolchain, options, build_dir):
        evaluator.registrations.register([], [FromLibrary("prims.h")])
        evaluator.evaluate(options.derive(filename="prog"), Const("opaque"), Ind("bool"),
                           imports=[FromRelativePath("mine.h")])
        source = (build_dir / "prog.c").read_text()
        assert "#include <prims.h>" in source
        assert '#include "mine.h"' in source
        _, link_cmd = toolchain.commands[1]
        assert link_cmd[-2].endswith("prims.o")
        assert link_cmd[-1] == os.path.join(str(build_dir), "mine.o")

    def test_unreifyable_type_checked_first(self, evaluator, compiler, toolchain, options):
        with pytest.raises(UnreifyableTypeError):
            evaluator.evaluate(options, Const("succ"), Prod("_", Ind("nat"), Ind("nat")))
        assert compiler.programs == []
        assert toolchain.commands == []

    def test_ill_formed_result(self, evaluator, toolchain, options):
        toolchain.values["bad"] = Immediate(7)
        with pytest.raises(IllFormedValueError):
            evaluator.evaluate(options.derive(filename="bad"), Const("opaque"), Ind("bool"))

    def test_invalid_identifier(self, evaluator, options):
        with pytest.raises(ConfigError):
            evaluator.evaluate(options.derive(filename="not-valid"), Const("opaque"), Ind("bool"))


class TestFailures:

    def test_compile_error(self, evaluator, compiler, toolchain, options):
        compiler.error = "unsupported fixpoint"
        compiler.diagnostics = "stage 3 failed"
        with pytest.raises(CompileError) as exc:
            evaluator.evaluate(options.derive(filename="foo"), Const("opaque"), Ind("bool"))
        assert str(exc.value) == "Could not compile: unsupported fixpoint"
        assert exc.value.diagnostics == "stage 3 failed"
        assert toolchain.commands == []
        assert not evaluator.registry.contains("foo")

    def test_compile_error_debug_output(self, evaluator, compiler, channels, options):
        compiler.error = "boom"
        compiler.diagnostics = "trace"
        with pytest.raises(CompileError):
            evaluator.evaluate(options.derive(debug=True), Const("opaque"), Ind("bool"))
        assert "Pipeline debug:" in channels.messages["debug"]
        assert "trace" in channels.messages["debug"]

    @pytest.mark.parametrize("stage", ["compile", "link", "load"])
    def test_toolchain_error(self, evaluator, toolchain, options, stage):
        toolchain.fail_stage = stage
        with pytest.raises(ToolchainError) as exc:
            evaluator.evaluate(options.derive(filename="foo"), Const("opaque"), Ind("bool"))
        assert exc.value.stage == stage
        assert not evaluator.registry.contains("foo")

    def test_native_user_error(self, evaluator, toolchain, channels, options):
        def failing():
            channels.user_error("index out of bounds")
            return Immediate(0)
        toolchain.values["oops"] = failing
        with pytest.raises(NativeUserError) as exc:
            evaluator.evaluate(options.derive(filename="oops"), Const("opaque"), Ind("bool"))
        assert "index out of bounds" in str(exc.value)


class TestNamedEvaluation:

    def test_evaluate_named(self, evaluator, toolchain, options):
        toolchain.values["thing"] = Immediate(1)
        result = evaluator.evaluate_named(options, "thing", Const("opaque"), Ind("bool"))
        assert result.identifier == "thing"
        again = evaluator.evaluate_named(options, "thing", Const("opaque"), Ind("bool"))
        assert again.cached
        assert toolchain.loads == ["thing"]

    def test_compile_shared(self, evaluator, toolchain, options, build_dir):
        toolchain.values["two"] = Block(0, (Block(0, (Immediate(0),)),))
        result = evaluator.compile_shared(options, "two")
        assert pretty(result.term) == "S (S O)"
        assert result.identifier == "two"
        assert (build_dir / "two.c").exists()

    def test_compile_shared_requires_definition(self, evaluator, options):
        with pytest.raises(NotFoundError):
            evaluator.compile_shared(options, "nat")

    def test_run_existing(self, evaluator, toolchain, options):
        toolchain.values["num"] = Immediate(5)
        evaluator.evaluate_named(options, "num", Const("opaque"), Const("int63"))
        result = evaluator.run_existing(options, Const("int63"), "num")
        assert result.term == IntLit(5)
        assert result.cached

    def test_run_existing_unknown(self, evaluator, options):
        with pytest.raises(NotFoundError):
            evaluator.run_existing(options, Ind("bool"), "never_built")

    def test_concurrent_requests_build_once(self, evaluator, toolchain, options):
        original = toolchain.compile_object

        def slow_compile(opts, source, obj):
            time.sleep(0.05)
            return original(opts, source, obj)

        toolchain.compile_object = slow_compile
        toolchain.values["shared"] = Immediate(1)
        results = []

        def request():
            results.append(evaluator.evaluate_named(options, "shared", Const("opaque"), Ind("bool")))

        threads = [threading.Thread(target=request) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(results) == 4
        assert toolchain.loads == ["shared"]
        assert sum(1 for r in results if not r.cached) == 1


class TestTiming:

    def test_time_reports(self, evaluator, channels, options):
        evaluator.evaluate(options.derive(filename="timed", time=True), Const("opaque"), Ind("bool"))
        notices = channels.messages["notice"]
        assert any(n.startswith("Running timed executed in") for n in notices)
        assert any(n.startswith("reification executed in") for n in notices)

    def test_no_timing_by_default(self, evaluator, channels, options):
        evaluator.evaluate(options.derive(filename="quiet"), Const("opaque"), Ind("bool"))
        assert channels.messages["notice"] == []


class TestCommands:

    def test_compile_only(self, evaluator, toolchain, options, build_dir):
        evaluator.compile_only(options, "two")
        assert (build_dir / "two.c").exists()
        assert (build_dir / "two.h").exists()
        assert toolchain.commands == []

    def test_compile_only_unknown(self, evaluator, options):
        with pytest.raises(NotFoundError):
            evaluator.compile_only(options, "missing")

    def test_compile_standalone(self, evaluator, toolchain, options, build_dir):
        exe = evaluator.compile_standalone(options, "two")
        assert exe == os.path.join(str(build_dir), "two")
        assert stages(toolchain) == ["compile", "link", "run"]
        _, link_cmd = toolchain.commands[1]
        assert link_cmd[-1].endswith("runtime_main.o")

    def test_show_ir(self, evaluator, options, build_dir):
        path = evaluator.show_ir(options, "two")
        assert path == os.path.join(str(build_dir), "two.ir")
        assert (build_dir / "two.ir").read_text() == "; ir\n"

    def test_show_ir_error(self, evaluator, compiler, options):
        compiler.error = "no IR"
        with pytest.raises(CompileError):
            evaluator.show_ir(options, "two")

    def test_glue_requires_file_name(self, evaluator, options):
        with pytest.raises(ConfigError) as exc:
            evaluator.glue_command(options, ["nat"])
        assert "-file" in str(exc.value)

    def test_glue_command(self, evaluator, options, build_dir):
        opts = options.derive(filename="glue")
        cpath, hpath = evaluator.glue_command(opts, ["nat", "list", "nat"])
        source = (build_dir / "glue.c").read_text()
        assert "#include <stdio.h>" in source
        assert '#include "glue.h"' in source
        # Names are processed right to left, duplicates dropped
        assert "/* glue: nat, list */" in source
        assert hpath == os.path.join(str(build_dir), "glue.h")

    def test_glue_not_standalone(self, evaluator, options, build_dir):
        evaluator.generate_glue(options.derive(filename="prog"), [], standalone=False)
        assert (build_dir / "glue.prog.c").exists()
        assert (build_dir / "glue.prog.h").exists()

    def test_ffi_command(self, evaluator, options, build_dir):
        cpath, hpath = evaluator.ffi_command(options.derive(ext="_1"), "shape")
        assert cpath == os.path.join(str(build_dir), "ffi.shape_1.c")
        assert (build_dir / "ffi.shape_1.h").read_text().startswith("\n/* ffi header */")

    def test_ffi_requires_inductive(self, evaluator, options):
        with pytest.raises(NotFoundError):
            evaluator.ffi_command(options, "two")
