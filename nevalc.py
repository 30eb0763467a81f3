#!/usr/bin/env python3
"""
Native Evaluation Driver

Usage:
    python nevalc.py <env.json> <mode> <name>... [options]

Modes:
    eval        Evaluate a definition (or --term/--type) natively, print the value
    shared      Evaluate a definition under its own name as identifier
    compile     Emit C code for a definition
    standalone  Compile a definition to an executable and run it
    ir          Write the compiler IR for a definition
    glue        Generate constructor glue code for the named types
    ffi         Generate FFI glue code for a record of functions

Examples:
    python nevalc.py prog.json eval answer                 # Prints the value of answer
    python nevalc.py prog.json eval answer --time          # With timing of run and reification
    python nevalc.py prog.json compile answer -b build     # Writes build/answer.c and .h
    python nevalc.py prog.json glue nat list --file glue   # Writes glue.c and glue.h
    python nevalc.py prog.json eval --term '["int", 7]' --type '["const", "int63"]'
"""

import sys
import argparse
from typing import List

from eval_errors import EvalError
from eval_options import CommandArg, make_options, read_options_table
from host_channels import HostChannels
from orchestrator import NativeEvaluator
from term_json import load_environment, parse_term
from terms import Const, pretty
from value_backend import ValueCompiler

MODES = ("eval", "shared", "compile", "standalone", "ir", "glue", "ffi")


def command_args(args) -> List[CommandArg]:
    """Options file entries first, so flags given on the command line win"""
    result: List[CommandArg] = []
    if args.config:
        result.extend(read_options_table(args.config))
    if args.cps:
        result.append("cps")
    if args.debug:
        result.append("debug")
    if args.time:
        result.append("time")
    if args.opt is not None:
        result.append(("opt", args.opt))
    if args.build_dir is not None:
        result.append(("build_dir", args.build_dir))
    if args.file is not None:
        result.append(("file", args.file))
    if args.ext is not None:
        result.append(("ext", args.ext))
    if args.prefix is not None:
        result.append(("prefix", args.prefix))
    if args.cc is not None:
        result.append(("cc", args.cc))
    if args.runtime_dir is not None:
        result.append(("runtime_dir", args.runtime_dir))
    return result


def run(args) -> int:
    env = load_environment(args.environment)
    opts = make_options(command_args(args))
    evaluator = NativeEvaluator(env, ValueCompiler(), channels=HostChannels())
    names = args.names

    if args.mode in ("eval", "shared") and args.term is not None:
        if args.type is None:
            raise EvalError("--term needs --type")
        term = parse_term(args.term, env)
        ty = parse_term(args.type, env)
        result = evaluator.evaluate(opts, term, ty)
        print(pretty(result.term))
        return 0

    if not names:
        raise EvalError(f"Mode '{args.mode}' needs at least one name")

    if args.mode == "eval":
        for name in names:
            decl = evaluator.definition(name)
            result = evaluator.evaluate(opts, Const(name), decl.type)
            print(pretty(result.term))
    elif args.mode == "shared":
        for name in names:
            result = evaluator.compile_shared(opts, name)
            print(pretty(result.term))
    elif args.mode == "compile":
        for name in names:
            evaluator.compile_only(opts, name)
    elif args.mode == "standalone":
        for name in names:
            exe = evaluator.compile_standalone(opts, name)
            print(f"Successfully compiled to {exe}")
    elif args.mode == "ir":
        for name in names:
            path = evaluator.show_ir(opts, name)
            print(f"Wrote IR to {path}")
    elif args.mode == "glue":
        cpath, hpath = evaluator.glue_command(opts, names)
        print(f"Wrote glue code to {cpath} and {hpath}")
    elif args.mode == "ffi":
        for name in names:
            cpath, hpath = evaluator.ffi_command(opts, name)
            print(f"Wrote FFI glue code to {cpath} and {hpath}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Native evaluation driver",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s prog.json eval answer              Print the value of answer
  %(prog)s prog.json compile answer -b build  Emit build/answer.c and .h
  %(prog)s prog.json standalone answer        Build and run an executable
  %(prog)s prog.json glue nat list --file g   Emit g.c and g.h
        """
    )

    parser.add_argument("environment", help="Environment file (.json)")
    parser.add_argument("mode", choices=MODES, help="What to do")
    parser.add_argument("names", nargs="*", help="Global names")
    parser.add_argument("--term", help="Term to evaluate, as JSON")
    parser.add_argument("--type", help="Type of --term, as JSON")
    parser.add_argument("-b", "--build-dir", help="Directory for generated files")
    parser.add_argument("--file", help="Stem of generated files")
    parser.add_argument("--ext", help="Suffix appended to the stem")
    parser.add_argument("-O", "--opt", type=int, help="Optimization level (default 1)")
    parser.add_argument("--cps", action="store_true", help="Use the CPS pipeline")
    parser.add_argument("--debug", action="store_true", help="Print debug messages")
    parser.add_argument("--time", action="store_true", help="Time running and reification")
    parser.add_argument("--prefix", help="Prefix of generated FFI functions")
    parser.add_argument("--cc", help="C compiler to use")
    parser.add_argument("--runtime-dir", help="Directory of the runtime headers and objects")
    parser.add_argument("--config", help="TOML file with an [options] table")

    args = parser.parse_args(argv)

    try:
        sys.exit(run(args))
    except EvalError as e:
        print(f"Evaluation failed: {e}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Internal error: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(2)


if __name__ == "__main__":
    main()
