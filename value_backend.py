"""
Value Backend

A compiler for programs that normalize to closed values: constructor
applications, machine integers and floats, optionally combined by calls
to registered primitive operations. It stands in for the full compiler
where only the evaluation round trip matters.

The normalized body is lowered once into allocation steps, which are
printed either as C (the module that gets compiled and linked) or as an
LLVM IR listing for inspection. Constructors are numbered with
constructor_layout(), the same partition the decoder reads values with:
constant constructors become immediates, the others tagged blocks.
"""

import re
from typing import Dict, List, Sequence, Tuple

from llvmlite import ir, binding

from backend_api import (
    CompilerInterface, CompilerResult, CompiledModules, CModule, IRResult,
)
from eval_errors import EvalError
from eval_options import PipelineOptions
from reify_types import constructor_layout
from runtime_values import float_to_bits
from terms import (
    Term, Construct, IntLit, FloatLit, Const, Ind, InductiveDecl, Prod,
    Declaration, Environment, Program, decompose_app, pretty,
)

MIN_INT = -(1 << 62)
MAX_INT = (1 << 62) - 1


class LoweringError(EvalError):
    """The program does not normalize to something this backend can build"""
    pass


def c_identifier(name: str) -> str:
    ident = re.sub(r"[^A-Za-z0-9_]", "_", name)
    if not ident or ident[0].isdigit():
        ident = "_" + ident
    return ident


# ============================================================================
# Lowering
# ============================================================================

class _Sink:
    """Receives allocation steps in evaluation order"""

    def immediate(self, n: int):
        raise NotImplementedError

    def boxed_float(self, bits: int):
        raise NotImplementedError

    def block(self, tag: int, fields: list, label: str):
        raise NotImplementedError

    def call(self, cname: str, takes_tinfo: bool, args: list):
        raise NotImplementedError


def _prim_table(options: PipelineOptions) -> Dict[str, Tuple[str, bool]]:
    return {kername: (cname, takes) for (kername, cname), takes in options.prims}


def _lower(env: Environment, prims: Dict[str, Tuple[str, bool]], term: Term, sink: _Sink):
    """Hand the allocation steps of term to sink, fields before their block.

    Uses an explicit work stack so deep values lower without recursion.
    """
    results: list = []
    # ("visit", term), ("block", (tag, field count, label)) or ("call", (cname, tinfo, argc))
    work: List[Tuple[str, object]] = [("visit", term)]
    while work:
        op, item = work.pop()
        if op == "block":
            tag, count, label = item
            fields = results[len(results) - count:]
            del results[len(results) - count:]
            results.append(sink.block(tag, fields, label))
            continue
        if op == "call":
            cname, takes_tinfo, count = item
            actuals = results[len(results) - count:]
            del results[len(results) - count:]
            results.append(sink.call(cname, takes_tinfo, actuals))
            continue

        head, args = decompose_app(item)
        if isinstance(head, Construct):
            decl = env.inductive(head.ind)
            if not 0 <= head.index < len(decl.constructors):
                raise LoweringError(f"{decl.name} has no constructor #{head.index}")
            ctor = decl.constructors[head.index]
            if len(args) != decl.nparams + ctor.arity:
                raise LoweringError(
                    f"Constructor {ctor.name} expects {decl.nparams} parameter(s) and "
                    f"{ctor.arity} field(s), got {len(args)} argument(s): {pretty(item)}"
                )
            is_block, ordinal = constructor_layout(decl).ordinal_of(head.index)
            if not is_block:
                results.append(sink.immediate(ordinal))
                continue
            fields = args[decl.nparams:]
            work.append(("block", (ordinal, len(fields), ctor.name)))
            work.extend(("visit", a) for a in reversed(fields))
        elif isinstance(head, IntLit) and not args:
            if not MIN_INT <= head.value <= MAX_INT:
                raise LoweringError(f"Integer literal {head.value} does not fit in 63 bits")
            results.append(sink.immediate(head.value))
        elif isinstance(head, FloatLit) and not args:
            results.append(sink.boxed_float(float_to_bits(head.value)))
        elif isinstance(head, Const) and head.name in prims:
            cname, takes_tinfo = prims[head.name]
            work.append(("call", (cname, takes_tinfo, len(args))))
            work.extend(("visit", a) for a in reversed(args))
        else:
            raise LoweringError(f"Not a closed value: {pretty(item)}")
    return results[0]


class _CSink(_Sink):
    """Prints allocation steps as C statements"""

    def __init__(self):
        self.lines: List[str] = []
        self.name_env: Dict[str, str] = {}
        self.blocks = 0
        self.counter = 0

    def _fresh(self, prefix: str) -> str:
        name = f"{prefix}{self.counter}"
        self.counter += 1
        return name

    def immediate(self, n: int) -> str:
        return f"Val_long({n}LL)"

    def boxed_float(self, bits: int) -> str:
        v = self._fresh("v")
        self.lines.append(f"value {v} = box_double_bits(tinfo, {bits}ULL);")
        return v

    def block(self, tag: int, fields: list, label: str) -> str:
        b = self._fresh("b")
        self.blocks += 1
        self.name_env[b] = label
        self.lines.append(f"value *{b} = alloc_block(tinfo, {tag}, {len(fields)});")
        for i, f in enumerate(fields):
            self.lines.append(f"{b}[{i}] = {f};")
        return f"(value) {b}"

    def call(self, cname: str, takes_tinfo: bool, args: list) -> str:
        v = self._fresh("v")
        actuals = (["tinfo"] if takes_tinfo else []) + list(args)
        self.lines.append(f"value {v} = {cname}({', '.join(actuals)});")
        return v


class _IRSink(_Sink):
    """Builds the allocation steps with an llvmlite IRBuilder"""

    def __init__(self, module: ir.Module, builder: ir.IRBuilder, tinfo):
        self.module = module
        self.builder = builder
        self.tinfo = tinfo
        self.i64 = ir.IntType(64)
        self.i8_ptr = ir.IntType(8).as_pointer()
        self.functions: Dict[str, ir.Function] = {}

    def _declare(self, name: str, ret: ir.Type, params: List[ir.Type]) -> ir.Function:
        if name not in self.functions:
            self.functions[name] = ir.Function(self.module, ir.FunctionType(ret, params), name=name)
        return self.functions[name]

    def immediate(self, n: int):
        return ir.Constant(self.i64, (n << 1) | 1)

    def boxed_float(self, bits: int):
        box = self._declare("box_double_bits", self.i64, [self.i8_ptr, self.i64])
        signed = bits - (1 << 64) if bits & (1 << 63) else bits
        return self.builder.call(box, [self.tinfo, ir.Constant(self.i64, signed)], name="f")

    def block(self, tag: int, fields: list, label: str):
        alloc = self._declare("alloc_block", self.i64, [self.i8_ptr, self.i64, self.i64])
        blk = self.builder.call(
            alloc, [self.tinfo, ir.Constant(self.i64, tag), ir.Constant(self.i64, len(fields))],
            name=c_identifier(label)
        )
        for i, f in enumerate(fields):
            addr = self.builder.add(blk, ir.Constant(self.i64, 8 * i))
            slot = self.builder.inttoptr(addr, self.i64.as_pointer())
            self.builder.store(f, slot)
        return blk

    def call(self, cname: str, takes_tinfo: bool, args: list):
        params = ([self.i8_ptr] if takes_tinfo else []) + [self.i64] * len(args)
        fn = self._declare(cname, self.i64, params)
        actuals = ([self.tinfo] if takes_tinfo else []) + list(args)
        return self.builder.call(fn, actuals, name="p")


# ============================================================================
# Compiler
# ============================================================================

class ValueCompiler(CompilerInterface):
    """Compiles closed values to C that allocates their runtime representation"""

    def _normalize(self, program: Program) -> Tuple[Environment, Term]:
        env = Environment(program.declarations)
        return env, env.normalize(program.body)

    def compile(self, options: PipelineOptions, program: Program) -> CompilerResult:
        log = [f"value backend: opt level {options.olevel}, "
               f"{'cps' if options.cps else 'direct'} style"]
        try:
            env, body = self._normalize(program)
            sink = _CSink()
            result = _lower(env, _prim_table(options), body, sink)
        except EvalError as e:
            log.append(str(e))
            return CompilerResult(error=str(e), diagnostics="\n".join(log))
        log.append(f"normalized body: {pretty(body)}")
        log.append(f"{sink.blocks} block allocation(s)")

        toplevel = options.toplevel_name
        lines = [f"value {toplevel}(struct thread_info *tinfo)", "{"]
        lines.extend("  " + line for line in sink.lines)
        lines.append(f"  return {result};")
        lines.append("}")
        definitions = CModule("\n".join(lines) + "\n")
        header = CModule(f"extern value {toplevel}(struct thread_info *tinfo);\n")
        name_env = dict(sink.name_env)
        name_env[toplevel] = "toplevel value"
        return CompilerResult(
            modules=CompiledModules(definitions, header, name_env),
            diagnostics="\n".join(log),
        )

    def show_ir(self, options: PipelineOptions, program: Program) -> IRResult:
        try:
            env, body = self._normalize(program)
            module = ir.Module(name=options.toplevel_name)
            module.triple = binding.get_default_triple()
            i64 = ir.IntType(64)
            i8_ptr = ir.IntType(8).as_pointer()
            fn = ir.Function(module, ir.FunctionType(i64, [i8_ptr]), name=options.toplevel_name)
            fn.args[0].name = "tinfo"
            builder = ir.IRBuilder(fn.append_basic_block(name="entry"))
            sink = _IRSink(module, builder, fn.args[0])
            builder.ret(_lower(env, _prim_table(options), body, sink))
        except EvalError as e:
            return IRResult(error=str(e), diagnostics=str(e))
        return IRResult(ir=str(module), diagnostics=f"normalized body: {pretty(body)}")

    def generate_glue(self, options: PipelineOptions,
                      declarations: Sequence[Declaration]) -> CompilerResult:
        """Constructor and tag-inspection functions for each inductive type"""
        prefix = options.prefix
        defs: List[str] = []
        protos: List[str] = []
        logs: List[str] = []
        name_env: Dict[str, str] = {}
        for decl in declarations:
            if not isinstance(decl, InductiveDecl):
                continue
            try:
                layout = constructor_layout(decl)
            except EvalError as e:
                return CompilerResult(error=str(e), logs=logs)
            ind = c_identifier(decl.name)
            for index, ctor in enumerate(decl.constructors):
                fname = f"{prefix}make_{ind}_{c_identifier(ctor.name)}"
                name_env[fname] = ctor.name
                is_block, ordinal = layout.ordinal_of(index)
                if not is_block:
                    protos.append(f"value {fname}(void);")
                    defs.append(f"value {fname}(void)\n{{\n  return Val_long({ordinal});\n}}\n")
                    continue
                params = ", ".join(f"value f{i}" for i in range(ctor.arity))
                sig = f"value {fname}(struct thread_info *tinfo, {params})"
                body = [f"  value *b = alloc_block(tinfo, {ordinal}, {ctor.arity});"]
                body.extend(f"  b[{i}] = f{i};" for i in range(ctor.arity))
                body.append("  return (value) b;")
                protos.append(sig + ";")
                defs.append(sig + "\n{\n" + "\n".join(body) + "\n}\n")

            tag_fn = f"{prefix}get_{ind}_tag"
            const_table = ", ".join(str(i) for i in layout.constant) or "0"
            block_table = ", ".join(str(i) for i in layout.non_constant) or "0"
            protos.append(f"unsigned int {tag_fn}(value v);")
            defs.append(
                f"unsigned int {tag_fn}(value v)\n{{\n"
                f"  static const unsigned int constant[] = {{ {const_table} }};\n"
                f"  static const unsigned int boxed[] = {{ {block_table} }};\n"
                f"  if (Is_block(v))\n"
                f"    return boxed[get_boxed_ordinal(v)];\n"
                f"  return constant[get_unboxed_ordinal(v)];\n"
                f"}}\n"
            )
            logs.append(f"glue for {decl.name}: {len(decl.constructors)} constructor(s)")

        if not defs:
            return CompilerResult(error="no inductive types to generate glue for", logs=logs)
        return CompilerResult(
            modules=CompiledModules(CModule("\n".join(defs)), CModule("\n".join(protos) + "\n"), name_env),
            logs=logs,
        )

    def generate_ffi(self, options: PipelineOptions, program: Program) -> CompilerResult:
        """Prototypes for the foreign functions described by an inductive type.

        Every field of every constructor is one foreign function; its arity
        is the number of arguments of the field's type.
        """
        head, _ = decompose_app(program.body)
        if not isinstance(head, Ind):
            return CompilerResult(error=f"{pretty(program.body)} is not an inductive type")
        env = Environment(program.declarations)
        decl = env.inductive(head.name)
        prefix = options.prefix
        protos: List[str] = []
        entries: List[str] = []
        logs: List[str] = []
        name_env: Dict[str, str] = {}
        for ctor in decl.constructors:
            for fname, fty in ctor.fields:
                arity = 0
                t = env.whd(fty)
                while isinstance(t, Prod):
                    arity += 1
                    t = env.whd(t.codomain)
                cname = f"{prefix}{c_identifier(fname)}"
                name_env[cname] = fname
                params = ", ".join(["struct thread_info *tinfo"] + [f"value a{i}" for i in range(arity)])
                protos.append(f"extern value {cname}({params});")
                entries.append(f'  {{ "{fname}", {arity} }},')
                logs.append(f"foreign function {cname}/{arity}")
        table = f"{prefix}{c_identifier(decl.name)}_ffi_table"
        entry_struct = "struct ffi_entry { const char *name; unsigned int arity; };"
        defs = [
            entry_struct,
            "",
            f"const struct ffi_entry {table}[] = {{",
            *entries,
            "  { 0, 0 }",
            "};",
        ]
        protos.append(f"extern const struct ffi_entry {table}[];")
        header = [entry_struct] + protos
        return CompilerResult(
            modules=CompiledModules(CModule("\n".join(defs) + "\n"), CModule("\n".join(header) + "\n"), name_env),
            logs=logs,
        )
