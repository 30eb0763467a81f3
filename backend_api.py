"""
Compiler Capability

The interface between the evaluator and the compiler that turns a quoted
program into C. The compiler itself is a collaborator: the evaluator only
relies on the results described here.

A successful compilation yields two modules, the definitions and their
header, plus a name environment mapping generated C identifiers back to
source names. Failures carry the compiler's message. Either way the
compiler's diagnostic log comes back for the caller to show.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from eval_options import PipelineOptions
from includes import Import, include_line
from terms import Declaration, Program


@dataclass
class CModule:
    """A generated C translation unit, without its #include lines"""
    text: str


@dataclass
class CompiledModules:
    definitions: CModule
    header: CModule
    name_env: Dict[str, str] = field(default_factory=dict)  # C identifier -> source name


@dataclass
class CompilerResult:
    modules: Optional[CompiledModules] = None
    error: Optional[str] = None
    diagnostics: str = ""
    logs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and self.modules is not None


@dataclass
class IRResult:
    ir: Optional[str] = None
    error: Optional[str] = None
    diagnostics: str = ""


class CompilerInterface(ABC):
    """What the evaluator needs from a compiler"""

    @abstractmethod
    def compile(self, options: PipelineOptions, program: Program) -> CompilerResult:
        ...

    @abstractmethod
    def generate_glue(self, options: PipelineOptions,
                      declarations: Sequence[Declaration]) -> CompilerResult:
        ...

    @abstractmethod
    def generate_ffi(self, options: PipelineOptions, program: Program) -> CompilerResult:
        ...

    @abstractmethod
    def show_ir(self, options: PipelineOptions, program: Program) -> IRResult:
        ...

    def print_program(self, module: CModule, name_env: Dict[str, str],
                      dest: str, imports: Sequence[Import]):
        """Write module to dest, preceded by its includes"""
        lines = [include_line(i) for i in imports]
        with open(dest, 'w') as f:
            for line in lines:
                f.write(line + "\n")
            if name_env:
                f.write("\n/* Names:\n")
                for cname, source in sorted(name_env.items()):
                    f.write(f"   {cname}: {source}\n")
                f.write("*/\n")
            f.write("\n")
            f.write(module.text)
            if not module.text.endswith("\n"):
                f.write("\n")
