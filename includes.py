"""
Header Imports and Global Registrations

An import names a header the generated code includes. Headers that ship
with the runtime are library imports; others are found relative to the
build directory. Absolute imports are resolved against the directory of
the session that registered them and rewritten to build-relative paths
before anything is printed or linked, so no absolute path ends up in
generated sources.

Each header stands for an object file of the same name that is linked
into the final artifact.
"""

import os
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple


@dataclass(frozen=True)
class Import:
    """Base class for header imports"""
    path: str


@dataclass(frozen=True)
class FromLibrary(Import):
    """A runtime header: #include <path>"""
    pass


@dataclass(frozen=True)
class FromRelativePath(Import):
    """A header relative to the build directory: #include "path" """
    pass


@dataclass(frozen=True)
class FromAbsolutePath(Import):
    """A header relative to the current library directory"""
    pass


def resolve_import(imp: Import, build_dir: str = ".",
                   curlib: Optional[str] = None) -> Import:
    """Rewrite an absolute import into a build-relative one"""
    if not isinstance(imp, FromAbsolutePath):
        return imp
    base = curlib if curlib is not None else os.getcwd()
    target = os.path.join(base, imp.path)
    return FromRelativePath(os.path.relpath(target, os.path.abspath(build_dir)))


def resolve_imports(imports: Sequence[Import], build_dir: str = ".",
                    curlib: Optional[str] = None) -> List[Import]:
    return [resolve_import(i, build_dir, curlib) for i in imports]


def include_line(imp: Import) -> str:
    if isinstance(imp, FromLibrary):
        return f"#include <{imp.path}>"
    if isinstance(imp, FromRelativePath):
        return f'#include "{imp.path}"'
    raise ValueError(f"Import with absolute path should have been resolved: {imp.path}")


def object_name(header: str) -> str:
    """The object file that implements a header"""
    if not header.endswith(".h"):
        raise ValueError(f"Import '{header}' is not a header file")
    return header[:-2] + ".o"


def import_objects(imports: Sequence[Import], build_dir: str, runtime_dir: str) -> List[str]:
    """Object files to link for imports (already resolved)"""
    objects = []
    for imp in imports:
        if isinstance(imp, FromLibrary):
            objects.append(os.path.join(runtime_dir, object_name(imp.path)))
        elif isinstance(imp, FromRelativePath):
            objects.append(os.path.join(build_dir, object_name(imp.path)))
        else:
            raise ValueError(f"Import with absolute path should have been resolved: {imp.path}")
    return objects


def runtime_imports(cps: bool) -> List[Import]:
    """The memory-management header for the calling convention in effect"""
    return [FromLibrary("gc.h" if cps else "gc_stack.h")]


# ============================================================================
# Global Registrations
# ============================================================================

# A primitive registration: ((kernel name, C name), takes thread info)
Primitive = Tuple[Tuple[str, str], bool]


class Registrations:
    """Primitive operations and includes registered for the whole session.

    Later registrations come first. Absolute imports are anchored to the
    directory that was current when they were registered and turned into
    build-relative paths at build time.
    """

    def __init__(self):
        self._prims: List[Primitive] = []
        self._includes: List[Import] = []

    def register(self, prims: Sequence[Primitive], imports: Sequence[Import] = ()):
        curlib = os.getcwd()
        resolved = [
            FromAbsolutePath(os.path.join(curlib, i.path))
            if isinstance(i, FromAbsolutePath) else i
            for i in imports
        ]
        self._prims = list(prims) + self._prims
        self._includes = resolved + self._includes

    @property
    def prims(self) -> List[Primitive]:
        return list(self._prims)

    @property
    def includes(self) -> List[Import]:
        return list(self._includes)
