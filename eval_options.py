"""
Evaluation Options

Options are built once per command from a list of command arguments (or
an options file) and never changed afterwards; commands that need a
variant, such as a fresh file name, derive a new record with replace().

Command arguments are either a bare flag name ("cps", "debug") or a
(key, value) pair (("opt", 2), ("build_dir", "out")).
"""

import os
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

# TOML parsing - use stdlib tomllib in 3.11+, fallback to tomli
try:
    import tomllib
except ImportError:
    try:
        import tomli as tomllib
    except ImportError:
        tomllib = None

from eval_errors import ConfigError
from includes import Primitive, Registrations


@dataclass(frozen=True)
class Options:
    bypass_qed: bool = False
    cps: bool = False
    time: bool = False
    time_anf: bool = False
    olevel: int = 1
    debug: bool = False
    args: int = 5
    anf_conf: int = 0
    build_dir: str = "."
    filename: str = ""
    ext: str = ""
    dev: int = 0
    prefix: str = ""          # prefix of generated FFI functions, avoids clashes
    toplevel_name: str = "body"
    prims: Tuple[Primitive, ...] = ()
    cc: Optional[str] = None
    runtime_dir: Optional[str] = None

    @property
    def stem(self) -> str:
        return self.filename + self.ext

    def make_fname(self, name: str) -> str:
        return os.path.join(self.build_dir, name)

    def derive(self, **changes) -> 'Options':
        return replace(self, **changes)


@dataclass(frozen=True)
class PipelineOptions:
    """What the compiler capability sees of the options"""
    cps: bool
    args: int
    anf_conf: int
    olevel: int
    timing: bool
    timing_anf: bool
    debug: bool
    dev: int
    prefix: str
    toplevel_name: str
    prims: Tuple[Primitive, ...]


def make_pipeline_options(opts: Options, registrations: Registrations) -> PipelineOptions:
    return PipelineOptions(
        cps=opts.cps,
        args=opts.args,
        anf_conf=opts.anf_conf,
        olevel=opts.olevel,
        timing=opts.time,
        timing_anf=opts.time_anf,
        debug=opts.debug,
        dev=opts.dev,
        prefix=opts.prefix,
        toplevel_name=opts.toplevel_name,
        prims=tuple(registrations.prims) + tuple(opts.prims),
    )


def check_build_dir(d: str) -> str:
    if d == "":
        return "."
    if not os.path.exists(d):
        raise ConfigError(f"Could not compile: build directory {d} not found.")
    if not os.path.isdir(d):
        raise ConfigError(f"Could not compile: {d} is not a directory.")
    return d


CommandArg = Union[str, Tuple[str, Any]]

_FLAG_ARGS = {
    "bypass_qed": "bypass_qed",
    "cps": "cps",
    "time": "time",
    "time_anf": "time_anf",
    "debug": "debug",
}

_INT_ARGS = {
    "opt": "olevel",
    "args": "args",
    "anf_config": "anf_conf",
    "dev": "dev",
}

_STR_ARGS = {
    "build_dir": "build_dir",
    "ext": "ext",
    "prefix": "prefix",
    "toplevel_name": "toplevel_name",
    "file": "filename",
    "cc": "cc",
    "runtime_dir": "runtime_dir",
}


def make_options(args: Iterable[CommandArg], prims: Sequence[Primitive] = (),
                 filename: str = "") -> Options:
    values: Dict[str, Any] = {"filename": filename}
    for arg in args:
        key, value = (arg, None) if isinstance(arg, str) else arg
        if key in _FLAG_ARGS:
            values[_FLAG_ARGS[key]] = True if value is None else bool(value)
        elif key in _INT_ARGS:
            try:
                values[_INT_ARGS[key]] = int(value)
            except (TypeError, ValueError):
                raise ConfigError(f"Option '{key}' expects an integer, got {value!r}") from None
        elif key in _STR_ARGS:
            if not isinstance(value, str):
                raise ConfigError(f"Option '{key}' expects a string, got {value!r}")
            if key == "build_dir":
                value = check_build_dir(value)
            values[_STR_ARGS[key]] = value
        else:
            raise ConfigError(f"Unknown option '{key}'")
    values["prims"] = tuple(prims)
    return Options(**values)


def read_options_table(path: str) -> List[CommandArg]:
    """Read the [options] table of a TOML file as command arguments"""
    if tomllib is None:
        raise ConfigError(
            "TOML parsing not available.\n"
            "Install with: pip install tomli"
        )
    try:
        with open(path, 'rb') as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"Could not read options file {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e

    table = data.get("options", {})
    if not isinstance(table, dict):
        raise ConfigError(f"{path}: [options] must be a table")
    return list(table.items())


def load_options(path: str, prims: Sequence[Primitive] = (),
                 filename: str = "") -> Options:
    return make_options(read_options_table(path), prims, filename)
