"""
JSON Encoding of Terms and Environments

The command-line driver reads the global environment from a JSON file:

    {
      "declarations": [
        {"primitive": "int63", "kind": "int63"},
        {"inductive": "option", "params": [["A", ["sort"]]],
         "constructors": [{"name": "None"},
                          {"name": "Some", "fields": [["x", ["var", "A"]]]}]},
        {"definition": "answer", "type": ["app", ["ind", "option"], ["const", "int63"]],
         "body": ["app", ["ctor", "Some"], ["const", "int63"], ["int", 42]]}
      ]
    }

Terms are tagged lists:

    ["var", x]                 ["sort"] or ["sort", s]
    ["prod", x, A, B]          ["lambda", x, A, t]
    ["app", f, a1, ..., an]    ["const", c]       ["ind", I]
    ["construct", I, i]        ["ctor", name]     (constructor by name)
    ["int", n]                 ["float", x]       (x may be "nan", "inf", "-inf")
"""

import json
import math
from typing import Any, Optional

from eval_errors import ConfigError
from terms import (
    Term, Var, Sort, Prod, Lambda, App, Const, Ind, Construct, IntLit, FloatLit,
    ConstructorDecl, InductiveDecl, Definition, PrimitiveTypeDecl, PrimitiveKind,
    Declaration, Environment, mk_app,
)


class TermFormatError(ConfigError):
    """Malformed JSON term or declaration"""
    pass


def _expect(cond: bool, what: str, data: Any):
    if not cond:
        raise TermFormatError(f"Malformed {what}: {json.dumps(data)}")


def _float_value(data: Any) -> float:
    if isinstance(data, str):
        try:
            return float(data)
        except ValueError:
            raise TermFormatError(f"Malformed float literal: {data!r}") from None
    _expect(isinstance(data, (int, float)) and not isinstance(data, bool), "float literal", data)
    return float(data)


def decode_term(data: Any, env: Optional[Environment] = None) -> Term:
    """Build a term from its JSON form.

    Constructors given by name are resolved in env.
    """
    _expect(isinstance(data, list) and data and isinstance(data[0], str), "term", data)
    tag, rest = data[0], data[1:]

    if tag == "var":
        _expect(len(rest) == 1 and isinstance(rest[0], str), "variable", data)
        return Var(rest[0])
    elif tag == "sort":
        _expect(len(rest) <= 1, "sort", data)
        return Sort(*rest)
    elif tag in ("prod", "lambda"):
        _expect(len(rest) == 3 and isinstance(rest[0], str), tag, data)
        node = Prod if tag == "prod" else Lambda
        return node(rest[0], decode_term(rest[1], env), decode_term(rest[2], env))
    elif tag == "app":
        _expect(len(rest) >= 1, "application", data)
        return mk_app(decode_term(rest[0], env), [decode_term(a, env) for a in rest[1:]])
    elif tag == "const":
        _expect(len(rest) == 1 and isinstance(rest[0], str), "constant", data)
        return Const(rest[0])
    elif tag == "ind":
        _expect(len(rest) == 1 and isinstance(rest[0], str), "inductive", data)
        return Ind(rest[0])
    elif tag == "construct":
        _expect(len(rest) == 2 and isinstance(rest[1], int), "constructor", data)
        if env is not None and rest[0] in env:
            return env.constructor(rest[0], rest[1])
        return Construct(rest[0], rest[1])
    elif tag == "ctor":
        _expect(len(rest) == 1 and isinstance(rest[0], str), "constructor", data)
        if env is None:
            raise TermFormatError(f"Constructor {rest[0]} given by name outside an environment")
        return env.find_constructor(rest[0])
    elif tag == "int":
        _expect(len(rest) == 1 and isinstance(rest[0], int) and not isinstance(rest[0], bool),
                "integer literal", data)
        return IntLit(rest[0])
    elif tag == "float":
        _expect(len(rest) == 1, "float literal", data)
        return FloatLit(_float_value(rest[0]))

    raise TermFormatError(f"Unknown term tag '{tag}'")


def encode_term(term: Term) -> Any:
    if isinstance(term, Var):
        return ["var", term.name]
    if isinstance(term, Sort):
        return ["sort", term.name]
    if isinstance(term, Prod):
        return ["prod", term.name, encode_term(term.domain), encode_term(term.codomain)]
    if isinstance(term, Lambda):
        return ["lambda", term.name, encode_term(term.domain), encode_term(term.body)]
    if isinstance(term, App):
        return ["app", encode_term(term.head)] + [encode_term(a) for a in term.args]
    if isinstance(term, Const):
        return ["const", term.name]
    if isinstance(term, Ind):
        return ["ind", term.name]
    if isinstance(term, Construct):
        return ["construct", term.ind, term.index]
    if isinstance(term, IntLit):
        return ["int", term.value]
    if isinstance(term, FloatLit):
        if math.isnan(term.value) or math.isinf(term.value):
            return ["float", str(term.value)]
        return ["float", term.value]
    raise TypeError(f"Cannot encode {type(term).__name__}")


def _binders(data: Any, env: Environment, what: str):
    _expect(isinstance(data, list), what, data)
    result = []
    for item in data:
        _expect(isinstance(item, list) and len(item) == 2 and isinstance(item[0], str), what, item)
        result.append((item[0], decode_term(item[1], env)))
    return tuple(result)


def decode_declaration(data: Any, env: Environment) -> Declaration:
    _expect(isinstance(data, dict), "declaration", data)

    if "primitive" in data:
        try:
            kind = PrimitiveKind(data.get("kind", data["primitive"]))
        except ValueError:
            raise TermFormatError(f"Unknown primitive kind in {json.dumps(data)}") from None
        return PrimitiveTypeDecl(data["primitive"], kind)

    if "inductive" in data:
        name = data["inductive"]
        params = _binders(data.get("params", []), env, "parameters")
        # Register a provisional declaration so field types may name the type itself
        ctors_data = data.get("constructors", [])
        _expect(isinstance(ctors_data, list), "constructors", data)
        stub = InductiveDecl(name, params, tuple(
            ConstructorDecl(c.get("name", "")) for c in ctors_data if isinstance(c, dict)
        ))
        scratch = Environment(env.declarations + [stub]) if name not in env else env
        ctors = []
        for c in ctors_data:
            _expect(isinstance(c, dict) and isinstance(c.get("name"), str), "constructor", c)
            ctors.append(ConstructorDecl(c["name"], _binders(c.get("fields", []), scratch, "fields")))
        return InductiveDecl(name, params, tuple(ctors))

    if "definition" in data:
        _expect("type" in data, "definition", data)
        body = data.get("body")
        return Definition(
            data["definition"],
            decode_term(data["type"], env),
            decode_term(body, env) if body is not None else None,
        )

    raise TermFormatError(f"Unknown declaration: {json.dumps(data)}")


def decode_environment(data: Any) -> Environment:
    _expect(isinstance(data, dict) and isinstance(data.get("declarations"), list),
            "environment", data)
    env = Environment()
    for item in data["declarations"]:
        env.add(decode_declaration(item, env))
    return env


def load_environment(path: str) -> Environment:
    """Read a JSON environment file"""
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Could not read {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise TermFormatError(f"Failed to parse {path}: {e}") from e
    return decode_environment(data)


def parse_term(text: str, env: Optional[Environment] = None) -> Term:
    """Decode a term given as a JSON string"""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise TermFormatError(f"Failed to parse term {text!r}: {e}") from e
    return decode_term(data, env)