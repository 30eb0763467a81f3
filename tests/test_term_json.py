"""
Tests for the JSON encoding of terms and environments.
"""

import json
import math
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from eval_errors import ConfigError, NotFoundError
from term_json import (
    TermFormatError, decode_term, encode_term, decode_environment,
    load_environment, parse_term,
)
from terms import (
    Var, Sort, Prod, Lambda, App, Const, Ind, Construct, IntLit, FloatLit,
    Definition, PrimitiveTypeDecl, PrimitiveKind,
)


OPTION_ENV = {
    "declarations": [
        {"primitive": "int63", "kind": "int63"},
        {"inductive": "option", "params": [["A", ["sort"]]],
         "constructors": [{"name": "None"},
                          {"name": "Some", "fields": [["x", ["var", "A"]]]}]},
        {"inductive": "nat",
         "constructors": [{"name": "O"}, {"name": "S", "fields": [["n", ["ind", "nat"]]]}]},
        {"definition": "answer", "type": ["app", ["ind", "option"], ["const", "int63"]],
         "body": ["app", ["ctor", "Some"], ["const", "int63"], ["int", 42]]},
        {"definition": "axiom", "type": ["ind", "nat"]},
    ]
}


class TestTerms:

    @pytest.mark.parametrize("data,term", [
        (["var", "x"], Var("x")),
        (["sort"], Sort()),
        (["sort", "Prop"], Sort("Prop")),
        (["prod", "x", ["ind", "nat"], ["ind", "bool"]], Prod("x", Ind("nat"), Ind("bool"))),
        (["lambda", "x", ["ind", "nat"], ["var", "x"]], Lambda("x", Ind("nat"), Var("x"))),
        (["app", ["const", "f"], ["int", 1], ["int", 2]], App(Const("f"), (IntLit(1), IntLit(2)))),
        (["construct", "nat", 1], Construct("nat", 1)),
        (["float", 0.5], FloatLit(0.5)),
        (["float", 3], FloatLit(3.0)),
    ])
    def test_decode(self, data, term):
        assert decode_term(data) == term

    def test_special_floats(self):
        assert math.isinf(decode_term(["float", "-inf"]).value)
        assert math.isnan(decode_term(["float", "nan"]).value)
        assert encode_term(FloatLit(float("inf"))) == ["float", "inf"]

    def test_encode_decode(self):
        t = App(Construct("option", 1), (Const("int63"), IntLit(-2)))
        assert decode_term(json.loads(json.dumps(encode_term(t)))) == t

    def test_app_without_args(self):
        assert decode_term(["app", ["const", "f"]]) == Const("f")

    @pytest.mark.parametrize("data", [
        [], "x", ["var"], ["var", 1], ["int", "1"], ["int", True],
        ["prod", "x", ["var", "A"]], ["bogus", 1], ["float", "fast"],
    ])
    def test_malformed(self, data):
        with pytest.raises(TermFormatError):
            decode_term(data)

    def test_ctor_needs_environment(self):
        with pytest.raises(TermFormatError):
            decode_term(["ctor", "Some"])

    def test_format_error_is_config_error(self):
        with pytest.raises(ConfigError):
            parse_term("[1, 2")


class TestEnvironment:

    def test_decode(self):
        env = decode_environment(OPTION_ENV)
        assert env.primitive("int63") == PrimitiveTypeDecl("int63", PrimitiveKind.INT)
        option = env.inductive("option")
        assert option.nparams == 1
        assert [c.name for c in option.constructors] == ["None", "Some"]
        answer = env.lookup("answer")
        assert isinstance(answer, Definition)
        assert answer.body == App(Construct("option", 1), (Const("int63"), IntLit(42)))
        assert env.lookup("axiom").body is None

    def test_ctor_names_resolved(self):
        env = decode_environment(OPTION_ENV)
        head = env.lookup("answer").body.head
        assert head.name == "Some"

    def test_recursive_inductive(self):
        env = decode_environment(OPTION_ENV)
        nat = env.inductive("nat")
        assert nat.constructors[1].fields == (("n", Ind("nat")),)

    def test_unknown_ctor(self):
        data = {"declarations": [{"definition": "x", "type": ["sort"], "body": ["ctor", "Nope"]}]}
        with pytest.raises(NotFoundError):
            decode_environment(data)

    def test_unknown_declaration(self):
        with pytest.raises(TermFormatError):
            decode_environment({"declarations": [{"theorem": "t"}]})

    def test_unknown_primitive_kind(self):
        with pytest.raises(TermFormatError):
            decode_environment({"declarations": [{"primitive": "string"}]})

    def test_load(self, tmp_path):
        path = tmp_path / "env.json"
        path.write_text(json.dumps(OPTION_ENV))
        env = load_environment(str(path))
        assert "answer" in env

    def test_load_missing(self, tmp_path):
        with pytest.raises(ConfigError):
            load_environment(str(tmp_path / "absent.json"))

    def test_parse_term_with_env(self):
        env = decode_environment(OPTION_ENV)
        t = parse_term('["app", ["ctor", "S"], ["ctor", "O"]]', env)
        assert t == App(Construct("nat", 1), (Construct("nat", 0),))
