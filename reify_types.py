"""
Reifyable Type Classification

Decides how a value of a given static type is represented at runtime:
either as a value of an inductive type (constant constructors as
immediates, the others as tagged blocks) or as a primitive scalar.

The split of an inductive's constructors into constant and non-constant
ones is computed once per declaration by constructor_layout(). The value
backend assigns tags with it and the decoder reads tags with it, so the
two can never number constructors differently.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Optional, Tuple

from eval_errors import NotFoundError, UnreifyableTypeError
from terms import (
    Term, Ind, Const, InductiveDecl, ConstructorDecl, PrimitiveKind,
    Environment, decompose_app, mk_app, pretty, subst,
)

# Block headers keep the tag in their low byte
MAX_BLOCK_TAGS = 256


# ============================================================================
# Constructor Layout
# ============================================================================

@dataclass(frozen=True)
class ConstructorLayout:
    """Constructor indices partitioned by arity class, each in declaration order"""
    constant: Tuple[int, ...]
    non_constant: Tuple[int, ...]

    def nth_constant(self, ordinal: int) -> Optional[int]:
        if 0 <= ordinal < len(self.constant):
            return self.constant[ordinal]
        return None

    def nth_non_constant(self, tag: int) -> Optional[int]:
        if 0 <= tag < len(self.non_constant):
            return self.non_constant[tag]
        return None

    def ordinal_of(self, index: int) -> Tuple[bool, int]:
        """Runtime numbering of constructor index: (is_block, ordinal)"""
        if index in self.non_constant:
            return True, self.non_constant.index(index)
        return False, self.constant.index(index)


@lru_cache(maxsize=None)
def constructor_layout(decl: InductiveDecl) -> ConstructorLayout:
    constant = tuple(i for i, c in enumerate(decl.constructors) if c.arity == 0)
    non_constant = tuple(i for i, c in enumerate(decl.constructors) if c.arity > 0)
    if len(non_constant) > MAX_BLOCK_TAGS:
        raise UnreifyableTypeError(
            f"Inductive type {decl.name} has {len(non_constant)} non-constant "
            f"constructors; at most {MAX_BLOCK_TAGS} can be represented"
        )
    return ConstructorLayout(constant, non_constant)


# ============================================================================
# Reifyable Types
# ============================================================================

@dataclass(frozen=True)
class ReifyableType:
    """Base class for classified types"""

    @property
    def is_inductive(self) -> bool:
        return False

    def to_term(self) -> Term:
        raise NotImplementedError

    def __str__(self):
        return pretty(self.to_term())


@dataclass(frozen=True)
class InductiveType(ReifyableType):
    decl: InductiveDecl
    args: Tuple[Term, ...] = ()

    @property
    def is_inductive(self) -> bool:
        return True

    @property
    def head(self) -> str:
        return self.decl.name

    @property
    def params(self) -> Tuple[Term, ...]:
        return self.args[:self.decl.nparams]

    @property
    def layout(self) -> ConstructorLayout:
        return constructor_layout(self.decl)

    def to_term(self) -> Term:
        return mk_app(Ind(self.head), self.args)

    def field_type(self, ctor: ConstructorDecl, position: int,
                   earlier: Tuple[Term, ...]) -> Term:
        """Type of a constructor field, instantiated with the parameters
        and the values of the fields before it"""
        mapping: Dict[str, Term] = {
            name: value for (name, _), value in zip(self.decl.params, self.params)
        }
        for (name, _), value in zip(ctor.fields, earlier):
            mapping[name] = value
        return subst(ctor.fields[position][1], mapping)


@dataclass(frozen=True)
class PrimitiveType(ReifyableType):
    name: str
    kind: PrimitiveKind
    args: Tuple[Term, ...] = ()

    def to_term(self) -> Term:
        return mk_app(Const(self.name), self.args)


def classify(env: Environment, ty: Term) -> ReifyableType:
    """Classify the static type of a value for reification"""
    try:
        hnf = env.whd(ty)
        head, args = decompose_app(hnf)
        if isinstance(head, Ind):
            decl = env.inductive(head.name)
            if len(args) < decl.nparams:
                raise UnreifyableTypeError(
                    f"Cannot reify values of partially applied type family: {pretty(ty)}"
                )
            constructor_layout(decl)
            return InductiveType(decl, tuple(args))
        if isinstance(head, Const):
            prim = env.primitive(head.name)
            if prim is not None:
                if prim.kind in (PrimitiveKind.INT, PrimitiveKind.FLOAT):
                    return PrimitiveType(prim.name, prim.kind, tuple(args))
                raise UnreifyableTypeError(
                    f"Primitive {prim.kind.value} values are not supported yet: {pretty(ty)}"
                )
    except NotFoundError as e:
        raise UnreifyableTypeError(
            f"Cannot reify values of type {pretty(ty)}: {e}"
        ) from e
    raise UnreifyableTypeError(
        f"Cannot reify values of non-inductive or non-primitive type: {pretty(ty)}"
    )
