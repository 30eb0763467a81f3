"""
Reification

Rebuilds the symbolic term denoted by a runtime value from the value's
static type alone.

Constant and non-constant constructors are numbered independently at
runtime: an immediate n is the n-th constructor without fields, a block
tagged n is the n-th constructor with fields (both counted in declaration
order). A single numbering across all constructors would be wrong.

Fields are decoded left to right because the type of a field may depend
on the values of the fields before it. The traversal keeps its own stack
of partially decoded blocks, so deep values do not hit the recursion limit.
"""

from typing import List, Union

from eval_errors import IllFormedValueError, UnreifyableTypeError
from reify_types import ReifyableType, InductiveType, PrimitiveType, classify
from runtime_values import RuntimeValue, Immediate, Block, bits_to_float
from terms import (
    Term, Environment, ConstructorDecl, Construct, IntLit, FloatLit,
    PrimitiveKind, mk_app,
)


class _Frame:
    """A block whose fields are being decoded"""
    __slots__ = ("ty", "index", "ctor", "fields", "args")

    def __init__(self, ty: InductiveType, index: int, ctor: ConstructorDecl, fields):
        self.ty = ty
        self.index = index
        self.ctor = ctor
        self.fields = fields
        self.args: List[Term] = []

    def finish(self) -> Term:
        head = Construct(self.ty.head, self.index, self.ctor.name)
        return mk_app(head, self.ty.params + tuple(self.args))


def reify(env: Environment, ty: ReifyableType, value: RuntimeValue) -> Term:
    """Decode value as an inhabitant of ty"""
    stack: List[_Frame] = []
    result = _enter(ty, value, stack)
    while stack:
        frame = stack[-1]
        if result is not None:
            frame.args.append(result)
        position = len(frame.args)
        if position == len(frame.fields):
            stack.pop()
            result = frame.finish()
            continue
        field_ty = frame.ty.field_type(frame.ctor, position, tuple(frame.args))
        result = _enter(classify(env, field_ty), frame.fields[position], stack)
    return result


def _enter(ty: ReifyableType, value: RuntimeValue,
           stack: List[_Frame]) -> Union[Term, None]:
    """Decode a leaf, or push a frame for a block and return None"""
    if isinstance(ty, PrimitiveType):
        return _reify_primitive(ty, value)
    if not isinstance(ty, InductiveType):
        raise UnreifyableTypeError(f"Cannot reify values of type {ty}")

    decl = ty.decl
    layout = ty.layout
    if isinstance(value, Block):
        index = layout.nth_non_constant(value.tag)
        if index is None:
            raise IllFormedValueError(
                ty, value.tag, True,
                f"{len(layout.non_constant)} non-constant constructor(s)"
            )
        ctor = decl.constructors[index]
        if len(value.fields) != ctor.arity:
            raise IllFormedValueError(
                ty, value.tag, True,
                f"{ctor.name} expects {ctor.arity} field(s), block has {len(value.fields)}"
            )
        stack.append(_Frame(ty, index, ctor, value.fields))
        return None

    index = layout.nth_constant(value.value)
    if index is None:
        raise IllFormedValueError(
            ty, value.value, False,
            f"{len(layout.constant)} constant constructor(s)"
        )
    head = Construct(ty.head, index, decl.constructors[index].name)
    return mk_app(head, ty.params)


def _reify_primitive(ty: PrimitiveType, value: RuntimeValue) -> Term:
    if ty.kind not in (PrimitiveKind.INT, PrimitiveKind.FLOAT):
        raise UnreifyableTypeError(f"Primitive {ty.kind.value} values are not supported yet")
    if not isinstance(value, Immediate):
        raise IllFormedValueError(ty, value.tag, True, "expected a scalar")
    if ty.kind is PrimitiveKind.INT:
        return IntLit(value.value)
    return FloatLit(bits_to_float(value.value))
