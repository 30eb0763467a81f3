"""
Symbolic Terms and the Global Environment

The term syntax of the host proof assistant, as far as native evaluation
needs it: types to classify, constructor applications and literals to
rebuild, and global definitions to unfold or ship to the compiler.

Terms are immutable. Binders are named; substitution renames a binder
when it would capture a free variable of the substituted term.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union
from enum import Enum

from eval_errors import NotFoundError
from fresh_names import next_name_away_from


# ============================================================================
# Term Nodes
# ============================================================================

@dataclass(frozen=True)
class Term:
    """Base class for terms"""
    pass


@dataclass(frozen=True)
class Var(Term):
    name: str

    def __repr__(self):
        return self.name


@dataclass(frozen=True)
class Sort(Term):
    name: str = "Type"

    def __repr__(self):
        return self.name


@dataclass(frozen=True)
class Prod(Term):
    """Dependent function type: forall (name : domain), codomain"""
    name: str
    domain: Term
    codomain: Term

    def __repr__(self):
        return pretty(self)


@dataclass(frozen=True)
class Lambda(Term):
    name: str
    domain: Term
    body: Term

    def __repr__(self):
        return pretty(self)


@dataclass(frozen=True)
class App(Term):
    head: Term
    args: Tuple[Term, ...]

    def __repr__(self):
        return pretty(self)


@dataclass(frozen=True)
class Const(Term):
    """Reference to a global definition or primitive type"""
    name: str

    def __repr__(self):
        return self.name


@dataclass(frozen=True)
class Ind(Term):
    """Reference to an inductive type"""
    name: str

    def __repr__(self):
        return self.name


@dataclass(frozen=True)
class Construct(Term):
    """Reference to the index-th constructor (0-based) of an inductive type"""
    ind: str
    index: int
    name: str = field(default="", compare=False)

    def __repr__(self):
        return self.name or f"{self.ind}#{self.index}"


@dataclass(frozen=True)
class IntLit(Term):
    """Machine integer literal"""
    value: int

    def __repr__(self):
        return str(self.value)


@dataclass(frozen=True)
class FloatLit(Term):
    """64-bit floating point literal"""
    value: float

    def __repr__(self):
        return repr(self.value)


def mk_app(head: Term, args: Iterable[Term]) -> Term:
    """Apply head to args, flattening nested applications"""
    args = tuple(args)
    if not args:
        return head
    if isinstance(head, App):
        return App(head.head, head.args + args)
    return App(head, args)


def decompose_app(term: Term) -> Tuple[Term, List[Term]]:
    args: List[Term] = []
    while isinstance(term, App):
        args[:0] = term.args
        term = term.head
    return term, args


def _children(term: Term) -> Tuple[Term, ...]:
    if isinstance(term, App):
        return (term.head,) + term.args
    if isinstance(term, Prod):
        return (term.domain, term.codomain)
    if isinstance(term, Lambda):
        return (term.domain, term.body)
    return ()


def free_vars(term: Term) -> Set[str]:
    result: Set[str] = set()
    # (term, names bound above it)
    stack = [(term, frozenset())]
    while stack:
        t, bound = stack.pop()
        if isinstance(t, Var):
            if t.name not in bound:
                result.add(t.name)
        elif isinstance(t, (Prod, Lambda)):
            inner = t.codomain if isinstance(t, Prod) else t.body
            stack.append((t.domain, bound))
            stack.append((inner, bound | {t.name}))
        else:
            stack.extend((c, bound) for c in _children(t))
    return result


def subst(term: Term, mapping: Dict[str, Term]) -> Term:
    """Simultaneously replace free variables by terms"""
    if not mapping:
        return term
    if isinstance(term, Var):
        return mapping.get(term.name, term)
    if isinstance(term, App):
        return mk_app(subst(term.head, mapping), [subst(a, mapping) for a in term.args])
    if isinstance(term, (Prod, Lambda)):
        inner = term.codomain if isinstance(term, Prod) else term.body
        domain = subst(term.domain, mapping)
        mapping = {k: v for k, v in mapping.items() if k != term.name}
        name = term.name
        captured: Set[str] = set()
        for k in free_vars(inner) & set(mapping):
            captured |= free_vars(mapping[k])
        if name in captured:
            avoid = captured | free_vars(inner) | set(mapping)
            fresh = next_name_away_from(name, lambda s: s in avoid)
            mapping = dict(mapping)
            mapping[name] = Var(fresh)
            name = fresh
        inner = subst(inner, mapping)
        return type(term)(name, domain, inner)
    return term


def pretty(term: Term) -> str:
    """Render a term the way the host would print it"""
    out: List[str] = []
    # strings are emitted as is, (True, t) renders t in argument position
    stack: List[Union[str, Tuple[bool, Term]]] = [(False, term)]
    while stack:
        item = stack.pop()
        if isinstance(item, str):
            out.append(item)
            continue
        as_arg, t = item
        if as_arg:
            if isinstance(t, (App, Prod, Lambda)):
                stack.extend([")", (False, t), "("])
            elif isinstance(t, IntLit) and t.value < 0:
                out.append(f"({t.value})")
            else:
                stack.append((False, t))
            continue
        if isinstance(t, App):
            parts: List[Union[str, Tuple[bool, Term]]] = [(True, t.head)]
            for a in t.args:
                parts.extend([" ", (True, a)])
            stack.extend(reversed(parts))
        elif isinstance(t, Prod):
            if t.name in free_vars(t.codomain):
                parts = [f"forall ({t.name} : ", (False, t.domain), "), ", (False, t.codomain)]
            else:
                parts = [(True, t.domain), " -> ", (False, t.codomain)]
            stack.extend(reversed(parts))
        elif isinstance(t, Lambda):
            parts = [f"fun ({t.name} : ", (False, t.domain), ") => ", (False, t.body)]
            stack.extend(reversed(parts))
        else:
            out.append(repr(t))
    return "".join(out)


# ============================================================================
# Global Declarations
# ============================================================================

class PrimitiveKind(Enum):
    INT = "int63"
    FLOAT = "float64"
    ARRAY = "array"


@dataclass(frozen=True)
class ConstructorDecl:
    """A constructor signature. Field types may mention the inductive's
    parameters and earlier fields by name."""
    name: str
    fields: Tuple[Tuple[str, Term], ...] = ()

    @property
    def arity(self) -> int:
        return len(self.fields)


@dataclass(frozen=True)
class InductiveDecl:
    name: str
    params: Tuple[Tuple[str, Term], ...] = ()
    constructors: Tuple[ConstructorDecl, ...] = ()

    @property
    def nparams(self) -> int:
        return len(self.params)


@dataclass(frozen=True)
class Definition:
    name: str
    type: Term
    body: Optional[Term] = None  # None for axioms


@dataclass(frozen=True)
class PrimitiveTypeDecl:
    name: str
    kind: PrimitiveKind


Declaration = Union[InductiveDecl, Definition, PrimitiveTypeDecl]


@dataclass
class Program:
    """A quoted program: the declarations the body depends on, in
    dependency order, followed by the body itself."""
    declarations: List[Declaration]
    body: Term


class Environment:
    """Global declarations of the host session"""

    def __init__(self, declarations: Iterable[Declaration] = ()):
        self._decls: Dict[str, Declaration] = {}
        self._order: List[str] = []
        for decl in declarations:
            self.add(decl)

    def add(self, decl: Declaration):
        if decl.name in self._decls:
            raise ValueError(f"'{decl.name}' is already declared")
        self._decls[decl.name] = decl
        self._order.append(decl.name)

    @property
    def declarations(self) -> List[Declaration]:
        return [self._decls[n] for n in self._order]

    def __contains__(self, name: str) -> bool:
        return name in self._decls

    def lookup(self, name: str) -> Declaration:
        try:
            return self._decls[name]
        except KeyError:
            raise NotFoundError(f"Unknown global '{name}'") from None

    def inductive(self, name: str) -> InductiveDecl:
        decl = self.lookup(name)
        if not isinstance(decl, InductiveDecl):
            raise NotFoundError(f"'{name}' is not an inductive type")
        return decl

    def primitive(self, name: str) -> Optional[PrimitiveTypeDecl]:
        decl = self._decls.get(name)
        return decl if isinstance(decl, PrimitiveTypeDecl) else None

    def constructor(self, ind: str, index: int) -> Construct:
        decl = self.inductive(ind)
        if not 0 <= index < len(decl.constructors):
            raise NotFoundError(f"{ind} has no constructor #{index}")
        return Construct(ind, index, decl.constructors[index].name)

    def find_constructor(self, name: str) -> Construct:
        """Find a constructor by its (unqualified) name"""
        for decl in self.declarations:
            if isinstance(decl, InductiveDecl):
                for i, c in enumerate(decl.constructors):
                    if c.name == name:
                        return Construct(decl.name, i, c.name)
        raise NotFoundError(f"Unknown constructor '{name}'")

    # ------------------------------------------------------------------
    # Reduction
    # ------------------------------------------------------------------

    def whd(self, term: Term) -> Term:
        """Reduce to head normal form (beta and delta)"""
        head, args = decompose_app(term)
        while True:
            if isinstance(head, Const):
                decl = self.lookup(head.name)
                if isinstance(decl, Definition) and decl.body is not None:
                    head, more = decompose_app(decl.body)
                    args = more + args
                    continue
            if isinstance(head, Lambda) and args:
                body = subst(head.body, {head.name: args[0]})
                head, more = decompose_app(body)
                args = more + args[1:]
                continue
            return mk_app(head, args)

    def normalize(self, term: Term) -> Term:
        """Full normal form. Works bottom-up on an explicit stack, so the
        depth of a value is not limited by the Python stack."""
        results: List[Term] = []
        # ("visit", term) or ("build", (head, number of children))
        work: List[Tuple[str, object]] = [("visit", term)]
        while work:
            op, item = work.pop()
            if op == "visit":
                head, args = decompose_app(self.whd(item))
                if isinstance(head, Prod):
                    children = [head.domain, head.codomain] + args
                elif isinstance(head, Lambda):
                    children = [head.domain, head.body] + args
                else:
                    children = args
                work.append(("build", (head, len(children))))
                work.extend(("visit", c) for c in reversed(children))
                continue
            head, count = item
            done = results[len(results) - count:]
            del results[len(results) - count:]
            if isinstance(head, Prod):
                head = Prod(head.name, done[0], done[1])
                done = done[2:]
            elif isinstance(head, Lambda):
                head = Lambda(head.name, done[0], done[1])
                done = done[2:]
            elif isinstance(head, Construct) and not head.name:
                head = self.constructor(head.ind, head.index)
            results.append(mk_app(head, done))
        return results[0]

    # ------------------------------------------------------------------
    # Quoting
    # ------------------------------------------------------------------

    def quote(self, term: Term) -> Program:
        """Collect the declarations term depends on, dependencies first"""
        ordered: List[Declaration] = []
        seen: Set[str] = set()
        # (name, True) once the dependencies of name have been emitted
        work = [(name, False) for name in reversed(_global_refs(term))]
        while work:
            name, finished = work.pop()
            if finished:
                ordered.append(self._decls[name])
                continue
            if name in seen:
                continue
            seen.add(name)
            decl = self.lookup(name)
            refs = [r for sub in _declaration_terms(decl) for r in _global_refs(sub)]
            work.append((name, True))
            work.extend((r, False) for r in reversed(refs))
        return Program(ordered, term)

    def declarations_of(self, name: str) -> List[Declaration]:
        """Declarations needed by the global name, itself included"""
        return self.quote(Const(name)).declarations


def _declaration_terms(decl: Declaration) -> List[Term]:
    if isinstance(decl, InductiveDecl):
        terms = [ty for _, ty in decl.params]
        for c in decl.constructors:
            terms.extend(ty for _, ty in c.fields)
        return terms
    if isinstance(decl, Definition):
        return [decl.type] + ([decl.body] if decl.body is not None else [])
    return []


def _global_refs(term: Term) -> List[str]:
    """Global names in term, left to right"""
    refs: List[str] = []
    stack = [term]
    while stack:
        t = stack.pop()
        if isinstance(t, (Const, Ind)):
            refs.append(t.name)
        elif isinstance(t, Construct):
            refs.append(t.ind)
        else:
            stack.extend(reversed(_children(t)))
    return refs
