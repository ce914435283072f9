import re
from dataclasses import dataclass, field
from enum import Enum
from typing import overload

import beartype.typing as btyping
import jaxtyping as jtyping
import penzai.pz as pz
from typing_extensions import dataclass_transform

Any = btyping.Any
PRNGKey = jtyping.PRNGKeyArray
Array = jtyping.Array
Callable = btyping.Callable
Mapping = btyping.Mapping
TypeVar = btyping.TypeVar

R = TypeVar("R")

##########
# Errors #
##########


class AutoGibbsError(Exception):
    """Base class of the errors raised while building or evaluating conditionals."""


class StructuralTraceError(AutoGibbsError):
    """The trace is not a single coherent program invocation, or a value in it
    has no recorded origin."""


class UnsupportedDistributionError(AutoGibbsError, ValueError):
    """The support of a distribution cannot be enumerated."""


class UnsupportedCompositionError(AutoGibbsError):
    """The new-cluster approximation of a clustering process cannot find its
    base measure or cluster parameters."""


class MissingVariableError(AutoGibbsError, KeyError):
    """No entry of an environment matches a variable name."""


##########
# Pytree #
##########


class Pytree(pz.Struct):
    """`Pytree` registers a class with JAX's pytree system.

    * `Pytree.static(...)`: the field is embedded in the `PyTreeDef`, and must
    be a Python literal or constant (functions, names, shapes).
    * Other fields may hold JAX values and are traced through transformations.
    """

    @staticmethod
    @overload
    def dataclass(
        incoming: None = None,
        /,
        **kwargs,
    ) -> Callable[[type[R]], type[R]]: ...

    @staticmethod
    @overload
    def dataclass(
        incoming: type[R],
        /,
        **kwargs,
    ) -> type[R]: ...

    @dataclass_transform(
        frozen_default=True,
    )
    @staticmethod
    def dataclass(
        incoming: type[R] | None = None,
        /,
        **kwargs,
    ) -> type[R] | Callable[[type[R]], type[R]]:
        """Declare a `Pytree` subclass as a dataclass, deriving its flattening
        from the declared fields."""
        return pz.pytree_dataclass(
            incoming,
            overwrite_parent_init=True,
            **kwargs,
        )

    @staticmethod
    def static(**kwargs):
        """Declare a field of a `Pytree` dataclass to be static."""
        return field(metadata={"pytree_node": False}, **kwargs)


##################
# Variable names #
##################


class Overlap(Enum):
    """How a source name (being fixed) relates to a target name (stored)."""

    EQUAL = "equal"
    CONTAINS_BOTH = "contains_both"
    SOURCE_CONTAINS_TARGET = "source_contains_target"
    TARGET_CONTAINS_SOURCE = "target_contains_source"
    DISJOINT = "disjoint"


_name_pattern = re.compile(r"^\s*([^\[\]\s]+)\s*((?:\[[^\[\]]*\])*)\s*$")
_component_pattern = re.compile(r"\[([^\[\]]*)\]")

IndexComponent = tuple[int, ...]


def _as_component(ix) -> IndexComponent:
    if isinstance(ix, tuple):
        return tuple(int(i) for i in ix)
    return (int(ix),)


@dataclass(frozen=True)
class VarName:
    """A random variable name: a symbol plus a sequence of index components.

    `VarName("z", ((1,),))` prints as `z[1]`, and `VarName("x", ((1, 2),))`
    as `x[1, 2]`. Components index successively into the value stored under
    the symbol, so `x[1][2]` and `x[1, 2]` name the same element.
    """

    symbol: str
    indexing: tuple[tuple[int, ...], ...] = ()

    @classmethod
    def from_address(cls, addr) -> "VarName":
        """Convert a user address into a `VarName`.

        Strings are parsed (`"z[1]"`). Tuples read as `(symbol, *components)`
        where an integer is a single index and a tuple is a multi-index:

            >>> str(VarName.from_address(("x", 1, (2, 3))))
            'x[1][2, 3]'
        """
        if isinstance(addr, VarName):
            return addr
        if isinstance(addr, str):
            return cls.parse(addr)
        if not addr or not isinstance(addr[0], str):
            raise ValueError(f"Address {addr!r} must start with a symbol.")
        symbol, *components = addr
        return cls(symbol, tuple(_as_component(ix) for ix in components))

    @classmethod
    def parse(cls, s: str) -> "VarName":
        m = _name_pattern.match(s)
        if m is None:
            raise ValueError(f"Cannot parse variable name {s!r}.")
        symbol, rest = m.groups()
        components = tuple(
            tuple(int(i) for i in c.split(",") if i.strip())
            for c in _component_pattern.findall(rest)
        )
        return cls(symbol, components)

    @property
    def flat_indices(self) -> tuple[int, ...]:
        return tuple(i for c in self.indexing for i in c)

    def subsumes(self, other: "VarName") -> bool:
        """Every element named by `other` is also named by `self`."""
        if self.symbol != other.symbol:
            return False
        mine, theirs = self.flat_indices, other.flat_indices
        return theirs[: len(mine)] == mine

    def overlap(self, target: "VarName") -> Overlap:
        forward, backward = self.subsumes(target), target.subsumes(self)
        if forward and backward:
            return Overlap.EQUAL if self == target else Overlap.CONTAINS_BOTH
        elif forward:
            return Overlap.SOURCE_CONTAINS_TARGET
        elif backward:
            return Overlap.TARGET_CONTAINS_SOURCE
        return Overlap.DISJOINT

    def overlaps(self, other: "VarName") -> bool:
        return self.overlap(other) is not Overlap.DISJOINT

    def excess(self, other: "VarName") -> tuple[int, ...]:
        """Indices of `other` beyond the ones of `self`, which must subsume it."""
        return other.flat_indices[len(self.flat_indices) :]

    def index(self, ix) -> "VarName":
        return VarName(self.symbol, self.indexing + (_as_component(ix),))

    def parent(self) -> "VarName":
        return VarName(self.symbol, self.indexing[:-1])

    def __str__(self):
        return self.symbol + "".join(
            "[" + ", ".join(str(i) for i in c) + "]" for c in self.indexing
        )

    def __repr__(self):
        return f"VarName({str(self)!r})"
