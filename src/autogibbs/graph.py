"""Dependency graphs of random variables, sliced from execution traces.

A `Graph` is an SSA-style listing of the statements a program executed,
restricted to the ones its random choices depend on:

    ⟨3⟩ = Gamma(2.0, 3.0) → ...
    ⟨4⟩ = λ ~ ⟨3⟩ → 0.41
    ⟨5⟩ = rsqrt(⟨4⟩) → 1.56
    ⟨6⟩ = Normal(0.0, ⟨5⟩) → ...
    ⟨7⟩ = m ~ ⟨6⟩ → -0.2
    ...

Statements are immutable, and the order of the graph is the order in which
the program computed them, which is a topological order of the
dependencies.
"""

import logging
from dataclasses import dataclass

import jax
import jax.numpy as jnp
import jax.tree_util as jtu
import numpy as np

from autogibbs.core import (
    Any,
    Mapping,
    StructuralTraceError,
    VarName,
)
from autogibbs.distributions import Distribution
from autogibbs.tracking import (
    CallNode,
    ConstantNode,
    Model,
    NestedCallNode,
    PrimitiveCall,
    Slot,
    TildeNode,
)

logger = logging.getLogger(__name__)

##############
# Statements #
##############


@dataclass(frozen=True, order=True)
class Reference:
    """Names a statement of a `Graph`."""

    number: int

    def __str__(self):
        return f"⟨{self.number}⟩"

    __repr__ = __str__


def show_value(value) -> str:
    if isinstance(value, Reference):
        return str(value)
    if isinstance(value, (jax.Array, np.ndarray, np.generic)):
        return str(jnp.asarray(value).tolist())
    return str(value)


def _show_callable(f) -> str:
    return getattr(f, "__name__", None) or str(f)


@dataclass(frozen=True, eq=False)
class Constant:
    value: Any

    def __str__(self):
        return show_value(self.value)


@dataclass(frozen=True, eq=False)
class Call:
    """An application of `f` to `args`, which are `Reference`s or literals.

    `definition` is set when the call reads a single random choice out of an
    array, as `(name, reference of the choice)`. The array is either the
    value of an array valued choice, read at `name`, or an array the choice
    was written into with `A.at[i].set(...)`.
    """

    f: Any
    args: tuple
    value: Any
    definition: tuple[VarName, Reference] | None = None

    def __str__(self):
        f = show_value(self.f) if isinstance(self.f, Reference) else _show_callable(self.f)
        call = f + "(" + ", ".join(show_value(a) for a in self.args) + ")"
        if self.definition is not None:
            call = f"{self.definition[0]} = {call}"
        return f"{call} → {show_value(self.value)}"


@dataclass(frozen=True, eq=False)
class Assumption:
    name: VarName
    dist_ref: Reference
    value: Any

    def __str__(self):
        return f"{self.name} ~ {self.dist_ref} → {show_value(self.value)}"


@dataclass(frozen=True, eq=False)
class Observation:
    name: VarName
    dist_ref: Reference
    value: Any

    def __str__(self):
        return f"{self.name} ~ {self.dist_ref} ← {show_value(self.value)}"


Tilde = Assumption | Observation
Statement = Constant | Call | Assumption | Observation


@dataclass(frozen=True)
class DistributionConstructor:
    """Builds the TFP distribution of a random choice from its flat parameters."""

    distribution: Distribution
    in_tree: Any

    def __call__(self, *flat_args):
        args, kwargs = jtu.tree_unflatten(self.in_tree, flat_args)
        return self.distribution.construct(*args, **kwargs)

    def support(self, d):
        return self.distribution.enumerate_support(d)

    def __str__(self):
        return str(self.distribution)


def getindex(array, *indices):
    """`array[i, j, ...]`, the one indexing operation graphs name explicitly."""
    return jnp.asarray(array)[tuple(indices)]


#########
# Graph #
#########


class Graph(Mapping[Reference, Statement]):
    """Ordered mapping from `Reference` to statement.

    Besides references, a graph can be indexed by integer position, which is
    convenient when exploring it interactively.
    """

    def __init__(self, statements: Mapping[Reference, Statement]):
        self._statements = dict(statements)

    def __getitem__(self, key):
        if isinstance(key, Reference):
            return self._statements[key]
        if isinstance(key, int):
            return list(self._statements.values())[key]
        raise TypeError(f"Graphs are indexed by references or positions, not {key!r}.")

    def __iter__(self):
        return iter(self._statements)

    def __len__(self):
        return len(self._statements)

    def references(self) -> list[Reference]:
        return list(self._statements)

    def tildes(self) -> dict[Reference, Tilde]:
        return {
            ref: stmt
            for ref, stmt in self._statements.items()
            if isinstance(stmt, (Assumption, Observation))
        }

    def dependencies(self, ref: Reference) -> list[Reference]:
        return list(_dependencies(self._statements[ref]))

    def __str__(self):
        return "\n".join(f"{ref} = {stmt}" for ref, stmt in self._statements.items())

    def __repr__(self):
        return f"Graph({len(self)} statements)"


def _dependencies(stmt: Statement):
    match stmt:
        case Call(f=f, args=args, definition=definition):
            if isinstance(f, Reference):
                yield f
            yield from (a for a in args if isinstance(a, Reference))
            if definition is not None:
                yield definition[1]
        case Assumption(dist_ref=dist_ref) | Observation(dist_ref=dist_ref):
            yield dist_ref
        case Constant():
            pass


###########
# Slicing #
###########


def strip_calls(node: NestedCallNode) -> list:
    """Flatten the nested calls of a trace into its leaf nodes, in order."""
    leaves = []
    for child in node.children:
        if isinstance(child, NestedCallNode):
            leaves.extend(strip_calls(child))
        else:
            leaves.append(child)
    return leaves


def _check_root(trace):
    if not isinstance(trace, NestedCallNode) or not isinstance(trace.target, Model):
        raise StructuralTraceError(
            f"Expected the trace of a single model invocation, got {type(trace).__name__}."
        )


def _unwind(trace: NestedCallNode):
    statements: dict[Reference, Statement] = {}
    refs: dict[Slot, Reference] = {}
    count = 0

    def emit(stmt: Statement) -> Reference:
        nonlocal count
        count += 1
        ref = Reference(count)
        statements[ref] = stmt
        return ref

    def resolve(operand):
        if isinstance(operand, Slot):
            try:
                return refs[operand]
            except KeyError:
                raise StructuralTraceError(
                    f"Missing dependency: {operand} is used before it is recorded."
                ) from None
        return operand

    for node in strip_calls(trace):
        match node:
            case ConstantNode(slot=slot, value=value):
                refs[slot] = emit(Constant(value))
            case CallNode(slot=slot, target=target, operands=operands, value=value):
                refs[slot] = emit(Call(target, tuple(map(resolve, operands)), value))
            case TildeNode():
                constructor = DistributionConstructor(node.distribution, node.in_tree)
                dist_ref = emit(
                    Call(constructor, tuple(map(resolve, node.operands)), node.constructed)
                )
                tilde = Observation if node.observed else Assumption
                refs[node.slot] = emit(tilde(node.name, dist_ref, node.value))
            case _:
                raise StructuralTraceError(f"Unexpected trace node {node!r}.")

    outputs = [resolve(o) for o in trace.outputs]
    return statements, [o for o in outputs if isinstance(o, Reference)]


def _primitive_name(stmt) -> str | None:
    if isinstance(stmt, Call) and isinstance(stmt.f, PrimitiveCall):
        return stmt.f.primitive.name
    return None


def _leading_read(stmt: Call, statements) -> tuple[Any, tuple] | None:
    """Match `squeeze(slice(A, ...))` or `squeeze(dynamic_slice(A, ...))` reading
    `A[i, ...]` for leading indices, returning `(A, indices)`."""
    if _primitive_name(stmt) != "squeeze" or not isinstance(stmt.args[0], Reference):
        return None
    dims = tuple(stmt.f.params["dimensions"])
    source = statements.get(stmt.args[0])
    kind = _primitive_name(source)
    if kind not in ("slice", "dynamic_slice") or not dims:
        return None
    array = source.args[0]
    value = statements[array].value if isinstance(array, Reference) else array
    shape = jnp.shape(value)
    k = len(dims)
    if dims != tuple(range(k)) or len(shape) < k:
        return None
    params = source.f.params
    if kind == "slice":
        start, limit = params["start_indices"], params["limit_indices"]
        strides = params.get("strides")
        if strides is not None and any(s != 1 for s in strides):
            return None
        if any(limit[d] != start[d] + 1 for d in range(k)):
            return None
        if any(start[d] != 0 or limit[d] != shape[d] for d in range(k, len(shape))):
            return None
        return array, tuple(int(i) for i in start[:k])
    sizes = params["slice_sizes"]
    indices = source.args[1 : 1 + len(shape)]
    if any(sizes[d] != 1 for d in range(k)):
        return None
    if any(sizes[d] != shape[d] for d in range(k, len(shape))):
        return None
    return array, tuple(indices[:k])


def _value(arg, statements):
    return statements[arg].value if isinstance(arg, Reference) else arg


def _random_references(statements) -> set[Reference]:
    """References whose value depends on a random choice."""
    random = set()
    for ref, stmt in statements.items():
        if isinstance(stmt, (Assumption, Observation)) or any(
            dep in random for dep in _dependencies(stmt)
        ):
            random.add(ref)
    return random


def _static_ints(args, statements, random) -> tuple[int, ...] | None:
    """Flattened integer values of `args`, if none of them depends on a
    random choice."""
    ints = []
    for a in args:
        if isinstance(a, Reference) and a in random:
            return None
        v = np.asarray(_value(a, statements))
        if not np.issubdtype(v.dtype, np.integer):
            return None
        ints.extend(int(i) for i in v.ravel())
    return tuple(ints)


_reshapes = frozenset(
    {"convert_element_type", "broadcast_in_dim", "reshape", "squeeze", "expand_dims", "copy"}
)


def _choice_source(arg, statements) -> Reference | None:
    """The random choice whose value `arg` holds, up to reshaping."""
    while isinstance(arg, Reference):
        stmt = statements[arg]
        if isinstance(stmt, (Assumption, Observation)):
            return arg
        if _primitive_name(stmt) not in _reshapes:
            return None
        inner = stmt.args[0]
        if jnp.size(stmt.value) != jnp.size(_value(inner, statements)):
            return None
        arg = inner
    return None


def _element_write(stmt, statements, random) -> tuple[Any, tuple[int, ...], Any] | None:
    """Match `A.at[i, ...].set(v)` writing one element (or row) of `A` at
    static indices, returning `(A, indices, v)`."""
    kind = _primitive_name(stmt)
    if kind == "scatter":
        array, indices, update = stmt.args[:3]
        dnums = stmt.f.params["dimension_numbers"]
        k = len(dnums.inserted_window_dims)
        ix = _static_ints([indices], statements, random)
        if k == 0 or ix is None or len(ix) != k:
            return None
        if tuple(dnums.inserted_window_dims) != tuple(range(k)):
            return None
        if tuple(dnums.scatter_dims_to_operand_dims) != tuple(range(k)):
            return None
        if jnp.shape(_value(update, statements)) != jnp.shape(stmt.value)[k:]:
            return None
        return array, ix, update
    if kind == "dynamic_update_slice":
        array, update, *starts = stmt.args
        start = _static_ints(starts, statements, random)
        shape = jnp.shape(stmt.value)
        update_shape = jnp.shape(_value(update, statements))
        if start is None or len(update_shape) != len(shape):
            return None
        for k in range(1, len(shape) + 1):
            if update_shape[:k] == (1,) * k and update_shape[k:] == shape[k:]:
                return array, start[:k], update
    return None


def _written_choice(array, ix: tuple[int, ...], statements, random) -> Reference | None:
    """Follow the functional updates of `array` back to the last write of
    element `ix`, returning the random choice that was written there."""
    while isinstance(array, Reference):
        write = _element_write(statements[array], statements, random)
        if write is None:
            return None
        previous, jx, update = write
        if jx == ix:
            return _choice_source(update, statements)
        if jx[: len(ix)] == ix[: len(jx)]:
            return None
        array = previous
    return None


def _fuse_index_reads(statements: dict[Reference, Statement]):
    """Rewrite element reads into `getindex` calls.

    A read at static indices is tagged with the random choice it reads: the
    element `name[i]` of an array valued choice, or the choice last written
    to that element by `A.at[i].set(...)`.
    """
    random = _random_references(statements)
    fused = {}
    for ref, stmt in statements.items():
        read = _leading_read(stmt, statements) if isinstance(stmt, Call) else None
        if read is None:
            fused[ref] = stmt
            continue
        array, indices = read
        definition = None
        ix = _static_ints(indices, statements, random)
        source = statements.get(array) if isinstance(array, Reference) else None
        if ix is not None and isinstance(source, (Assumption, Observation)):
            definition = (source.name.index(ix if len(ix) > 1 else ix[0]), array)
        elif ix is not None:
            written = _written_choice(array, ix, statements, random)
            if written is not None:
                definition = (statements[written].name, written)
        fused[ref] = Call(getindex, (array, *indices), stmt.value, definition)
    return fused


def _live(statements: dict[Reference, Statement], outputs: list[Reference]):
    sinks = [
        ref
        for ref, stmt in statements.items()
        if isinstance(stmt, (Assumption, Observation))
    ]
    live = set()
    stack = sinks + outputs
    while stack:
        ref = stack.pop()
        if ref in live:
            continue
        live.add(ref)
        stack.extend(_dependencies(statements[ref]))
    return live


def extract_graph(trace: NestedCallNode) -> Graph:
    """Slice the trace of a model invocation into its dependency graph.

    The graph keeps every statement that a random choice (or the model's
    return value) depends on, in execution order. Reads of single elements
    of arrays are rewritten into calls of `getindex`.

    Raises:
        StructuralTraceError: If `trace` is not the trace of one model
            invocation, or an operand has no recorded origin.
    """
    _check_root(trace)
    statements, outputs = _unwind(trace)
    statements = _fuse_index_reads(statements)
    live = _live(statements, outputs)
    logger.debug(
        "sliced %d of %d statements of %s", len(live), len(statements), trace.target.name
    )
    return Graph({ref: stmt for ref, stmt in statements.items() if ref in live})


def sampled_values(graph: Graph) -> dict[VarName, Any]:
    """Values of all random choices in `graph`, plus the values of elements
    read from array valued choices."""
    θ = {}
    for stmt in graph.values():
        if isinstance(stmt, (Assumption, Observation)):
            θ[stmt.name] = stmt.value
        elif isinstance(stmt, Call) and stmt.definition is not None:
            θ.setdefault(stmt.definition[0], stmt.value)
    return θ
