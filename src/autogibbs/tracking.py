"""Execution tracing of probabilistic programs.

A program is staged to a jaxpr with `jax.make_jaxpr`, and the jaxpr is then
interpreted equation by equation. The interpreter samples (or reads
observed values for) every random choice and records each equation as a
node of a trace tree, which `autogibbs.graph.extract_graph` slices into a
dependency graph.
"""

import logging
import operator
from dataclasses import dataclass, field

import jax
import jax.numpy as jnp
import jax.random as jrand
import jax.tree_util as jtu
from jax.extend.core import ClosedJaxpr, Jaxpr, Literal, Primitive, Var

from autogibbs.core import (
    Any,
    Callable,
    Mapping,
    PRNGKey,
    StructuralTraceError,
    VarName,
)

logger = logging.getLogger(__name__)

###############################
# The random choice primitive #
###############################


# Keyless eager sampling needs a source of fresh keys.
@dataclass
class GlobalKeyCounter:
    count: int = 0


global_counter = GlobalKeyCounter()


def fresh_key() -> PRNGKey:
    global_counter.count += 1
    return jrand.key(global_counter.count)


tilde_p = Primitive("tilde")


def _unflatten(in_tree, flat_args):
    args, kwargs = jtu.tree_unflatten(in_tree, flat_args)
    return args, kwargs


def _tilde_impl(*flat_args, distribution, name, in_tree, shape):
    args, kwargs = _unflatten(in_tree, flat_args)
    return distribution.sample(fresh_key(), *args, sample_shape=shape, **kwargs)


def _tilde_abstract(*flat_avals, distribution, name, in_tree, shape):
    def sampler(*flat_args):
        args, kwargs = _unflatten(in_tree, flat_args)
        return distribution.sample(
            jrand.key(0), *args, sample_shape=shape, **kwargs
        )

    structs = [jax.ShapeDtypeStruct(a.shape, a.dtype) for a in flat_avals]
    out = jax.eval_shape(sampler, *structs)
    return jax.core.ShapedArray(out.shape, out.dtype)


tilde_p.def_impl(_tilde_impl)
tilde_p.def_abstract_eval(_tilde_abstract)


def tilde(distribution, addr, args: tuple, kwargs: dict, shape: tuple = ()):
    """Bind a random choice of `distribution(*args, **kwargs)` named `addr`."""
    name = VarName.from_address(addr)
    flat_args, in_tree = jtu.tree_flatten((args, kwargs))
    return tilde_p.bind(
        *flat_args,
        distribution=distribution,
        name=name,
        in_tree=in_tree,
        shape=tuple(shape),
    )


##########
# Models #
##########


@dataclass(frozen=True)
class Model:
    """A probabilistic program: a Python function whose random choices are
    written `dist(*args) @ addr`.

    Called directly, a `Model` runs its source with eager sampling. Called
    inside another model, it runs inline, and its choices join the caller's.
    """

    source: Callable[..., Any]

    def __call__(self, *args, **kwargs):
        return self.source(*args, **kwargs)

    @property
    def name(self) -> str:
        return getattr(self.source, "__name__", repr(self.source))


def model(source: Callable[..., Any]) -> Model:
    """Decorator turning a Python function into a `Model`.

    Example:
        >>> from autogibbs import model, normal
        >>>
        >>> @model
        ... def chain():
        ...     m = normal(0.0, 1.0) @ "m"
        ...     return normal(m, 1.0) @ "x"
    """
    return Model(source)


###############
# Trace nodes #
###############


@dataclass(frozen=True, order=True)
class Slot:
    """Identifies one recorded value inside a trace."""

    number: int

    def __str__(self):
        return f"%{self.number}"


@dataclass(frozen=True, eq=False)
class PrimitiveCall:
    """A JAX primitive together with the parameters of one of its equations."""

    primitive: Primitive
    params: dict

    def __call__(self, *args):
        subfuns, params = self.primitive.get_bind_params(self.params)
        return self.primitive.bind(*subfuns, *args, **params)

    def __str__(self):
        return self.primitive.name


@dataclass(frozen=True, eq=False)
class ConstantNode:
    slot: Slot
    value: Any


@dataclass(frozen=True, eq=False)
class CallNode:
    slot: Slot
    target: Callable[..., Any]
    operands: tuple
    value: Any


@dataclass(frozen=True, eq=False)
class TildeNode:
    slot: Slot
    name: VarName
    distribution: Any
    operands: tuple
    in_tree: Any
    constructed: Any
    value: Any
    observed: bool


@dataclass(frozen=True, eq=False)
class NestedCallNode:
    slot: Slot
    target: Any
    operands: tuple
    children: tuple
    outputs: tuple
    value: Any


TraceNode = ConstantNode | CallNode | TildeNode | NestedCallNode


########################
# Recursion strategies #
########################

_call_primitive_names = frozenset(
    {
        "pjit",
        "jit",
        "closed_call",
        "core_call",
        "remat",
        "checkpoint",
        "custom_jvp_call",
        "custom_vjp_call",
        "custom_vjp_call_jaxpr",
    }
)


def _as_jaxpr(v) -> Jaxpr | None:
    if isinstance(v, ClosedJaxpr):
        return v.jaxpr
    if isinstance(v, Jaxpr):
        return v
    return None


def _param_jaxprs(params: Mapping[str, Any]):
    for v in params.values():
        if (j := _as_jaxpr(v)) is not None:
            yield j
        elif isinstance(v, (tuple, list)):
            for x in v:
                if (j := _as_jaxpr(x)) is not None:
                    yield j


def contains_tilde(jaxpr: Jaxpr) -> bool:
    for eqn in jaxpr.eqns:
        if eqn.primitive is tilde_p:
            return True
        if any(contains_tilde(j) for j in _param_jaxprs(eqn.params)):
            return True
    return False


def called_jaxpr(eqn) -> ClosedJaxpr | Jaxpr | None:
    """The jaxpr of a call-like equation, or `None` for other equations."""
    if eqn.primitive.name not in _call_primitive_names:
        return None
    for key in ("jaxpr", "call_jaxpr", "fun_jaxpr"):
        v = eqn.params.get(key)
        if isinstance(v, (ClosedJaxpr, Jaxpr)):
            return v
    return None


def descend_into_models(eqn) -> bool:
    """Descend into a nested call exactly when it makes random choices."""
    j = called_jaxpr(eqn)
    return j is not None and contains_tilde(_as_jaxpr(j))


default_policy: Callable[..., bool] = descend_into_models


###############
# Environment #
###############


@dataclass
class Environment:
    """Maps jaxpr variables to the trace operand (a `Slot` or a literal value)
    and the concrete value they stand for."""

    env: dict[Var, tuple[Any, Any]] = field(default_factory=dict)

    def read(self, var) -> Any:
        if isinstance(var, Literal):
            return var.val
        return self._lookup(var)[1]

    def operand(self, var) -> Any:
        if isinstance(var, Literal):
            return var.val
        return self._lookup(var)[0]

    def write(self, var, operand, value):
        if isinstance(var, Literal):
            return
        self.env[var] = (operand, value)

    def _lookup(self, var):
        try:
            return self.env[var]
        except KeyError:
            raise StructuralTraceError(
                f"Unbound variable {var} in traced program."
            ) from None


###########
# Tracker #
###########


@dataclass
class Tracker:
    """Interprets a jaxpr, recording one trace node per equation."""

    key: PRNGKey
    observations: dict[VarName, Any]
    policy: Callable[..., bool]
    count: int = 0

    def new_slot(self) -> Slot:
        self.count += 1
        return Slot(self.count)

    def observed_value(self, name: VarName):
        if name in self.observations:
            return True, self.observations[name]
        for observed, value in self.observations.items():
            if observed.subsumes(name):
                return True, jnp.asarray(value)[observed.excess(name)]
        return False, None

    def record_tilde(self, eqn, operands, invals) -> TildeNode:
        params = eqn.params
        distribution, name = params["distribution"], params["name"]
        args, kwargs = _unflatten(params["in_tree"], invals)
        constructed = distribution.construct(*args, **kwargs)
        observed, value = self.observed_value(name)
        if not observed:
            self.key, sub_key = jrand.split(self.key)
            value = constructed.sample(sample_shape=params["shape"], seed=sub_key)
        logger.debug("%s %s %s", name, "observed" if observed else "sampled", value)
        return TildeNode(
            self.new_slot(),
            name,
            distribution,
            tuple(operands),
            params["in_tree"],
            constructed,
            value,
            observed,
        )

    def eval_jaxpr(self, jaxpr: Jaxpr, consts, in_operands, in_values):
        """Interpret `jaxpr`, returning its child nodes and output variables'
        operands and values."""
        env = Environment()
        children = []
        for var, const in zip(jaxpr.constvars, consts):
            node = ConstantNode(self.new_slot(), const)
            children.append(node)
            env.write(var, node.slot, const)
        for var, operand, value in zip(jaxpr.invars, in_operands, in_values):
            env.write(var, operand, value)

        for eqn in jaxpr.eqns:
            operands = [env.operand(v) for v in eqn.invars]
            invals = [env.read(v) for v in eqn.invars]

            if eqn.primitive is tilde_p:
                node = self.record_tilde(eqn, operands, invals)
                children.append(node)
                env.write(eqn.outvars[0], node.slot, node.value)
                continue

            inner = called_jaxpr(eqn)
            if inner is not None and self.policy(eqn):
                closed = inner if isinstance(inner, ClosedJaxpr) else None
                inner_jaxpr = _as_jaxpr(inner)
                inner_consts = closed.consts if closed is not None else []
                logger.debug("descending into %s", eqn.params.get("name", eqn.primitive))
                grandchildren, out_operands, out_values = self.eval_jaxpr(
                    inner_jaxpr, inner_consts, operands, invals
                )
                node = NestedCallNode(
                    self.new_slot(),
                    eqn.params.get("name", eqn.primitive.name),
                    tuple(operands),
                    tuple(grandchildren),
                    tuple(out_operands),
                    tuple(out_values),
                )
                children.append(node)
                for var, operand, value in zip(eqn.outvars, out_operands, out_values):
                    env.write(var, operand, value)
                continue

            if any(contains_tilde(j) for j in _param_jaxprs(eqn.params)):
                raise StructuralTraceError(
                    f"Random choices inside `{eqn.primitive.name}` cannot be traced; "
                    "write the loop or branch in Python instead."
                )

            target = PrimitiveCall(eqn.primitive, dict(eqn.params))
            outvals = target(*invals)
            node = CallNode(self.new_slot(), target, tuple(operands), outvals)
            children.append(node)
            if not eqn.primitive.multiple_results:
                env.write(eqn.outvars[0], node.slot, outvals)
            else:
                for i, (var, value) in enumerate(zip(eqn.outvars, outvals)):
                    projection = CallNode(
                        self.new_slot(), operator.itemgetter(i), (node.slot,), value
                    )
                    children.append(projection)
                    env.write(var, projection.slot, value)

        out_operands = [env.operand(v) for v in jaxpr.outvars]
        out_values = [env.read(v) for v in jaxpr.outvars]
        return children, out_operands, out_values


def track(
    program,
    *args,
    observations: Mapping[Any, Any] | None = None,
    key: PRNGKey | None = None,
    policy: Callable[..., bool] | None = None,
) -> NestedCallNode:
    """Run `program` on `args` and record its execution trace.

    Args:
        program: The model to run.
        *args: Arguments of the model. Arrays become constants of the trace,
            Python scalars stay static (so they can drive Python loops).
        observations: Maps addresses to observed values. A random choice is
            observed when its name is subsumed by one of these addresses.
        key: Key used to sample unobserved choices.
        policy: Recursion strategy deciding whether to descend into a nested
            call equation; `default_policy` when not given.

    Returns:
        The root `NestedCallNode` of the trace, targeting `program`.
    """
    if not isinstance(program, Model):
        raise StructuralTraceError(f"{program!r} is not a model.")
    key = fresh_key() if key is None else key
    policy = default_policy if policy is None else policy
    obs = {
        VarName.from_address(addr): jnp.asarray(value)
        for addr, value in (observations or {}).items()
    }

    closed_jaxpr = jax.make_jaxpr(lambda: program.source(*args))()
    logger.debug("staged %s:\n%s", program.name, closed_jaxpr)

    tracker = Tracker(key, obs, policy)
    children, out_operands, out_values = tracker.eval_jaxpr(
        closed_jaxpr.jaxpr, closed_jaxpr.consts, [], []
    )
    return NestedCallNode(
        tracker.new_slot(),
        program,
        (),
        tuple(children),
        tuple(out_operands),
        tuple(out_values),
    )

