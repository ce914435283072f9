"""Continuations of a dependency graph and the Gibbs conditionals built on them.

Every statement of a `Graph` is associated with a `Cont`: a function from an
environment `θ` (a dict from `VarName` to the current value of that random
variable) to the value of the statement, or, for random choices, to their
log-likelihood. For

    ⟨4⟩ = λ ~ ⟨3⟩ → 0.41
    ⟨5⟩ = rsqrt(⟨4⟩) → 1.56
    ⟨6⟩ = Normal(0.0, ⟨5⟩) → ...
    ⟨7⟩ = m ~ ⟨6⟩ → -0.2

the continuation of ⟨7⟩ is `logpdf(Normal(0.0, rsqrt(θ[λ])), θ[m])`.

A `GibbsConditional` collects the log-likelihood of one discrete random
variable together with the log-likelihoods of its Markov blanket, and turns
them into the conditional distribution of the variable given `θ` by
enumerating its support.
"""

import logging
import warnings
from dataclasses import dataclass

import jax
import jax.numpy as jnp
import jax.random as jrand

from autogibbs.core import (
    Any,
    Callable,
    MissingVariableError,
    Overlap,
    PRNGKey,
    UnsupportedCompositionError,
    UnsupportedDistributionError,
    VarName,
)
from autogibbs.distributions import (
    ChineseRestaurantProcess,
    DirichletProcess,
    tfd,
)
from autogibbs.graph import (
    Assumption,
    Call,
    Constant,
    Graph,
    Observation,
    Reference,
    getindex,
    show_value,
)
from autogibbs.tracking import fresh_key

logger = logging.getLogger(__name__)

# Score the new cluster of a Chinese restaurant process by substituting one
# draw from the base measure for the unseen cluster parameter.
approximate_new_cluster = True
new_cluster_warning = True


class ApproximationWarning(UserWarning):
    pass


Environment = dict[VarName, Any]

#################
# Continuations #
#################


@dataclass(frozen=True, eq=False)
class Fixed:
    value: Any

    def __call__(self, θ):
        return run(self, θ)

    def __str__(self):
        return show_value(self.value)


@dataclass(frozen=True)
class Variable:
    name: VarName

    def __call__(self, θ):
        return run(self, θ)

    def __str__(self):
        return f"θ[{self.name}]"


@dataclass(frozen=True, eq=False)
class Transformation:
    f: Callable[..., Any]
    args: tuple

    def __call__(self, θ):
        return run(self, θ)

    def __str__(self):
        name = getattr(self.f, "__name__", None) or str(self.f)
        return f"{name}({', '.join(map(str, self.args))})"


@dataclass(frozen=True, eq=False)
class LogLikelihood:
    """`log p(value | f(*args))`, summed over the elements of `value`.

    `distribution` is the distribution recorded when the program ran; it
    identifies the kind of random choice, while `f` rebuilds the
    distribution for a given environment.
    """

    distribution: Any
    f: Callable[..., Any]
    args: tuple
    value: "Cont"

    def __call__(self, θ):
        return run(self, θ)

    def __str__(self):
        return f"logpdf({self.f}({', '.join(map(str, self.args))}), {self.value})"


Cont = Fixed | Variable | Transformation | LogLikelihood


def _is_index(x) -> bool:
    return jnp.ndim(x) == 0 and jnp.issubdtype(jnp.result_type(x), jnp.integer)


def run(cont: Cont, θ: Environment):
    """Evaluate a continuation in the environment `θ`."""
    match cont:
        case Fixed(value=value):
            return value
        case Variable(name=name):
            return lookup(θ, name)
        case Transformation(f=f, args=(Variable(name=base), *index_args)) if (
            f is getindex and index_args
        ):
            indices = [run(a, θ) for a in index_args]
            # Elements may be stored on their own, so read them by name.
            if all(map(_is_index, indices)):
                return lookup(θ, base.index(tuple(int(i) for i in indices)))
            return f(lookup(θ, base), *indices)
        case Transformation(f=f, args=args):
            return f(*(run(a, θ) for a in args))
        case LogLikelihood(f=f, args=args, value=value):
            d = f(*(run(a, θ) for a in args))
            return jnp.sum(d.log_prob(run(value, θ)))
    raise TypeError(f"Not a continuation: {cont!r}")


def lookup(θ: Environment, name: VarName):
    """The value of `name` in `θ`, read from a stored container if needed.

    Raises:
        MissingVariableError: If no stored name subsumes `name`.
    """
    if name in θ:
        return θ[name]
    for stored, value in θ.items():
        if stored.subsumes(name):
            return jnp.asarray(value)[stored.excess(name)]
    raise MissingVariableError(f"No value for {name} in the environment.")


def _apply(f, *args):
    return f(*args)


def continuations(graph: Graph) -> dict[Reference, Cont]:
    """Associate every statement of `graph` with its continuation.

    Statements are visited in graph order, so the continuations of all the
    arguments of a statement exist when it is converted.
    """
    conts: dict[Reference, Cont] = {}

    def convertarg(arg) -> Cont:
        if not isinstance(arg, Reference):
            return Fixed(arg)
        cont, stmt = conts[arg], graph[arg]
        if isinstance(stmt, (Assumption, Observation)):
            return Variable(stmt.name)
        if isinstance(stmt, Call) and stmt.f is getindex and stmt.definition:
            # Whole-array and per-element draws both end up as `θ[name]`.
            defined, source = stmt.definition
            array = graph[source].name
            if array == defined:
                return Variable(defined)
            return Transformation(
                getindex, (Variable(array), *map(Fixed, array.excess(defined)))
            )
        return cont

    for ref, stmt in graph.items():
        match stmt:
            case Assumption(name=name, dist_ref=dist_ref) | Observation(
                name=name, dist_ref=dist_ref
            ):
                dist_stmt = graph[dist_ref]
                conts[ref] = LogLikelihood(
                    dist_stmt.value,
                    dist_stmt.f,
                    tuple(map(convertarg, dist_stmt.args)),
                    Variable(name),
                )
            case Call(f=Reference() as f_ref, args=args):
                conts[ref] = Transformation(
                    _apply, (convertarg(f_ref), *map(convertarg, args))
                )
            case Call(f=f, args=args):
                conts[ref] = Transformation(f, tuple(map(convertarg, args)))
            case Constant(value=value):
                conts[ref] = Fixed(value)
    return conts


##################
# Markov blanket #
##################


def _fixed_indices(args) -> tuple[int, ...] | None:
    if args and all(isinstance(a, Fixed) and _is_index(a.value) for a in args):
        return tuple(int(a.value) for a in args)
    return None


def parent_variables(likelihood: LogLikelihood) -> list[VarName]:
    """Names of the random variables the distribution of a choice depends on.

    Reads of single elements with constant indices name the element.
    """
    parents: list[VarName] = []

    def visit(cont):
        match cont:
            case Variable(name=name):
                if name not in parents:
                    parents.append(name)
            case Transformation(f=f, args=(Variable(name=base), *index_args)) if (
                f is getindex and _fixed_indices(index_args) is not None
            ):
                visit(Variable(base.index(_fixed_indices(index_args))))
            case Transformation(args=args):
                for a in args:
                    visit(a)
            case LogLikelihood(args=args):
                for a in args:
                    visit(a)

    for arg in likelihood.args:
        visit(arg)
    return parents


@dataclass(frozen=True)
class BlanketEntry:
    """The log-likelihood of the choice `name`, which depends on the target
    of a conditional through `parent`.

    A choice with several parents overlapping the target has one entry per
    parent, all sharing the same `likelihood`.
    """

    name: VarName
    parent: VarName
    likelihood: LogLikelihood

    def __str__(self):
        return str(self.likelihood)


@dataclass(frozen=True)
class GibbsConditional:
    """Conditional distribution of the random variable `name`:

        P[X = x | θ] ∝ P[X = x | parents(X)] * P[children(X) | parents(children(X))]

    that is, a distribution `D` with

        logpdf(D, x) = base(θ[X ↦ x]) + Σᵢ blanketᵢ(θ[X ↦ x])
    """

    name: VarName
    base: LogLikelihood
    blanket: tuple[BlanketEntry, ...]

    def __call__(self, θ: Environment, key: PRNGKey | None = None):
        return evaluate(self, θ, key)

    def sample(self, θ: Environment, key: PRNGKey):
        """Draw a new value for the variable given `θ`: one Gibbs step."""
        key, sub_key = jrand.split(key)
        return evaluate(self, θ, key).sample(seed=sub_key)

    def __str__(self):
        return " + ".join([str(self.base), *map(str, _distinct(self.blanket))])


def conditionals(graph: Graph, pattern) -> dict[VarName, GibbsConditional]:
    """The `GibbsConditional`s of all random choices in `graph` whose name is
    subsumed by `pattern` (a `VarName` or an address such as `"z"`).

    Every later choice with a parent overlapping a target joins its blanket,
    once per overlapping parent.
    """
    pattern = VarName.from_address(pattern)
    conts = continuations(graph)
    bases: dict[VarName, LogLikelihood] = {}
    blankets: dict[VarName, list[BlanketEntry]] = {}

    for ref, stmt in graph.tildes().items():
        likelihood = conts[ref]
        if pattern.subsumes(stmt.name):
            bases[stmt.name] = likelihood
            blankets.setdefault(stmt.name, [])

        parents = parent_variables(likelihood)
        for target, base in bases.items():
            if base is likelihood:
                continue
            for parent in parents:
                if parent.overlaps(target):
                    blankets[target].append(BlanketEntry(stmt.name, parent, likelihood))

    for target in bases:
        logger.debug(
            "blanket of %s: %s", target, ", ".join(str(e.name) for e in blankets[target])
        )
    return {
        name: GibbsConditional(name, base, tuple(blankets[name]))
        for name, base in bases.items()
    }


#############################
# Environment substitutions #
#############################


def fixvalue(θ: Environment, name: VarName, value) -> Environment:
    """A copy of `θ` in which `name` has the value `value`.

    Every stored entry overlapping `name` is updated: entries that are parts
    of `name` are read out of `value`, and entries containing `name` get a
    copy with the corresponding part replaced. `θ` itself is not modified.
    """
    θ_ = dict(θ)
    stored = False
    for target, current in θ.items():
        match name.overlap(target):
            case Overlap.EQUAL | Overlap.CONTAINS_BOTH:
                θ_[target] = value
                stored = True
            case Overlap.TARGET_CONTAINS_SOURCE:
                ix = target.excess(name)
                θ_[target] = jnp.asarray(current).at[ix].set(value)
                stored = True
            case Overlap.SOURCE_CONTAINS_TARGET:
                θ_[target] = jnp.asarray(value)[name.excess(target)]
            case Overlap.DISJOINT:
                pass
    if not stored:
        θ_[name] = value
    return θ_


def fixvalues(θ: Environment, name: VarName, values) -> list[Environment]:
    """One copy of `θ` per element of `values`, as by `fixvalue`."""
    return [fixvalue(θ, name, v) for v in values]


###########################
# Evaluating conditionals #
###########################


def softmax(scores):
    return jax.nn.softmax(jnp.asarray(scores))


def _distinct(entries) -> list[BlanketEntry]:
    """Drop repeated likelihoods: a choice that depends on the target through
    several parents is scored once."""
    seen, distinct = set(), []
    for e in entries:
        if id(e.likelihood) not in seen:
            seen.add(id(e.likelihood))
            distinct.append(e)
    return distinct


def _score(base: LogLikelihood, entries, θ: Environment):
    return run(base, θ) + sum(
        (run(e.likelihood, θ) for e in _distinct(entries)), jnp.zeros(())
    )


def _support(c: GibbsConditional, d):
    enumerate_support = getattr(c.base.f, "support", None)
    if enumerate_support is None:
        raise UnsupportedDistributionError(
            f"Unable to enumerate the support of {c.base.f} for {c.name}."
        )
    return enumerate_support(d)


def evaluate(c: GibbsConditional, θ: Environment, key: PRNGKey | None = None):
    """The conditional distribution of `c.name` given `θ`, as a TFP distribution.

    Scalar variables give a `FiniteDiscrete` over their support. Vectors of
    independent scalar choices give an `Independent` product of per-element
    conditionals. Chinese restaurant process choices give a `FiniteDiscrete`
    over the existing clusters and one new cluster, whose score is estimated
    with a draw (using `key`) from the base measure.

    Raises:
        UnsupportedDistributionError: If the support cannot be enumerated.
        UnsupportedCompositionError: If a new cluster cannot be scored.
    """
    d = c.base.f(*(run(a, θ) for a in c.base.args))
    value = run(c.base.value, θ)
    if isinstance(d, ChineseRestaurantProcess):
        return _crp_conditional(c, d, θ, key)
    if jnp.ndim(value) == 0:
        return _scalar_conditional(c, d, θ)
    if jnp.ndim(value) == 1 and tuple(d.event_shape) == ():
        return _product_conditional(c, d, jnp.shape(value)[0], θ)
    raise UnsupportedDistributionError(
        f"Cannot condition {c.name}: only scalar discrete choices and vectors of "
        "them are supported."
    )


def _scalar_conditional(c: GibbsConditional, d, θ: Environment):
    Ω = _support(c, d)
    scores = jnp.stack([_score(c.base, c.blanket, θ_) for θ_ in fixvalues(θ, c.name, Ω)])
    return tfd.FiniteDiscrete(Ω, probs=softmax(scores))


def _product_conditional(c: GibbsConditional, d, n: int, θ: Environment):
    batch_shape = tuple(d.batch_shape)
    if batch_shape not in ((), (n,)):
        raise UnsupportedDistributionError(
            f"Cannot condition {c.name} on a distribution of batch shape {batch_shape}."
        )
    supports, probs = [], []
    for i in range(n):
        element = c.name.index(i)
        Ω = _support(c, d if batch_shape == () else d[i])
        entries = [e for e in c.blanket if e.parent.overlaps(element)]
        scores = jnp.stack(
            [_score(c.base, entries, θ_) for θ_ in fixvalues(θ, element, Ω)]
        )
        supports.append(Ω)
        probs.append(softmax(scores))

    # Elements share one outcome set; values outside the support of an element
    # get probability zero.
    outcomes = jnp.unique(jnp.concatenate(supports))
    probs = jnp.stack(
        [
            jnp.zeros(outcomes.shape, p.dtype).at[jnp.searchsorted(outcomes, Ω)].set(p)
            for Ω, p in zip(supports, probs)
        ]
    )
    return tfd.Independent(
        tfd.FiniteDiscrete(outcomes, probs=probs),
        reinterpreted_batch_ndims=1,
    )


def _crp_conditional(c: GibbsConditional, d, θ: Environment, key):
    if not approximate_new_cluster:
        raise UnsupportedDistributionError(
            f"{c.name} has unbounded support and new clusters cannot be approximated "
            "(`approximate_new_cluster` is off)."
        )
    Ω = d.support()
    new = int(d.new_cluster())
    scores = [_score(c.base, c.blanket, θ_) for θ_ in fixvalues(θ, c.name, Ω[:new])]
    scores.append(_new_cluster_score(c, d, fixvalue(θ, c.name, Ω[new]), new, key))
    return tfd.FiniteDiscrete(Ω, probs=softmax(jnp.stack(scores)))


def _new_cluster_score(c: GibbsConditional, d, θ: Environment, new: int, key):
    """Estimate the score of opening cluster `new`,

        P(zₙ = K | z₋ₙ, μ, xₙ) ∝ (∏_{i > n} P(zᵢ | z₁..zᵢ₋₁)) P(xₙ | zₙ = K, μ),

    approximating P(xₙ | zₙ = K, μ) = ∫ P(xₙ | m) G₀(dm) ≈ P(xₙ | m*) for a
    single draw m* ~ G₀.
    """
    rpm = d.rpm
    if not isinstance(rpm, DirichletProcess) or rpm.base is None:
        raise UnsupportedCompositionError(
            f"Cannot find the base measure of the random measure {rpm} of {c.name}."
        )
    if new_cluster_warning:
        warnings.warn(
            f"The new-cluster probability of {c.name} is estimated from a single "
            "draw of the base measure.",
            ApproximationWarning,
            stacklevel=4,
        )
    key = fresh_key() if key is None else key

    # `d` was rebuilt at θ, so the base measure holds concrete parameters.
    base_measure = rpm.base_measure()
    score = run(c.base, θ)
    for entry in _distinct(c.blanket):
        if isinstance(entry.likelihood.distribution, ChineseRestaurantProcess):
            score = score + run(entry.likelihood, θ)
            continue
        parameter = _cluster_parameter(entry.likelihood, c.name)
        if parameter is None:
            raise UnsupportedCompositionError(
                f"Cannot find the cluster parameter through which {entry.name} "
                f"depends on {c.name}."
            )
        key, sub_key = jrand.split(key)
        m = base_measure.sample(seed=sub_key)
        score = score + run(entry.likelihood, _with_cluster(θ, parameter, new, m))
    return score


def _mentions(cont: Cont, name: VarName) -> bool:
    match cont:
        case Variable(name=other):
            return other.overlaps(name)
        case Transformation(args=args):
            return any(_mentions(a, name) for a in args)
        case LogLikelihood(args=args, value=value):
            return any(_mentions(a, name) for a in (*args, value))
    return False


def _cluster_parameter(likelihood: LogLikelihood, target: VarName) -> VarName | None:
    """The array indexed by `target` in the arguments of `likelihood`."""

    def visit(cont):
        match cont:
            case Transformation(f=f, args=(Variable(name=array), *index_args)) if (
                f is getindex and any(_mentions(a, target) for a in index_args)
            ):
                return array
            case Transformation(args=args) | LogLikelihood(args=args):
                for a in args:
                    if (found := visit(a)) is not None:
                        return found
        return None

    for arg in likelihood.args:
        if (found := visit(arg)) is not None:
            return found
    return None


def _with_cluster(θ: Environment, parameter: VarName, k: int, m) -> Environment:
    if parameter not in θ:
        return fixvalue(θ, parameter.index(k), m)
    array = jnp.asarray(θ[parameter])
    if array.shape[0] <= k:
        missing = (k + 1 - array.shape[0],) + array.shape[1:]
        array = jnp.concatenate([array, jnp.broadcast_to(m, missing).astype(array.dtype)])
    return {**θ, parameter: array.at[k].set(m)}
