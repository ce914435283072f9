"""Probability distributions for AutoGibbs models.

Distributions are thin wrappers around TensorFlow Probability constructors.
Calling one returns a `Thunk`, and `thunk @ addr` makes a named random
choice:

    x = normal(0.0, 1.0) @ "x"
    z = categorical(logits, shape=(3,)) @ "z"
    y = flip(0.3) @ ("y", i)

Wrappers of discrete distributions also know how to enumerate the support
of a constructed distribution, which is what conditionals are built from.
"""

import jax.numpy as jnp
import jax.random as jrand

from autogibbs._compat import ensure_jax_tfp_compat
from autogibbs.core import (
    Any,
    Array,
    Callable,
    Pytree,
    UnsupportedDistributionError,
)
from autogibbs.tracking import tilde

ensure_jax_tfp_compat()

from tensorflow_probability.substrates import jax as tfp  # noqa: E402

tfd = tfp.distributions

################
# Distribution #
################


@Pytree.dataclass
class Distribution(Pytree):
    """A named family of distributions.

    Attributes:
        constructor: Maps parameters to a TFP distribution.
        name: Name used when printing graphs and conditionals.
        support: Maps a constructed distribution to a 1-D array of all the
            values it can take, or `None` when those cannot be enumerated.
    """

    constructor: Callable[..., Any] = Pytree.static()
    name: str | None = Pytree.static(default=None)
    support: Callable[..., Any] | None = Pytree.static(default=None)

    def construct(self, *args, **kwargs):
        return self.constructor(*args, **kwargs)

    def sample(self, key, *args, sample_shape=(), **kwargs):
        d = self.construct(*args, **kwargs)
        return d.sample(sample_shape=sample_shape, seed=key)

    def logpdf(self, v, *args, **kwargs):
        return self.construct(*args, **kwargs).log_prob(v)

    def enumerate_support(self, d) -> Array:
        if self.support is None:
            raise UnsupportedDistributionError(
                f"Unable to enumerate the support of {self.name} (probably infinite)."
            )
        try:
            return jnp.asarray(self.support(d))
        except (TypeError, ValueError) as e:
            raise UnsupportedDistributionError(
                f"Unable to enumerate the support of {self.name}."
            ) from e

    def __call__(self, *args, shape=(), **kwargs) -> "Thunk":
        return Thunk(self, args, kwargs, tuple(shape))

    def __str__(self):
        return self.name or repr(self.constructor)


@Pytree.dataclass
class Thunk(Pytree):
    distribution: Distribution = Pytree.static()
    args: tuple
    kwargs: dict
    shape: tuple = Pytree.static(default=())

    def __matmul__(self, addr):
        return tilde(self.distribution, addr, self.args, self.kwargs, self.shape)


def tfp_distribution(
    dist: Callable[..., Any],
    /,
    name: str | None = None,
    support: Callable[..., Any] | None = None,
) -> Distribution:
    return Distribution(dist, name, support)


def support_of(distribution: Distribution, d) -> Array:
    """All values the constructed distribution `d` of a `distribution` wrapper
    can take."""
    return distribution.enumerate_support(d)


def _binary_support(d):
    return jnp.array([0, 1], dtype=d.dtype)


# Discrete distributions
bernoulli = tfp_distribution(
    tfd.Bernoulli,
    name="Bernoulli",
    support=_binary_support,
)
"""Bernoulli distribution for binary outcomes.

Args:
    logits: Log-odds of success, or
    probs: Probability of success.
"""

flip = tfp_distribution(
    lambda p: tfd.Bernoulli(probs=p),
    name="Flip",
    support=_binary_support,
)
"""Flip distribution (Bernoulli parameterized by probability).

Args:
    p: Probability of a 1 outcome.
"""

categorical = tfp_distribution(
    lambda logits: tfd.Categorical(logits=logits),
    name="Categorical",
    support=lambda d: jnp.arange(d.logits_parameter().shape[-1], dtype=d.dtype),
)
"""Categorical distribution over discrete outcomes.

Args:
    logits: Log-probabilities for each category.
"""

binomial = tfp_distribution(
    lambda n, p: tfd.Binomial(n, probs=p),
    name="Binomial",
    support=lambda d: jnp.arange(int(d.total_count) + 1),
)
"""Binomial distribution with a fixed number of trials.

Args:
    n: Number of trials (a concrete non-negative integer).
    p: Probability of success per trial.
"""

geometric = tfp_distribution(
    tfd.Geometric,
    name="Geometric",
)
"""Geometric distribution (number of failures before the first success).

Args:
    logits: Log-odds of success, or
    probs: Probability of success.
"""

poisson = tfp_distribution(
    tfd.Poisson,
    name="Poisson",
)
"""Poisson distribution for count data.

Args:
    rate: Expected number of events (lambda parameter).
"""

# Continuous distributions
normal = tfp_distribution(
    tfd.Normal,
    name="Normal",
)
"""Normal (Gaussian) distribution.

Args:
    loc: Mean of the distribution.
    scale: Standard deviation (> 0).
"""

beta = tfp_distribution(
    tfd.Beta,
    name="Beta",
)
"""Beta distribution on the interval [0, 1].

Args:
    concentration1: Alpha parameter (> 0).
    concentration0: Beta parameter (> 0).
"""

gamma = tfp_distribution(
    tfd.Gamma,
    name="Gamma",
)
"""Gamma distribution for positive continuous values.

Args:
    concentration: Shape parameter (alpha > 0).
    rate: Rate parameter (beta > 0).
"""

uniform = tfp_distribution(
    tfd.Uniform,
    name="Uniform",
)

exponential = tfp_distribution(
    tfd.Exponential,
    name="Exponential",
)

multivariate_normal = tfp_distribution(
    tfd.MultivariateNormalFullCovariance,
    name="MultivariateNormal",
)
"""Multivariate normal distribution.

Args:
    loc: Mean vector.
    covariance_matrix: Covariance matrix (positive definite).
"""

dirichlet = tfp_distribution(
    tfd.Dirichlet,
    name="Dirichlet",
)
"""Dirichlet distribution for probability vectors.

Args:
    concentration: Concentration parameters (all > 0).
"""

########################
# Clustering processes #
########################


@Pytree.dataclass
class DirichletProcess(Pytree):
    """Parameters of a Dirichlet process random measure.

    Attributes:
        alpha: Concentration (> 0).
        base: Distribution wrapper of the base measure `G₀` the cluster
            parameters are drawn from. Needed to score new clusters in
            conditionals.
        base_args: Parameters of `G₀`, as passed to `base`.
    """

    alpha: Any
    base: Distribution | None = Pytree.static(default=None)
    base_args: tuple = ()

    def base_measure(self):
        """The TFP distribution `G₀`, or `None` when no base is given."""
        if self.base is None:
            return None
        return self.base.construct(*self.base_args)


@Pytree.dataclass
class ChineseRestaurantProcess(Pytree):
    """Distribution of the cluster index of the next customer, given the
    occupancy `counts` of clusters 0, 1, ... under a random measure.

    With `N` customers seated and `K` one past the last occupied cluster,
    cluster `k < K` has probability `counts[k] / (N + α)` and the new cluster
    `K` has probability `α / (N + α)`.
    """

    rpm: DirichletProcess
    counts: Any

    def _weights(self):
        counts = jnp.asarray(self.counts, dtype=jnp.float32)
        positions = jnp.arange(1, counts.shape[-1] + 1)
        new_cluster = jnp.max(jnp.where(counts > 0, positions, 0))
        weights = jnp.concatenate([counts, jnp.zeros((1,), counts.dtype)])
        return weights.at[new_cluster].add(self.rpm.alpha), new_cluster

    @property
    def batch_shape(self):
        return ()

    @property
    def event_shape(self):
        return ()

    def new_cluster(self):
        return self._weights()[1]

    def log_prob(self, k):
        weights, _ = self._weights()
        return jnp.log(weights[k]) - jnp.log(jnp.sum(weights))

    def sample(self, sample_shape=(), seed=None):
        weights, _ = self._weights()
        return jrand.categorical(seed, jnp.log(weights), shape=tuple(sample_shape))

    def support(self) -> Array:
        return jnp.arange(int(self.new_cluster()) + 1)


crp = tfp_distribution(
    ChineseRestaurantProcess,
    name="ChineseRestaurantProcess",
    support=lambda d: d.support(),
)
"""Chinese restaurant process over cluster indices.

Args:
    rpm: A `DirichletProcess`.
    counts: Occupancy counts of the clusters seen so far.
"""
