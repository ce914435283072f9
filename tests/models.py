"""
Example models shared by the AutoGibbs tests.

These are small programs covering the shapes conditionals are built for:
continuous chains, scalar and whole-array discrete draws, state kept in
arrays updated with `.at[i].set`, and Chinese restaurant process mixtures.
"""

import jax
import jax.numpy as jnp

from autogibbs import (
    DirichletProcess,
    beta,
    categorical,
    crp,
    dirichlet,
    flip,
    gamma,
    model,
    multivariate_normal,
    normal,
)

X_OBSERVED = jnp.array([0.1, -0.05, 1.0])


@model
def gaussian_chain():
    """λ ~ Gamma(2, 3); m ~ Normal(0, √(1/λ)); x ~ Normal(m, √(1/λ))."""
    λ = gamma(2.0, 3.0) @ "λ"
    σ = jnp.sqrt(1.0 / λ)
    m = normal(0.0, σ) @ "m"
    return normal(m, σ) @ "x"


@model
def gaussian_chain_with_noise():
    λ = gamma(2.0, 3.0) @ "λ"
    σ = jnp.sqrt(1.0 / λ)
    m = normal(0.0, σ) @ "m"
    normal(m, σ) @ "x"
    u = normal(0.0, 1.0) @ "u"
    return normal(u, 1.0) @ "v"


@model
def gaussian_chain_with_dead_code():
    λ = gamma(2.0, 3.0) @ "λ"
    σ = jnp.sqrt(1.0 / λ)
    _ = jnp.exp(jnp.cos(σ) * 3.0)
    m = normal(0.0, σ) @ "m"
    return normal(m, σ) @ "x"


@model
def beta_bernoulli():
    p = beta(1.0, 1.0) @ "p"
    for name in ("x", "y", "z"):
        flip(p) @ name


GRID = jnp.array([0.2, 0.5, 0.8])


@model
def grid_bernoulli():
    """A discrete version of `beta_bernoulli`, with `p` chosen from a grid."""
    k = categorical(jnp.zeros(3)) @ "k"
    p = GRID[k]
    for name in ("x", "y", "z"):
        flip(p) @ name


@model
def mixture(n):
    """Gaussian mixture with individually drawn assignments `z[i]`."""
    w = dirichlet(jnp.ones(2)) @ "w"
    μ = normal(jnp.zeros(2), 1.0) @ "μ"
    for i in range(n):
        z = categorical(jnp.log(w)) @ ("z", i)
        normal(μ[z], 1.0) @ ("x", i)


@model
def vectorized_mixture(n):
    """Gaussian mixture with the assignments `z` drawn as one array."""
    μ = normal(jnp.zeros(2), 1.0) @ "μ"
    z = categorical(jnp.log(jnp.array([0.3, 0.7])), shape=(n,)) @ "z"
    for i in range(n):
        normal(μ[z[i]], 1.0) @ ("x", i)


@model
def two_index_mixture():
    """One observation depending on both elements of a whole-array draw."""
    μ = normal(jnp.zeros(2), 1.0) @ "μ"
    z = categorical(jnp.log(jnp.array([0.3, 0.7])), shape=(2,)) @ "z"
    return normal(μ[z[0]] + μ[z[1]], 1.0) @ "x"


@model
def crp_mixture(n):
    """Infinite mixture: cluster assignments from a Chinese restaurant process."""
    rpm = DirichletProcess(1.0, normal, (0.0, 1.0))
    counts = jnp.zeros(n)
    μ = normal(jnp.zeros(n), 1.0) @ "μ"
    for i in range(n):
        z = crp(rpm, counts) @ ("z", i)
        counts = counts.at[z].add(1.0)
        normal(μ[z], 0.5) @ ("x", i)


@model
def crp_without_base(n):
    rpm = DirichletProcess(1.0)
    counts = jnp.zeros(n)
    μ = normal(jnp.zeros(n), 1.0) @ "μ"
    for i in range(n):
        z = crp(rpm, counts) @ ("z", i)
        counts = counts.at[z].add(1.0)
        normal(μ[z], 0.5) @ ("x", i)


@jax.jit
def _noisy(m):
    return normal(m, 1.0) @ "y"


@model
def nested():
    m = normal(0.0, 1.0) @ "m"
    return _noisy(m)


@model
def scanned():
    def body(carry, _):
        return carry, normal(carry, 1.0) @ "x"

    _, xs = jax.lax.scan(body, 0.0, None, length=3)
    return xs


@model
def crp_vector_mixture(n):
    """Infinite mixture observed as one vector: `x ~ MvNormal(μ[z], 0.25 I)`."""
    rpm = DirichletProcess(1.0, normal, (0.0, 1.0))
    counts = jnp.zeros(n)
    zs = []
    for i in range(n):
        z = crp(rpm, counts) @ ("z", i)
        counts = counts.at[z].add(1.0)
        zs.append(z)
    μ = normal(jnp.zeros(n), 1.0) @ "μ"
    means = jnp.stack([μ[z] for z in zs])
    return multivariate_normal(means, 0.25 * jnp.eye(n)) @ "x"


@model
def state_space(n):
    """Random walk kept in an array updated with `.at[i].set`, observed with
    noise at every step after the first."""
    s = gamma(1.0, 1.0) @ "s"
    state = jnp.zeros(n + 1)
    state = state.at[0].set(normal(0.0, s) @ ("state", 0))
    for i in range(n):
        state = state.at[i + 1].set(normal(state[i], s) @ ("state", i + 1))
        normal(state[i + 1], s) @ ("x", i)
    return state


@model
def state_space_with_known_start(n):
    s = gamma(1.0, 1.0) @ "s"
    state = jnp.zeros(n + 1).at[0].set(42.0)
    for i in range(n):
        state = state.at[i + 1].set(normal(state[i], s) @ ("state", i + 1))
        normal(state[i + 1], s) @ ("x", i)
    return state
