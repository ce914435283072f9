"""
Tests for execution tracing of models.
"""

import jax.numpy as jnp
import jax.random as jrand
import pytest

from autogibbs import StructuralTraceError, VarName, track
from autogibbs.graph import strip_calls
from autogibbs.tracking import Model, NestedCallNode, TildeNode
from models import (
    X_OBSERVED,
    gaussian_chain,
    mixture,
    nested,
    scanned,
)


@pytest.fixture
def key():
    return jrand.key(0)


def tilde_nodes(trace):
    return [node for node in strip_calls(trace) if isinstance(node, TildeNode)]


@pytest.mark.tracking
class TestTrack:
    """Tracing records one node per random choice, in program order."""

    def test_root_targets_model(self, key):
        trace = track(gaussian_chain, key=key)
        assert isinstance(trace, NestedCallNode)
        assert trace.target is gaussian_chain
        assert isinstance(gaussian_chain, Model)
        assert gaussian_chain.name == "gaussian_chain"

    def test_random_choices(self, key):
        trace = track(gaussian_chain, key=key)
        tildes = tilde_nodes(trace)
        assert [str(t.name) for t in tildes] == ["λ", "m", "x"]
        assert not any(t.observed for t in tildes)
        # The return value is the value of `x`.
        assert jnp.allclose(trace.value[0], tildes[-1].value)

    def test_observations(self, key):
        trace = track(gaussian_chain, observations={"x": 1.4}, key=key)
        λ, m, x = tilde_nodes(trace)
        assert x.observed and not λ.observed and not m.observed
        assert jnp.allclose(x.value, 1.4)

    def test_observing_a_container(self, key):
        trace = track(mixture, 3, observations={"x": X_OBSERVED}, key=key)
        xs = [t for t in tilde_nodes(trace) if t.name.symbol == "x"]
        assert [t.name for t in xs] == [VarName("x", ((i,),)) for i in range(3)]
        assert all(t.observed for t in xs)
        assert jnp.allclose(jnp.stack([t.value for t in xs]), X_OBSERVED)

    def test_same_key_same_values(self, key):
        first = tilde_nodes(track(gaussian_chain, key=key))
        second = tilde_nodes(track(gaussian_chain, key=key))
        for a, b in zip(first, second):
            assert jnp.array_equal(a.value, b.value)

    def test_values_follow_distributions(self, key):
        trace = track(mixture, 2, key=key)
        z = [t for t in tilde_nodes(trace) if t.name.symbol == "z"]
        assert all(int(t.value) in (0, 1) for t in z)


@pytest.mark.tracking
class TestNestedCalls:
    """Jitted helpers are descended into when they make random choices."""

    def test_descends_into_jit(self, key):
        trace = track(nested, key=key)
        assert [str(t.name) for t in tilde_nodes(trace)] == ["m", "y"]
        assert any(isinstance(child, NestedCallNode) for child in trace.children)

    def test_policy_refusing_to_descend(self, key):
        with pytest.raises(StructuralTraceError):
            track(nested, key=key, policy=lambda eqn: False)

    def test_choices_inside_control_flow(self, key):
        with pytest.raises(StructuralTraceError):
            track(scanned, key=key)


@pytest.mark.tracking
@pytest.mark.fast
def test_only_models_are_tracked(key):
    with pytest.raises(StructuralTraceError):
        track(lambda: 1.0, key=key)


@pytest.mark.tracking
@pytest.mark.fast
def test_eager_model_call():
    x = gaussian_chain()
    assert jnp.shape(x) == ()
    assert jnp.isfinite(x)
