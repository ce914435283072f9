"""Compatibility helpers for running TensorFlow Probability on current JAX.

TFP's JAX substrate lags behind JAX releases. The shims here are installed
once, before `autogibbs` imports TFP, and can be dropped when TFP catches up.
"""

from __future__ import annotations

import jax


def ensure_jax_tfp_compat() -> None:
    """Install the shims TFP 0.25 needs on JAX >= 0.7.

    TFP still references ``jax.interpreters.xla.pytype_aval_mappings``,
    which moved to ``jax.core.pytype_aval_mappings``.
    """

    xla_interpreter = jax.interpreters.xla
    mappings = getattr(jax.core, "pytype_aval_mappings", None)
    if mappings is not None and not hasattr(xla_interpreter, "pytype_aval_mappings"):
        xla_interpreter.pytype_aval_mappings = mappings
