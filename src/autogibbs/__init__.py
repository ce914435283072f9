from beartype import BeartypeConf
from beartype.claw import beartype_this_package

conf = BeartypeConf(
    is_color=True,
    is_debug=False,
    is_pep484_tower=True,
    violation_type=TypeError,
)

beartype_this_package(conf=conf)

from .conditionals import (
    ApproximationWarning,
    Fixed,
    GibbsConditional,
    LogLikelihood,
    Transformation,
    Variable,
    conditionals,
    continuations,
    evaluate,
    fixvalue,
    fixvalues,
    lookup,
)
from .core import (
    AutoGibbsError,
    MissingVariableError,
    Overlap,
    Pytree,
    StructuralTraceError,
    UnsupportedCompositionError,
    UnsupportedDistributionError,
    VarName,
)
from .distributions import (
    ChineseRestaurantProcess,
    DirichletProcess,
    Distribution,
    bernoulli,
    beta,
    binomial,
    categorical,
    crp,
    dirichlet,
    exponential,
    flip,
    gamma,
    geometric,
    multivariate_normal,
    normal,
    poisson,
    support_of,
    tfp_distribution,
    uniform,
)
from .graph import (
    Assumption,
    Call,
    Constant,
    Graph,
    Observation,
    Reference,
    extract_graph,
    getindex,
    sampled_values,
)
from .tracking import Model, model, track

__all__ = [
    "ApproximationWarning",
    "Assumption",
    "AutoGibbsError",
    "Call",
    "ChineseRestaurantProcess",
    "Constant",
    "DirichletProcess",
    "Distribution",
    "Fixed",
    "GibbsConditional",
    "Graph",
    "LogLikelihood",
    "MissingVariableError",
    "Model",
    "Observation",
    "Overlap",
    "Pytree",
    "Reference",
    "StructuralTraceError",
    "Transformation",
    "UnsupportedCompositionError",
    "UnsupportedDistributionError",
    "VarName",
    "Variable",
    "bernoulli",
    "beta",
    "binomial",
    "categorical",
    "conditionals",
    "continuations",
    "crp",
    "dirichlet",
    "evaluate",
    "exponential",
    "extract_graph",
    "fixvalue",
    "fixvalues",
    "flip",
    "gamma",
    "geometric",
    "getindex",
    "lookup",
    "model",
    "multivariate_normal",
    "normal",
    "poisson",
    "sampled_values",
    "support_of",
    "tfp_distribution",
    "track",
    "uniform",
]
