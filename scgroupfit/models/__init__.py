"""Error-model estimators."""

from scgroupfit.models.base import ErrorModelEstimator, MixtureErrorModel
from scgroupfit.models.difference import expression_difference
from scgroupfit.models.error_model import fit_error_models
from scgroupfit.models.prior import expression_magnitude, expression_prior

__all__ = [
    "ErrorModelEstimator",
    "MixtureErrorModel",
    "fit_error_models",
    "expression_magnitude",
    "expression_prior",
    "expression_difference",
]
