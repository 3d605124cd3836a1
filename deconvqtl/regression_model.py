import logging
from typing import Any

import numpy as np
import pandas as pd
from sklearn.linear_model import LinearRegression

from deconvqtl.errors import AccessBeforeSetError, DegenerateModelError

logger = logging.getLogger("main")


class RegressionModel:
    """
    One ordinary least squares model of expression on a set of predictor columns.

    The model is fit without an intercept. In the deconvolution models the cell
    type fractions together span the constant, so an intercept column would make
    the design matrix rank deficient.

    A model is fit at most once. After fitting, the coefficients, the residual sum
    of squares (RSS) and the residual degrees of freedom (N - K) are available.
    The design matrix and response are only read, so models sharing the same
    input arrays may be fit concurrently.

    """

    def __init__(
        self,
        design_matrix: pd.DataFrame,
        response: np.ndarray | pd.Series,
        key: Any = None,
    ):
        """
        Initialize a RegressionModel.

        :param design_matrix: N samples x K predictors. Column names are used to
            label the fitted coefficients.
        :param response: The response (expression) vector of length N.
        :param key: Optional identifier of the model within its collection. Only
            used in error messages.
        :raises ValueError: If the design matrix is not a DataFrame or the lengths
            of the design matrix and response differ.

        """
        if not isinstance(design_matrix, pd.DataFrame):
            raise ValueError("design_matrix must be a DataFrame.")

        response = np.asarray(response, dtype=float)
        if response.ndim != 1:
            raise ValueError("response must be one dimensional.")
        if design_matrix.shape[0] != response.shape[0]:
            raise ValueError(
                "The number of rows in design_matrix must match the length of "
                f"response: {design_matrix.shape[0]} != {response.shape[0]}."
            )

        self.design_matrix = design_matrix
        self.response = response
        self.key = key

        self._estimator: LinearRegression | None = None
        self._rss: float | None = None

    @property
    def n_samples(self) -> int:
        return self.design_matrix.shape[0]

    @property
    def n_predictors(self) -> int:
        return self.design_matrix.shape[1]

    @property
    def predictor_names(self) -> list[str]:
        return list(self.design_matrix.columns)

    @property
    def is_fit(self) -> bool:
        return self._estimator is not None

    def fit(self) -> "RegressionModel":
        """
        Fit the model. A model that is already fit is returned unchanged.

        :return: self, to allow `RegressionModel(X, y).fit()`.
        :raises DegenerateModelError: If N <= K, the design matrix is rank
            deficient, or the inputs contain non-finite values.

        """
        if self.is_fit:
            return self

        label = f" {self.key}" if self.key is not None else ""
        n, k = self.design_matrix.shape

        if k == 0:
            raise DegenerateModelError(f"Model{label} has no predictor columns.")
        if n <= k:
            raise DegenerateModelError(
                f"Model{label} has {n} samples for {k} predictors; "
                "at least one residual degree of freedom is required."
            )

        x = self.design_matrix.to_numpy(dtype=float)
        if not np.isfinite(x).all() or not np.isfinite(self.response).all():
            raise DegenerateModelError(
                f"Model{label} contains missing or non-finite values."
            )

        rank = np.linalg.matrix_rank(x)
        if rank < k:
            raise DegenerateModelError(
                f"Design matrix of model{label} is rank deficient "
                f"(rank {rank} < {k} columns): {self.predictor_names}"
            )

        estimator = LinearRegression(fit_intercept=False)
        estimator.fit(x, self.response)

        residuals = self.response - estimator.predict(x)
        self._rss = float(np.dot(residuals, residuals))
        self._estimator = estimator

        return self

    def _fitted_estimator(self) -> LinearRegression:
        if self._estimator is None:
            raise AccessBeforeSetError(f"Model {self.key} has not been fit.")
        return self._estimator

    @property
    def coefficients(self) -> pd.Series:
        """Fitted coefficients, indexed by design matrix column."""
        return pd.Series(
            self._fitted_estimator().coef_, index=self.design_matrix.columns
        )

    @property
    def fitted_values(self) -> np.ndarray:
        return self._fitted_estimator().predict(
            self.design_matrix.to_numpy(dtype=float)
        )

    @property
    def rss(self) -> float:
        """Residual sum of squares."""
        self._fitted_estimator()
        assert self._rss is not None
        return self._rss

    @property
    def degrees_of_freedom(self) -> int:
        """Residual degrees of freedom, N - K."""
        self._fitted_estimator()
        return self.n_samples - self.n_predictors

    def __repr__(self) -> str:
        status = f"rss={self._rss:.6g}" if self.is_fit else "unfit"
        return (
            f"RegressionModel(key={self.key!r}, n={self.n_samples}, "
            f"k={self.n_predictors}, {status})"
        )
