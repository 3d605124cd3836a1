"""
Collection of all the interaction models of one gene-SNP test and the data they
share.

For n cell types there is one full model per genotype encoding (all cell type
main effects and all `cell_type:GT` interaction terms), and for each cell type a
reduced model without that cell type's interaction term. Optionally a whole blood
model of expression on genotype alone is added.

The collection is built in two stages. `InteractionModelCollectionBuilder` gathers
the data and refuses to hand out anything that has not been set yet;
`InteractionModelCollectionBuilder.build()` returns an `InteractionModelCollection`
in which every data field is present.

"""

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np
import pandas as pd

from deconvqtl.errors import AccessBeforeSetError
from deconvqtl.regression_model import RegressionModel

logger = logging.getLogger("main")


class GenotypeEncoding(str, Enum):
    """Which allele coding of the dosages a full model was fit on."""

    RAW = "raw"
    SWAPPED = "swapped"


class QtlTestState(str, Enum):
    INITIALIZED = "initialized"
    DATA_LOADED = "data_loaded"
    MODELS_FIT = "models_fit"
    SIGNIFICANCE_COMPUTED = "significance_computed"
    PERMUTATION_COMPUTED = "permutation_computed"
    REPORTED = "reported"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class FullModel:
    encoding: GenotypeEncoding

    def __str__(self) -> str:
        return f"full_model[{self.encoding.value}]"


@dataclass(frozen=True)
class ReducedModel:
    cell_type: str

    def __str__(self) -> str:
        return f"reduced_model[{self.cell_type}]"


@dataclass(frozen=True)
class WholeBloodModel:
    def __str__(self) -> str:
        return "whole_blood_model"


ModelKey = FullModel | ReducedModel | WholeBloodModel


def swap_genotypes(genotypes: np.ndarray) -> np.ndarray:
    """
    Swap the allele coding of dosages: 0 becomes 2 and 2 becomes 0.

    Every other value, including fractional dosages such as 0.01 or 1.99, is
    passed through unchanged. Applying the swap twice returns the input.

    :param genotypes: Vector of dosages.
    :return: A new vector with the swapped coding.

    """
    genotypes = np.asarray(genotypes, dtype=float)
    swapped = genotypes.copy()
    swapped[genotypes == 0] = 2
    swapped[genotypes == 2] = 0
    return swapped


class InteractionModelCollectionBuilder:
    """
    Unpopulated stage of an interaction model collection.

    Each getter raises `AccessBeforeSetError` until its setter has been called.

    """

    def __init__(self) -> None:
        self._qtl_name: str | None = None
        self._genotypes: np.ndarray | None = None
        self._swapped_genotypes: np.ndarray | None = None
        self._expression_values: np.ndarray | None = None
        self._cell_counts: pd.DataFrame | None = None

    def set_qtl_name(self, qtl_name: str) -> "InteractionModelCollectionBuilder":
        self._qtl_name = qtl_name
        return self

    @property
    def qtl_name(self) -> str:
        if self._qtl_name is None:
            raise AccessBeforeSetError("QTL name not set for this collection")
        return self._qtl_name

    def set_genotypes(self, genotypes) -> "InteractionModelCollectionBuilder":
        """Store the dosages and derive the swapped dosages from them."""
        self._genotypes = np.asarray(genotypes, dtype=float)
        self._swapped_genotypes = swap_genotypes(self._genotypes)
        return self

    @property
    def genotypes(self) -> np.ndarray:
        if self._genotypes is None:
            raise AccessBeforeSetError("genotypes not set for this collection")
        return self._genotypes

    @property
    def swapped_genotypes(self) -> np.ndarray:
        if self._swapped_genotypes is None:
            raise AccessBeforeSetError("genotypes not set for this collection")
        return self._swapped_genotypes

    def set_expression_values(self, expression) -> "InteractionModelCollectionBuilder":
        self._expression_values = np.asarray(expression, dtype=float)
        return self

    @property
    def expression_values(self) -> np.ndarray:
        if self._expression_values is None:
            raise AccessBeforeSetError("expression values not set for this collection")
        return self._expression_values

    def set_cell_counts(
        self, cell_counts: pd.DataFrame
    ) -> "InteractionModelCollectionBuilder":
        """
        Set the cell count fractions, one column per cell type.

        :param cell_counts: samples x cell types DataFrame. Column order defines
            the order of the model terms.
        :raises ValueError: If the cell type names are not unique.

        """
        if not isinstance(cell_counts, pd.DataFrame):
            raise ValueError("cell_counts must be a DataFrame.")
        if cell_counts.columns.has_duplicates:
            raise ValueError(
                f"Cell type names must be unique: {list(cell_counts.columns)}"
            )
        self._cell_counts = cell_counts
        return self

    @property
    def cell_counts(self) -> pd.DataFrame:
        if self._cell_counts is None:
            raise AccessBeforeSetError("cell counts not set for this collection")
        return self._cell_counts

    @property
    def cell_types(self) -> list[str]:
        return [str(col) for col in self.cell_counts.columns]

    def build(self) -> "InteractionModelCollection":
        """
        Return the populated collection.

        :raises AccessBeforeSetError: If any data field was not set.
        :raises ValueError: If the vectors do not all have the same length.

        """
        n_samples = {
            "genotypes": len(self.genotypes),
            "expression": len(self.expression_values),
            "cell counts": self.cell_counts.shape[0],
        }
        if len(set(n_samples.values())) != 1:
            raise ValueError(
                f"Sample vectors of {self.qtl_name} differ in length: {n_samples}"
            )

        return InteractionModelCollection(
            qtl_name=self.qtl_name,
            genotypes=self.genotypes,
            swapped_genotypes=self.swapped_genotypes,
            expression_values=self.expression_values,
            cell_counts=self.cell_counts,
        )


class InteractionModelCollection:
    """
    Populated stage of an interaction model collection: the aggregate root of one
    gene-SNP test.

    Holds the shared data, the models keyed by `ModelKey`, the ANOVA p-value of each
    reduced model, the full model candidates and the best full model. The data
    arrays can be released with `empty_expression_values` and `empty_genotypes`
    once the models are fit; reading them afterwards raises
    `AccessBeforeSetError`.

    """

    def __init__(
        self,
        qtl_name: str,
        genotypes: np.ndarray,
        swapped_genotypes: np.ndarray,
        expression_values: np.ndarray,
        cell_counts: pd.DataFrame,
    ):
        self._qtl_name = qtl_name
        self._genotypes: np.ndarray | None = genotypes
        self._swapped_genotypes: np.ndarray | None = swapped_genotypes
        self._expression_values: np.ndarray | None = expression_values
        self._cell_counts = cell_counts
        self._sample_size = len(genotypes)

        self._interaction_models: dict[ModelKey, RegressionModel] = {}
        self._pvalues: dict[ReducedModel, float] = {}
        self._full_model_keys: list[FullModel] = []
        self._best_full_model: FullModel | None = None

        self.state = QtlTestState.DATA_LOADED
        self.skip_reason: str | None = None

    @classmethod
    def from_vectors(
        cls,
        qtl_name: str,
        genotypes,
        expression,
        cell_counts: pd.DataFrame,
    ) -> "InteractionModelCollection":
        """Shortcut for building a populated collection in one call."""
        return (
            InteractionModelCollectionBuilder()
            .set_qtl_name(qtl_name)
            .set_genotypes(genotypes)
            .set_expression_values(expression)
            .set_cell_counts(cell_counts)
            .build()
        )

    @property
    def qtl_name(self) -> str:
        return self._qtl_name

    @property
    def sample_size(self) -> int:
        return self._sample_size

    @property
    def cell_counts(self) -> pd.DataFrame:
        return self._cell_counts

    @property
    def cell_types(self) -> list[str]:
        return [str(col) for col in self._cell_counts.columns]

    @property
    def genotypes(self) -> np.ndarray:
        if self._genotypes is None:
            raise AccessBeforeSetError(
                f"genotypes of {self.qtl_name} have been released"
            )
        return self._genotypes

    @property
    def swapped_genotypes(self) -> np.ndarray:
        if self._swapped_genotypes is None:
            raise AccessBeforeSetError(
                f"genotypes of {self.qtl_name} have been released"
            )
        return self._swapped_genotypes

    def genotypes_for(self, encoding: GenotypeEncoding) -> np.ndarray:
        if encoding is GenotypeEncoding.SWAPPED:
            return self.swapped_genotypes
        return self.genotypes

    @property
    def expression_values(self) -> np.ndarray:
        if self._expression_values is None:
            raise AccessBeforeSetError(
                f"expression values of {self.qtl_name} have been released"
            )
        return self._expression_values

    def empty_expression_values(self) -> None:
        self._expression_values = None

    def empty_genotypes(self) -> None:
        self._genotypes = None
        self._swapped_genotypes = None

    def add_interaction_model(
        self,
        interaction_model: RegressionModel,
        key: ModelKey,
        is_full_model: bool = False,
    ) -> None:
        """
        Register a model under `key`. Full models are added to the candidates for
        the best full model.

        :raises ValueError: If `is_full_model` is set for a key that is not a
            `FullModel`.

        """
        if is_full_model and not isinstance(key, FullModel):
            raise ValueError(f"{key} cannot be registered as a full model.")
        self._interaction_models[key] = interaction_model
        if is_full_model and key not in self._full_model_keys:
            self._full_model_keys.append(key)

    def get_interaction_model(self, key: ModelKey) -> RegressionModel:
        try:
            return self._interaction_models[key]
        except KeyError:
            raise AccessBeforeSetError(f"No model {key} in {self.qtl_name}")

    def remove_interaction_model(self, key: ModelKey) -> None:
        self._interaction_models.pop(key, None)
        if key in self._full_model_keys:
            self._full_model_keys.remove(key)  # type: ignore[arg-type]
            if self._best_full_model == key:
                self._best_full_model = None

    @property
    def model_keys(self) -> list[ModelKey]:
        return list(self._interaction_models)

    @property
    def full_model_keys(self) -> list[FullModel]:
        return list(self._full_model_keys)

    def set_best_full_model(self, key: FullModel | None = None) -> FullModel:
        """
        Choose the full model every reduced model is compared against.

        Without `key`, the fitted candidate with the lowest residual sum of squares
        is chosen; on a tie the candidate registered first wins.

        :param key: Explicitly chosen full model.
        :return: The key of the best full model.
        :raises AccessBeforeSetError: If there is no full model candidate, or `key`
            is not one.

        """
        if key is not None:
            if key not in self._full_model_keys:
                raise AccessBeforeSetError(f"{key} is not a full model of this QTL")
            self._best_full_model = key
            return key

        if not self._full_model_keys:
            raise AccessBeforeSetError(
                f"No full models added to {self.qtl_name}; cannot choose the best"
            )

        self._best_full_model = min(
            self._full_model_keys,
            key=lambda k: self._interaction_models[k].rss,
        )
        return self._best_full_model

    @property
    def best_full_model_key(self) -> FullModel:
        if self._best_full_model is None:
            raise AccessBeforeSetError("best full model not set")
        return self._best_full_model

    def get_best_full_model(self) -> RegressionModel:
        return self.get_interaction_model(self.best_full_model_key)

    def set_pvalue(self, pvalue: float, key: ReducedModel) -> None:
        """
        Store the ANOVA p-value of the reduced model `key` against the best full
        model.

        :raises AccessBeforeSetError: If the best full model has not been chosen.

        """
        if self._best_full_model is None:
            raise AccessBeforeSetError(
                f"Cannot set the pvalue of {key} before the best full model is set"
            )
        self._pvalues[key] = float(pvalue)

    def get_pvalue(self, key: ReducedModel) -> float:
        try:
            return self._pvalues[key]
        except KeyError:
            raise AccessBeforeSetError(f"Pvalue not set for model {key}")

    @property
    def pvalues(self) -> dict[str, float]:
        """P-values by cell type, in cell type order."""
        return {
            ct: self._pvalues[ReducedModel(ct)]
            for ct in self.cell_types
            if ReducedModel(ct) in self._pvalues
        }

    def skip(self, reason: str) -> None:
        self.state = QtlTestState.SKIPPED
        self.skip_reason = reason
