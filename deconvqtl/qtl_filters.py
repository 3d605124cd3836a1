import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.stats import norm, rankdata

from deconvqtl.config import NORMALIZATION_TYPES, DeconvolutionConfig
from deconvqtl.errors import AlignmentError, GenotypeFilterError

logger = logging.getLogger("main")

GENOTYPE_CLASSES = (0, 1, 2)


@dataclass
class PreparedQtl:
    """The sample aligned, filtered and transformed vectors of one gene-SNP pair.

    The observed test and every permutation of the pair are built from the same
    PreparedQtl.

    """

    qtl_name: str
    genotypes: pd.Series
    expression: pd.Series
    cell_counts: pd.DataFrame

    @property
    def sample_size(self) -> int:
        return len(self.genotypes)


def validate_alignment(
    genotypes: pd.Series,
    expression: pd.Series,
    cell_counts: pd.DataFrame,
    qtl_name: str = "",
) -> None:
    """
    Ensure the three inputs hold the same samples in the same order.

    :raises AlignmentError: If the sample counts or the sample order differ.

    """
    sizes = {
        "genotypes": len(genotypes),
        "expression": len(expression),
        "cell counts": cell_counts.shape[0],
    }
    if len(set(sizes.values())) != 1:
        raise AlignmentError(f"{qtl_name}: sample counts differ: {sizes}")

    if not genotypes.index.equals(expression.index):
        raise AlignmentError(
            f"{qtl_name}: genotype and expression samples are not in the same order"
        )
    if not genotypes.index.equals(cell_counts.index):
        raise AlignmentError(
            f"{qtl_name}: genotype and cell count samples are not in the same order"
        )


def genotype_class_counts(genotypes: pd.Series | np.ndarray) -> dict[int, int]:
    """
    Count the samples in each genotype class. Fractional dosages are assigned to
    the nearest class.

    :return: Mapping from genotype class (0, 1, 2) to number of samples.

    """
    rounded = round_dosages(np.asarray(genotypes, dtype=float))
    return {cls: int(np.sum(rounded == cls)) for cls in GENOTYPE_CLASSES}


def round_dosages(genotypes: pd.Series | np.ndarray) -> pd.Series | np.ndarray:
    """
    Round dosages to the closest integer. Halves are rounded up, so 0.5 becomes 1
    and 1.5 becomes 2.

    :param genotypes: Non-negative dosages.
    :return: Rounded dosages, of the same type as `genotypes`.

    """
    return np.floor(genotypes + 0.5)


def check_genotype_filters(
    genotypes: pd.Series | np.ndarray,
    minimum_samples_per_genotype: int = 0,
    all_dosages_required: bool = False,
    qtl_name: str = "",
) -> None:
    """
    Apply the genotype class filters to one QTL.

    :param genotypes: Dosages of the QTL.
    :param minimum_samples_per_genotype: Minimum number of samples required in each
        genotype class.
    :param all_dosages_required: Require every genotype class to be present.
    :param qtl_name: Used in the error message.
    :raises GenotypeFilterError: If the QTL fails a filter.

    """
    counts = genotype_class_counts(genotypes)

    if minimum_samples_per_genotype > 0:
        too_few = {
            cls: n for cls, n in counts.items() if n < minimum_samples_per_genotype
        }
        if too_few:
            raise GenotypeFilterError(
                f"{qtl_name}: fewer than {minimum_samples_per_genotype} samples for "
                f"genotype(s) {too_few}"
            )

    if all_dosages_required and any(n == 0 for n in counts.values()):
        raise GenotypeFilterError(
            f"{qtl_name}: not all dosages are present {counts}"
        )


def force_normal(values: pd.Series | np.ndarray) -> np.ndarray:
    """
    Rank based inverse normal transform.

    Ties receive their average rank. Rank r of n values maps to the standard normal
    quantile of (r - 0.5) / n.

    :param values: Vector to transform.
    :return: The transformed vector.

    """
    values = np.asarray(values, dtype=float)
    n = values.shape[0]
    if n == 0:
        return values.copy()
    ranks = rankdata(values, method="average")
    return norm.ppf((ranks - 0.5) / n)


def normalize_expression(
    expression: pd.Series | np.ndarray, normalization_type: str = "normalizeAddMean"
) -> np.ndarray:
    """
    Force normal an expression vector.

    :param expression: Expression of one gene.
    :param normalization_type: "normalize" returns the rank based inverse normal
        transform (mean 0). "normalizeAddMean" shifts that transform by the mean
        of the input, so the expression keeps its level.
    :return: The normalized vector.
    :raises ValueError: If `normalization_type` is unknown.

    """
    if normalization_type not in NORMALIZATION_TYPES:
        raise ValueError(
            f"normalization_type should be one of {NORMALIZATION_TYPES}, not "
            f"{normalization_type!r}"
        )
    values = np.asarray(expression, dtype=float)
    normalized = force_normal(values)
    if normalization_type == "normalizeAddMean" and values.shape[0] > 0:
        normalized = normalized + values.mean()
    return normalized


def prepare_qtl(
    genotypes: pd.Series,
    expression: pd.Series,
    cell_counts: pd.DataFrame,
    config: DeconvolutionConfig,
    qtl_name: str = "",
) -> PreparedQtl:
    """
    Align, filter and transform the inputs of one gene-SNP pair.

    In order:
        1. Check that all inputs share samples and sample order.
        2. Drop samples with a missing genotype (NaN or a negative dosage).
        3. Round dosages, if `config.round_dosage`.
        4. Apply the genotype class filters.
        5. Force normal the expression (as set by `config.normalization_type`)
            and/or the cell counts.

    :return: The PreparedQtl used for the observed test and its permutations.
    :raises AlignmentError: If the inputs are not sample aligned.
    :raises GenotypeFilterError: If the QTL fails a genotype filter.

    """
    validate_alignment(genotypes, expression, cell_counts, qtl_name)

    genotypes = genotypes.astype(float)
    called = genotypes.notna() & (genotypes >= 0)
    if not called.all():
        logger.debug(
            f"{qtl_name}: removing {int((~called).sum())} samples with missing "
            "genotypes"
        )
        genotypes = genotypes[called]
        expression = expression[called]
        cell_counts = cell_counts.loc[called.to_numpy()]

    if config.round_dosage:
        genotypes = round_dosages(genotypes)

    check_genotype_filters(
        genotypes,
        minimum_samples_per_genotype=config.minimum_samples_per_genotype,
        all_dosages_required=config.all_dosages_required,
        qtl_name=qtl_name,
    )

    expression = expression.astype(float)
    if config.force_normal_expression:
        expression = pd.Series(
            normalize_expression(expression, config.normalization_type),
            index=expression.index,
            name=expression.name,
        )

    if config.force_normal_cellcount:
        cell_counts = pd.DataFrame(
            {col: force_normal(cell_counts[col]) for col in cell_counts.columns},
            index=cell_counts.index,
            columns=cell_counts.columns,
        )

    return PreparedQtl(
        qtl_name=qtl_name,
        genotypes=genotypes,
        expression=expression,
        cell_counts=cell_counts.astype(float),
    )
