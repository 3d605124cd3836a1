import logging
from dataclasses import asdict, dataclass
from typing import Literal

from deconvqtl.errors import ConfigurationError

logger = logging.getLogger("main")

# spellings accepted for the multiple testing correction method, including the
# common misspelling "bonferonni"
MULTIPLE_TESTING_METHODS = {"bonferroni": "bonferroni", "bonferonni": "bonferroni"}

PERMUTATION_TYPES = ("genotype", "expression")

NORMALIZATION_TYPES = ("normalizeAddMean", "normalize")

TEST_RUN_PAIR_LIMIT = 100


@dataclass
class DeconvolutionConfig:
    """
    Options controlling a deconvolution run.

    :param minimum_samples_per_genotype: Skip a QTL when any of the genotype classes
        0, 1 or 2 has fewer samples than this.
    :param force_normal_expression: Rank based inverse normal transform of the
        expression of each QTL.
    :param force_normal_cellcount: Rank based inverse normal transform of each cell
        type's counts.
    :param normalization_type: How the expression is force normalized, either
        "normalizeAddMean" (keep the mean of the expression) or "normalize".
    :param round_dosage: Round dosages to the nearest integer before modeling.
    :param all_dosages_required: Skip a QTL unless every genotype class has at least
        one sample.
    :param permutation_count: Number of permutations per QTL. 0 disables
        permutation testing.
    :param permutation_type: Either "genotype" or "expression".
    :param multiple_testing_method: Correction method, currently only Bonferroni.
    :param output_significant_only: Only report QTLs significant in at least one
        cell type.
    :param use_relative_cellcounts: Divide each cell type's counts by its mean.
    :param whole_blood_qtl: Also fit genotype against expression ignoring cell
        types, and report its coefficient, p-value and Pearson correlation.
    :param test_run: Only process the first 100 gene-SNP pairs.
    :param filter_samples: Remove QTLs failing the genotype filters from the
        output. By default they are reported with a p-value of 333.0.
    :param skip_missing_genotypes: Skip pairs whose SNP is not in the genotype
        data instead of failing the run.
    :param alpha: Significance threshold applied to corrected p-values.
    :param random_state: Seed for the permutations. None gives a different
        permutation on each run.
    :param n_jobs: Number of worker threads processing gene-SNP pairs.
    :param validate_output: Optional file of cell type specific effects the
        deconvoluted interaction effects are compared to.

    """

    minimum_samples_per_genotype: int = 0
    force_normal_expression: bool = False
    force_normal_cellcount: bool = False
    normalization_type: Literal["normalizeAddMean", "normalize"] = "normalizeAddMean"
    round_dosage: bool = False
    all_dosages_required: bool = False
    permutation_count: int = 0
    permutation_type: Literal["genotype", "expression"] = "genotype"
    multiple_testing_method: str = "bonferroni"
    output_significant_only: bool = False
    use_relative_cellcounts: bool = False
    whole_blood_qtl: bool = False
    test_run: bool = False
    filter_samples: bool = False
    skip_missing_genotypes: bool = False
    alpha: float = 0.05
    random_state: int | None = None
    n_jobs: int = 1
    validate_output: str | None = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """
        Check every option.

        :raises ConfigurationError: On the first invalid option.

        """
        for name in ("minimum_samples_per_genotype", "permutation_count"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ConfigurationError(
                    f"`{name}` must be a non-negative integer, got {value!r}."
                )
        if self.normalization_type not in NORMALIZATION_TYPES:
            raise ConfigurationError(
                "normalization_type should be normalizeAddMean or normalize, not "
                f"{self.normalization_type!r}"
            )
        if self.permutation_type not in PERMUTATION_TYPES:
            raise ConfigurationError(
                "permutation_type should be genotype or expression, not "
                f"{self.permutation_type!r}"
            )
        if self.multiple_testing_method.lower() not in MULTIPLE_TESTING_METHODS:
            raise ConfigurationError(
                "Unknown multiple testing correction method "
                f"{self.multiple_testing_method!r}. Currently only bonferroni is "
                "supported."
            )
        if not 0 < self.alpha < 1:
            raise ConfigurationError(f"alpha must be in (0, 1), got {self.alpha}.")
        if not isinstance(self.n_jobs, int) or self.n_jobs == 0:
            raise ConfigurationError(
                f"n_jobs must be a non-zero integer, got {self.n_jobs!r}."
            )

    @property
    def correction_method(self) -> str:
        return MULTIPLE_TESTING_METHODS[self.multiple_testing_method.lower()]

    @property
    def pair_limit(self) -> int | None:
        return TEST_RUN_PAIR_LIMIT if self.test_run else None

    def log_settings(self, log: logging.Logger | None = None) -> None:
        log = log or logger
        log.info("======= DECONVOLUTION parameter settings =======")
        for name, value in asdict(self).items():
            if name == "permutation_type" and self.permutation_count == 0:
                continue
            if name == "normalization_type" and not self.force_normal_expression:
                continue
            log.info(f"{name}: {value}")
        log.info("=================================================")
