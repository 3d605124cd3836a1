import logging
import os
from collections import Counter
from dataclasses import dataclass, field

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy.stats import pearsonr, spearmanr

from deconvqtl.config import MULTIPLE_TESTING_METHODS
from deconvqtl.errors import AccessBeforeSetError, ConfigurationError

logger = logging.getLogger("main")

# p-value reported for QTLs removed by the genotype filters when they are kept in
# the output
FILTERED_PVALUE = 333.0


@dataclass
class QtlResult:
    """
    The outcome of one tested gene-SNP pair.

    `corrected_pvalues` and `significant` are filled in by
    `DeconvolutionResults.apply_multiple_testing_correction`.

    """

    pair_index: int
    gene: str
    snp: str
    sample_size: int
    pvalues: dict[str, float]
    coefficients: dict[str, float] = field(default_factory=dict)
    best_full_model: str = ""
    empirical_pvalues: dict[str, float] | None = None
    permutation_pvalues: pd.DataFrame | None = None
    whole_blood_correlation: float | None = None
    whole_blood_beta: float | None = None
    whole_blood_pvalue: float | None = None
    corrected_pvalues: dict[str, float] = field(default_factory=dict)
    significant: dict[str, bool] = field(default_factory=dict)

    @property
    def qtl_name(self) -> str:
        return f"{self.gene}_{self.snp}"

    @property
    def significant_in_any(self) -> bool:
        return any(self.significant.values())

    def interaction_effect(self, cell_type: str) -> float:
        """
        Coefficient of the `cell_type:GT` term, expressed in the raw genotype coding.

        A best full model fit on swapped genotypes estimates the effect of the
        other allele, so its interaction coefficient is negated.

        """
        beta = self.coefficients.get(f"{cell_type}:GT", np.nan)
        return -beta if self.best_full_model == "swapped" else beta


@dataclass
class SkippedQtl:
    pair_index: int
    gene: str
    snp: str
    reason: str
    message: str = ""


class DeconvolutionResults:
    """
    Collects the results of all gene-SNP pairs of a run, applies the multiple testing
    correction and produces the output table.

    Rows are always reported in the order of the input gene-SNP pairs, whatever the
    order in which the pairs finished.

    """

    def __init__(
        self,
        cell_types: list[str],
        alpha: float = 0.05,
        filter_samples: bool = False,
    ):
        """
        Initialize DeconvolutionResults.

        :param cell_types: Cell types in model term order.
        :param alpha: Threshold on the corrected p-value for significance.
        :param filter_samples: If False, pairs removed by the genotype filters are
            reported with p-value 333.0. If True they are left out of the output.

        """
        self.cell_types = list(cell_types)
        self.alpha = alpha
        self.filter_samples = filter_samples

        self._results: dict[int, QtlResult] = {}
        self._skipped: dict[int, SkippedQtl] = {}
        self.correction_method: str | None = None
        self.n_not_dispatched = 0

    def add_result(self, result: QtlResult) -> None:
        if result.pair_index in self._results or result.pair_index in self._skipped:
            raise ValueError(f"Pair index {result.pair_index} was already reported.")
        self._results[result.pair_index] = result
        # a new result invalidates any previous correction
        self.correction_method = None

    def add_skipped(
        self, pair_index: int, gene: str, snp: str, reason: str, message: str = ""
    ) -> None:
        if pair_index in self._results or pair_index in self._skipped:
            raise ValueError(f"Pair index {pair_index} was already reported.")
        self._skipped[pair_index] = SkippedQtl(pair_index, gene, snp, reason, message)

    @property
    def results(self) -> list[QtlResult]:
        """Reported results in input pair order."""
        return [self._results[i] for i in sorted(self._results)]

    @property
    def skipped(self) -> list[SkippedQtl]:
        return [self._skipped[i] for i in sorted(self._skipped)]

    @property
    def n_tests(self) -> int:
        """Number of gene-SNP pairs with a result, the Bonferroni multiplier."""
        return len(self._results)

    def apply_multiple_testing_correction(self, method: str = "bonferroni") -> None:
        """
        Correct the p-values of every cell type of every result.

        Bonferroni: corrected = min(1, raw * number of tested gene-SNP pairs). A cell
        type is significant when its corrected p-value is below `alpha`.

        :param method: Correction method name.
        :raises ConfigurationError: If the method is not supported.

        """
        canonical = MULTIPLE_TESTING_METHODS.get(method.lower())
        if canonical is None:
            raise ConfigurationError(
                f"Unknown multiple testing correction method {method!r}. "
                "Currently only bonferroni is supported."
            )

        n_tests = self.n_tests
        logger.info(
            f"Applying {canonical} correction over {n_tests} tested gene-SNP pairs"
        )
        for result in self._results.values():
            result.corrected_pvalues = {
                ct: min(1.0, p * n_tests) for ct, p in result.pvalues.items()
            }
            result.significant = {
                ct: p < self.alpha for ct, p in result.corrected_pvalues.items()
            }
        self.correction_method = canonical

    def skip_summary(self) -> dict[str, int]:
        """Number of skipped pairs per reason."""
        return dict(Counter(s.reason for s in self._skipped.values()))

    def summary(self) -> dict[str, object]:
        n_reported = len(self._results)
        n_skipped = len(self._skipped)
        return {
            "attempted": n_reported + n_skipped,
            "reported": n_reported,
            "skipped": n_skipped,
            "not_dispatched": self.n_not_dispatched,
            "skip_reasons": self.skip_summary(),
            "significant": sum(r.significant_in_any for r in self._results.values()),
        }

    def log_summary(self, log: logging.Logger | None = None) -> None:
        log = log or logger
        summary = self.summary()
        log.info(
            f"Tested {summary['attempted']} gene-SNP pairs: "
            f"{summary['reported']} reported, {summary['skipped']} skipped"
        )
        for reason, count in sorted(self.skip_summary().items()):
            log.info(f"Skipped because of {reason}: {count}")
        if self.correction_method is not None:
            log.info(
                f"Significant in at least one cell type: {summary['significant']}"
            )
        if self.n_not_dispatched:
            log.warning(
                f"{self.n_not_dispatched} pairs were not processed because the "
                "run was aborted"
            )

    def _result_row(self, result: QtlResult) -> dict[str, object]:
        row: dict[str, object] = {
            "gene": result.gene,
            "snp": result.snp,
            "sample_size": result.sample_size,
            "best_full_model": result.best_full_model,
        }
        for ct in self.cell_types:
            row[f"{ct}_pvalue"] = result.pvalues.get(ct, np.nan)
            row[f"{ct}_corrected_pvalue"] = result.corrected_pvalues.get(ct, np.nan)
            row[f"{ct}_significant"] = result.significant.get(ct, False)
            if result.empirical_pvalues is not None:
                row[f"{ct}_empirical_pvalue"] = result.empirical_pvalues.get(
                    ct, np.nan
                )
        for term, beta in result.coefficients.items():
            row[f"beta_{term}"] = beta
        if result.whole_blood_correlation is not None:
            row["whole_blood_r"] = result.whole_blood_correlation
            row["whole_blood_beta"] = result.whole_blood_beta
            row["whole_blood_pvalue"] = result.whole_blood_pvalue
        return row

    def _filtered_row(self, skipped: SkippedQtl) -> dict[str, object]:
        row: dict[str, object] = {"gene": skipped.gene, "snp": skipped.snp}
        for ct in self.cell_types:
            row[f"{ct}_pvalue"] = FILTERED_PVALUE
            row[f"{ct}_corrected_pvalue"] = FILTERED_PVALUE
            row[f"{ct}_significant"] = False
        return row

    def to_dataframe(self, significant_only: bool = False) -> pd.DataFrame:
        """
        Return the results as one row per gene-SNP pair, in input pair order.

        :param significant_only: Keep only pairs significant in at least one cell
            type.
        :return: DataFrame of the results.
        :raises AccessBeforeSetError: If the multiple testing correction has not
            been applied.

        """
        if self.correction_method is None:
            raise AccessBeforeSetError(
                "Multiple testing correction has not been applied to the results."
            )

        rows: list[tuple[int, dict[str, object]]] = []
        for index, result in self._results.items():
            if significant_only and not result.significant_in_any:
                continue
            rows.append((index, self._result_row(result)))

        if not self.filter_samples and not significant_only:
            rows.extend(
                (index, self._filtered_row(skipped))
                for index, skipped in self._skipped.items()
                if skipped.reason == "genotype_filter"
            )

        rows.sort(key=lambda item: item[0])
        return pd.DataFrame([row for _, row in rows])

    def validate(self, reference_df: pd.DataFrame) -> pd.DataFrame:
        """
        Compare the deconvoluted interaction effects to cell type specific effects.

        For each cell type present both in the results and in `reference_df`, the
        interaction effects (in raw genotype coding) of the pairs present in both
        are correlated with the reference effects.

        :param reference_df: Reference effects indexed by (gene, snp), one column
            per cell type. See `read_cell_type_reference`.
        :return: One row per shared cell type with the number of compared pairs and
            the Pearson and Spearman correlations. Correlations are NaN when fewer
            than 3 pairs can be compared or either side is constant.

        """
        rows = []
        for ct in self.cell_types:
            if ct not in reference_df.columns:
                logger.warning(f"Cell type {ct} is not in the validation data")
                continue

            observed, expected = [], []
            for result in self._results.values():
                key = (result.gene, result.snp)
                if key not in reference_df.index:
                    continue
                reference = reference_df.at[key, ct]
                effect = result.interaction_effect(ct)
                if np.isfinite(reference) and np.isfinite(effect):
                    observed.append(effect)
                    expected.append(reference)

            pearson_r = spearman_r = np.nan
            if (
                len(observed) >= 3
                and np.ptp(observed) > 0
                and np.ptp(expected) > 0
            ):
                pearson_r = float(pearsonr(observed, expected)[0])
                spearman_r = float(spearmanr(observed, expected)[0])

            rows.append(
                {
                    "cell_type": ct,
                    "n_pairs": len(observed),
                    "pearson_r": pearson_r,
                    "spearman_r": spearman_r,
                }
            )
            logger.info(
                f"Validation of {ct}: {len(observed)} pairs, "
                f"pearson r {pearson_r:.3f}, spearman r {spearman_r:.3f}"
            )

        return pd.DataFrame(
            rows, columns=["cell_type", "n_pairs", "pearson_r", "spearman_r"]
        )

    def serialize(
        self, filepath: str, significant_only: bool = False, sep: str = "\t"
    ) -> None:
        """
        Write the results table to a delimited text file.

        :param filepath: Output file. The directory must exist.
        :param significant_only: See `to_dataframe`.
        :param sep: Column delimiter.
        :raises FileNotFoundError: If the output directory does not exist.

        """
        output_dir = os.path.dirname(filepath)
        if output_dir and not os.path.isdir(output_dir):
            raise FileNotFoundError(
                f"The output directory '{output_dir}' does not exist. "
                "Please create it before saving."
            )
        df = self.to_dataframe(significant_only=significant_only)
        df.to_csv(filepath, sep=sep, index=False)
        logger.info(f"Wrote {len(df)} results to {filepath}")

    def visualize_pvalue_distribution(self) -> plt.Figure | None:
        """
        Plot the distribution of the raw p-values of each cell type.

        :return: Matplotlib figure, or None if there are no results.

        """
        records = [
            {"cell_type": ct, "pvalue": p}
            for result in self._results.values()
            for ct, p in result.pvalues.items()
        ]
        if not records:
            logger.warning("No results to visualize.")
            return None

        fig = plt.figure(figsize=(10, 6))
        sns.histplot(
            data=pd.DataFrame(records),
            x="pvalue",
            hue="cell_type",
            bins=20,
            binrange=(0, 1),
            element="step",
        )
        plt.xlabel("Nominal p-value")
        plt.title("Per cell type interaction p-values")

        return fig
