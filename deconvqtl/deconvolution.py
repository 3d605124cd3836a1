import logging
import math
import threading
from dataclasses import dataclass

import numpy as np
import pandas as pd
from joblib import Parallel, delayed, effective_n_jobs
from patsy import PatsyError, dmatrix
from scipy.stats import f as f_distribution
from scipy.stats import pearsonr

from deconvqtl.config import DeconvolutionConfig
from deconvqtl.deconvolution_input_data import (
    GENOTYPE_COLUMN,
    DeconvolutionInputData,
    relative_cell_counts,
)
from deconvqtl.deconvolution_results import DeconvolutionResults, QtlResult
from deconvqtl.errors import (
    DegenerateModelError,
    QtlSkipError,
    RunAbortedError,
)
from deconvqtl.interaction_model_collection import (
    FullModel,
    GenotypeEncoding,
    InteractionModelCollection,
    QtlTestState,
    ReducedModel,
    WholeBloodModel,
)
from deconvqtl.qtl_filters import PreparedQtl, prepare_qtl
from deconvqtl.regression_model import RegressionModel

PROGRESS_INTERVAL = 10000


def interaction_term(cell_type: str) -> str:
    """Name of the design matrix column of a cell type's genotype interaction."""
    return f"{cell_type}:GT"


def build_design_matrix(cell_counts: pd.DataFrame, genotypes) -> pd.DataFrame:
    """
    Create the full model design matrix of one genotype encoding.

    The matrix holds, in cell type order, one main effect column per cell type
    followed by one `cell_type:GT` column per cell type (cell count fraction times
    dosage). There is no intercept column.

    :param cell_counts: Samples x cell types.
    :param genotypes: Dosages, one per sample.
    :return: The design matrix, indexed like `cell_counts`.
    :raises DegenerateModelError: If patsy cannot build the matrix, eg because of
        missing values.

    """
    cell_types = [str(col) for col in cell_counts.columns]

    model_frame = cell_counts.copy()
    model_frame.columns = cell_types
    model_frame[GENOTYPE_COLUMN] = np.asarray(genotypes, dtype=float)

    # Q() quotes cell type names that are not valid python identifiers
    main_effects = [f"Q({ct!r})" for ct in cell_types]
    interactions = [f"Q({ct!r}):{GENOTYPE_COLUMN}" for ct in cell_types]
    formula = " + ".join(main_effects + interactions) + " - 1"

    try:
        design_matrix = dmatrix(
            formula,
            data=model_frame,
            return_type="dataframe",
            NA_action="raise",
        )
    except PatsyError as exc:
        raise DegenerateModelError(f"Could not build the design matrix: {exc}")

    # patsy orders terms by degree, which is the order of the formula here
    design_matrix.columns = cell_types + [interaction_term(ct) for ct in cell_types]
    return design_matrix


def anova_pvalue(
    full_rss: float, full_df: int, reduced_rss: float, reduced_df: int
) -> float:
    """
    P-value of the nested model F-test of a reduced model against a full model.

    F = ((RSS_reduced - RSS_full) / (df_reduced - df_full)) / (RSS_full / df_full),
    compared to an F distribution with (df_reduced - df_full, df_full) degrees of
    freedom.

    :param full_rss: Residual sum of squares of the full model.
    :param full_df: Residual degrees of freedom of the full model.
    :param reduced_rss: Residual sum of squares of the reduced model.
    :param reduced_df: Residual degrees of freedom of the reduced model.
    :return: The p-value, in [0, 1].
    :raises ValueError: If the reduced model is not nested in the full model.
    :raises DegenerateModelError: If the full model has no residual degrees of
        freedom.

    """
    df_diff = reduced_df - full_df
    if df_diff <= 0:
        raise ValueError(
            "The reduced model must have more residual degrees of freedom than the "
            f"full model: {reduced_df} <= {full_df}"
        )
    if full_df <= 0:
        raise DegenerateModelError("The full model has no residual degrees of freedom.")

    if full_rss <= 0:
        # perfect fit of the full model
        return 0.0 if reduced_rss > 0 else 1.0

    # the reduced RSS can dip below the full RSS by rounding error only
    extra_ss = max(reduced_rss - full_rss, 0.0)
    f_statistic = (extra_ss / df_diff) / (full_rss / full_df)
    pvalue = float(f_distribution.sf(f_statistic, df_diff, full_df))

    return min(max(pvalue, 0.0), 1.0)


def empirical_pvalues(
    observed: dict[str, float], permutation_pvalues: pd.DataFrame
) -> dict[str, float]:
    """
    Empirical p-value of each cell type from its permutation null distribution.

    p = (1 + number of permutations with p <= observed) / (1 + number of
    permutations). Permutations whose models were degenerate (NaN) are not counted.

    :param observed: Observed p-value per cell type.
    :param permutation_pvalues: permutations x cell types.
    :return: Empirical p-value per cell type.

    """
    output = {}
    for ct, observed_p in observed.items():
        null = permutation_pvalues[ct].dropna().to_numpy()
        output[ct] = float((1 + np.sum(null <= observed_p)) / (1 + null.size))
    return output


@dataclass
class PairOutcome:
    pair_index: int
    gene: str
    snp: str
    result: QtlResult | None = None
    skip_reason: str | None = None
    message: str = ""


class DeconvolutionEngine:
    """
    Runs the cell type interaction models for a list of gene-SNP pairs.

    For each pair the engine:
        1. Aligns, filters and transforms the genotype, expression and cell count
            vectors.
        2. Fits the full model on the raw and on the swapped genotypes and keeps the
            one with the lowest residual sum of squares as the best full model.
        3. Fits one reduced model per cell type, dropping that cell type's
            interaction term from the best full model.
        4. Compares each reduced model to the best full model with an ANOVA F-test.
        5. Optionally repeats 2-4 on permuted genotypes or expression to obtain
            empirical p-values, fits the whole blood model and correlates
            genotype and expression for the whole blood QTL.

    Pairs are independent. They are processed in shards on a thread pool and the
    results are collected by the calling thread only.

    """

    def __init__(
        self,
        input_data: DeconvolutionInputData,
        config: DeconvolutionConfig | None = None,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize the DeconvolutionEngine.

        :param input_data: Provider of the sample aligned genotypes, expression and
            cell counts.
        :param config: Run options. Defaults to `DeconvolutionConfig()`.
        :param logger: Logger for progress and skipped pairs. Defaults to the
            "main" logger.

        """
        self.input_data = input_data
        self.config = config if config is not None else DeconvolutionConfig()
        self.logger = logger if logger is not None else logging.getLogger("main")

        self._cell_counts = input_data.cell_counts
        relative_requested = self.config.use_relative_cellcounts
        if relative_requested and not input_data.use_relative_cellcounts:
            self._cell_counts = relative_cell_counts(self._cell_counts)
        self._missing_snps: set[str] = set()
        self._abort_event = threading.Event()

    @property
    def cell_types(self) -> list[str]:
        return [str(col) for col in self._cell_counts.columns]

    def abort(self) -> None:
        """Stop dispatching new pairs. Pairs that are being fit are finished."""
        self._abort_event.set()

    @property
    def aborted(self) -> bool:
        return self._abort_event.is_set()

    def fit_models(
        self, collection: InteractionModelCollection, whole_blood: bool = False
    ) -> None:
        """
        Fit the full models, choose the best full model, then fit the reduced models
        (and the whole blood model) of a collection.

        :raises DegenerateModelError: If any model cannot be fit.

        """
        expression = collection.expression_values

        for encoding in GenotypeEncoding:
            key = FullModel(encoding)
            design_matrix = build_design_matrix(
                collection.cell_counts, collection.genotypes_for(encoding)
            )
            model = RegressionModel(design_matrix, expression, key=key).fit()
            collection.add_interaction_model(model, key, is_full_model=True)

        collection.set_best_full_model()
        best_full_model = collection.get_best_full_model()

        for ct in collection.cell_types:
            key = ReducedModel(ct)
            reduced_design = best_full_model.design_matrix.drop(
                columns=interaction_term(ct)
            )
            model = RegressionModel(reduced_design, expression, key=key).fit()
            collection.add_interaction_model(model, key)

        if whole_blood:
            whole_blood_design = pd.DataFrame(
                {"Intercept": 1.0, GENOTYPE_COLUMN: collection.genotypes},
                index=collection.cell_counts.index,
            )
            model = RegressionModel(
                whole_blood_design, expression, key=WholeBloodModel()
            ).fit()
            collection.add_interaction_model(model, WholeBloodModel())

        collection.state = QtlTestState.MODELS_FIT

    def compute_significance(self, collection: InteractionModelCollection) -> None:
        """Store the ANOVA p-value of every reduced model against the best full
        model."""
        full_model = collection.get_best_full_model()
        for ct in collection.cell_types:
            key = ReducedModel(ct)
            reduced_model = collection.get_interaction_model(key)
            pvalue = anova_pvalue(
                full_model.rss,
                full_model.degrees_of_freedom,
                reduced_model.rss,
                reduced_model.degrees_of_freedom,
            )
            collection.set_pvalue(pvalue, key)
        collection.state = QtlTestState.SIGNIFICANCE_COMPUTED

    def whole_blood_effect(
        self, collection: InteractionModelCollection
    ) -> tuple[float, float]:
        """
        Genotype effect of the whole blood model, ignoring cell types.

        The whole blood model (intercept + genotype) is compared to an intercept only
        model with the same F-test as the cell type interactions.

        :return: The genotype coefficient and its p-value.
        :raises AccessBeforeSetError: If the whole blood model was not fit.

        """
        model = collection.get_interaction_model(WholeBloodModel())
        expression = collection.expression_values
        intercept_only_rss = float(np.sum((expression - expression.mean()) ** 2))
        pvalue = anova_pvalue(
            model.rss,
            model.degrees_of_freedom,
            intercept_only_rss,
            model.n_samples - 1,
        )
        return float(model.coefficients[GENOTYPE_COLUMN]), pvalue

    def _rng(self, pair_index: int) -> np.random.Generator:
        if self.config.random_state is None:
            return np.random.default_rng()
        return np.random.default_rng([self.config.random_state, pair_index])

    def permutation_pvalues(
        self, prepared: PreparedQtl, rng: np.random.Generator
    ) -> pd.DataFrame:
        """
        Build the null distribution of the per cell type p-values of one pair.

        Every permutation shuffles the genotypes or the expression (depending on
        `config.permutation_type`) of `prepared`, the same vectors the observed
        test used. `prepared` itself is not modified.

        :return: DataFrame of permutations x cell types. A permutation whose models
            are degenerate has NaN p-values.

        """
        genotypes = prepared.genotypes.to_numpy()
        expression = prepared.expression.to_numpy()

        rows = []
        for i in range(self.config.permutation_count):
            if self.config.permutation_type == "genotype":
                permuted_genotypes, permuted_expression = (
                    rng.permutation(genotypes),
                    expression,
                )
            else:
                permuted_genotypes, permuted_expression = (
                    genotypes,
                    rng.permutation(expression),
                )

            collection = InteractionModelCollection.from_vectors(
                f"{prepared.qtl_name}_permutation{i}",
                permuted_genotypes,
                permuted_expression,
                prepared.cell_counts,
            )
            try:
                self.fit_models(collection)
                self.compute_significance(collection)
            except DegenerateModelError as exc:
                self.logger.debug(f"{collection.qtl_name}: {exc}")
                rows.append({ct: np.nan for ct in collection.cell_types})
                continue
            rows.append(collection.pvalues)

        cell_types = [str(col) for col in prepared.cell_counts.columns]
        return pd.DataFrame(rows, columns=cell_types)

    def process_pair(self, gene: str, snp: str, pair_index: int = 0) -> QtlResult:
        """
        Run the full test of one gene-SNP pair.

        :param gene: Gene whose expression is the response.
        :param snp: SNP whose dosages are the genotypes.
        :param pair_index: Position of the pair in the input. Seeds the permutations
            and orders the output.
        :return: The result of the pair.
        :raises QtlSkipError: If the pair cannot be tested. The subclass tells why.

        """
        qtl_name = f"{gene}_{snp}"

        if snp in self._missing_snps or not self.input_data.has_genotypes(snp):
            raise QtlSkipError(
                f"{qtl_name}: SNP not in the genotype data", reason="missing_genotype"
            )

        prepared = prepare_qtl(
            self.input_data.genotypes(snp),
            self.input_data.expression(gene),
            self._cell_counts,
            self.config,
            qtl_name=qtl_name,
        )

        collection = InteractionModelCollection.from_vectors(
            qtl_name, prepared.genotypes, prepared.expression, prepared.cell_counts
        )
        try:
            self.fit_models(collection, whole_blood=self.config.whole_blood_qtl)
            self.compute_significance(collection)
        except QtlSkipError as exc:
            collection.skip(exc.reason)
            collection.empty_expression_values()
            collection.empty_genotypes()
            raise

        result = QtlResult(
            pair_index=pair_index,
            gene=gene,
            snp=snp,
            sample_size=collection.sample_size,
            pvalues=collection.pvalues,
            coefficients=collection.get_best_full_model().coefficients.to_dict(),
            best_full_model=collection.best_full_model_key.encoding.value,
        )

        if self.config.permutation_count > 0:
            null = self.permutation_pvalues(prepared, self._rng(pair_index))
            result.permutation_pvalues = null
            result.empirical_pvalues = empirical_pvalues(result.pvalues, null)
            collection.state = QtlTestState.PERMUTATION_COMPUTED

        if self.config.whole_blood_qtl:
            correlation = pearsonr(collection.genotypes, collection.expression_values)
            beta, pvalue = self.whole_blood_effect(collection)
            result.whole_blood_correlation = float(correlation[0])
            result.whole_blood_beta = beta
            result.whole_blood_pvalue = pvalue

        collection.empty_expression_values()
        collection.empty_genotypes()
        collection.state = QtlTestState.REPORTED

        return result

    def _process_shard(self, shard: list[tuple[int, str, str]]) -> list[PairOutcome]:
        outcomes = []
        for pair_index, gene, snp in shard:
            if self.aborted:
                break
            try:
                result = self.process_pair(gene, snp, pair_index)
            except QtlSkipError as exc:
                if exc.reason == "genotype_filter":
                    self.logger.debug(f"Skipping {gene} {snp}: {exc}")
                else:
                    self.logger.warning(f"Skipping {gene} {snp}: {exc}")
                outcomes.append(
                    PairOutcome(pair_index, gene, snp, None, exc.reason, str(exc))
                )
                continue
            except MemoryError:
                self.logger.error(
                    f"Out of memory while testing {gene} {snp}; aborting the run"
                )
                self.abort()
                break
            outcomes.append(PairOutcome(pair_index, gene, snp, result))
        return outcomes

    def _shards(self, pairs: list[tuple[str, str]]) -> list[list[tuple[int, str, str]]]:
        indexed = [(i, gene, snp) for i, (gene, snp) in enumerate(pairs)]
        if not indexed:
            return []
        n_workers = effective_n_jobs(self.config.n_jobs)
        n_shards = min(len(indexed), max(1, n_workers * 4))
        shard_size = math.ceil(len(indexed) / n_shards)
        return [
            indexed[start : start + shard_size]
            for start in range(0, len(indexed), shard_size)
        ]

    def run(self, pairs: list[tuple[str, str]]) -> DeconvolutionResults:
        """
        Test every gene-SNP pair and return the corrected results.

        :param pairs: Ordered (gene, SNP) pairs.
        :return: The collected results, with the multiple testing correction
            applied.
        :raises ConfigurationError: If a gene or SNP of `pairs` is missing from the
            input data (see `DeconvolutionInputData.validate_pairs`).
        :raises RunAbortedError: If the run was aborted before all pairs were
            processed.

        """
        pairs = list(pairs)
        if self.config.pair_limit is not None and len(pairs) > self.config.pair_limit:
            self.logger.info(
                f"Test run: only testing the first {self.config.pair_limit} of "
                f"{len(pairs)} gene-SNP pairs"
            )
            pairs = pairs[: self.config.pair_limit]

        self._missing_snps = self.input_data.validate_pairs(
            pairs, skip_missing_genotypes=self.config.skip_missing_genotypes
        )

        self.logger.info(
            f"Testing {len(pairs)} gene-SNP pairs for {len(self.cell_types)} cell "
            f"types: {self.cell_types}"
        )
        if self.config.permutation_count > 0:
            self.logger.info(
                f"Running {self.config.permutation_count} permutations of the "
                f"{self.config.permutation_type} per pair"
            )

        results = DeconvolutionResults(
            self.cell_types,
            alpha=self.config.alpha,
            filter_samples=self.config.filter_samples,
        )

        n_done = 0
        shard_outcomes = Parallel(
            n_jobs=self.config.n_jobs, prefer="threads", return_as="generator"
        )(delayed(self._process_shard)(shard) for shard in self._shards(pairs))
        for outcomes in shard_outcomes:
            for outcome in outcomes:
                if outcome.result is not None:
                    results.add_result(outcome.result)
                else:
                    results.add_skipped(
                        outcome.pair_index,
                        outcome.gene,
                        outcome.snp,
                        outcome.skip_reason or "skipped",
                        outcome.message,
                    )
                n_done += 1
                if n_done % PROGRESS_INTERVAL == 0:
                    self.logger.info(f"Processed {n_done}/{len(pairs)} gene-SNP pairs")

        results.n_not_dispatched = len(pairs) - n_done
        results.apply_multiple_testing_correction(self.config.correction_method)
        results.log_summary(self.logger)

        if self.aborted:
            raise RunAbortedError(
                f"Run aborted after {n_done} of {len(pairs)} gene-SNP pairs"
            )

        return results
