import logging
import os

import pandas as pd

from deconvqtl.errors import ConfigurationError

logger = logging.getLogger("main")

# name of the genotype column in the model frame, so it may not be a cell type
GENOTYPE_COLUMN = "genotype"


def relative_cell_counts(cell_counts: pd.DataFrame) -> pd.DataFrame:
    """Divide each cell type's counts by the mean count of that cell type."""
    return cell_counts / cell_counts.mean(axis=0)


def check_unique_labels(df: pd.DataFrame, label: str) -> None:
    """
    Ensure a features x samples DataFrame has unique feature and sample names.

    :raises ConfigurationError: If a feature or sample name occurs more than once.

    """
    for axis, names in (("feature", df.index), ("sample", df.columns)):
        if names.has_duplicates:
            duplicated = sorted(set(map(str, names[names.duplicated()])))
            raise ConfigurationError(
                f"Duplicate {axis} names in the {label} data, eg {duplicated[:5]}"
            )


class DeconvolutionInputData:
    """
    Sample aligned genotype, expression and cell count data for a deconvolution run.

    This class handles:
        - Validation of the expression (genes x samples), genotype (SNPs x samples)
            and cell count (samples x cell types) DataFrames.
        - Restricting all three to the samples they have in common, in one shared
            order.
        - Optionally replacing the cell counts by their ratio to the cell type mean.
        - Providing the per-pair genotype and expression vectors.

    """

    def __init__(
        self,
        expression_df: pd.DataFrame,
        genotype_df: pd.DataFrame,
        cellcount_df: pd.DataFrame,
        use_relative_cellcounts: bool = False,
    ):
        """
        Initialize DeconvolutionInputData. The three DataFrames are subset down to the
        samples they share, ordered as in the cell count DataFrame.

        :param expression_df: Genes x samples. The index holds the gene names.
        :param genotype_df: SNPs x samples. The index holds the SNP names. Values are
            dosages in [0, 2]; NaN or negative values mark missing genotypes.
        :param cellcount_df: Samples x cell types. The index holds the sample names.
        :param use_relative_cellcounts: Divide each cell type's counts by the mean
            count of that cell type.

        """
        if not isinstance(expression_df, pd.DataFrame):
            raise ValueError("expression_df must be a DataFrame.")
        if not isinstance(genotype_df, pd.DataFrame):
            raise ValueError("genotype_df must be a DataFrame.")
        if not isinstance(cellcount_df, pd.DataFrame):
            raise ValueError("cellcount_df must be a DataFrame.")

        for label, df in (("expression", expression_df), ("genotype", genotype_df)):
            check_unique_labels(df, label)

        self.use_relative_cellcounts = use_relative_cellcounts

        self._expression_df = expression_df
        self._genotype_df = genotype_df
        self.cell_counts = cellcount_df

        self._set_common_samples_and_order()

    @property
    def cell_counts(self) -> pd.DataFrame:
        """
        Get the cell count DataFrame, samples x cell types.

        If `use_relative_cellcounts` is True, each column is divided by its mean.

        """
        if self.use_relative_cellcounts:
            return relative_cell_counts(self._cellcount_df)
        return self._cellcount_df

    @cell_counts.setter
    def cell_counts(self, value: pd.DataFrame) -> None:
        """
        Set the cell count DataFrame and enforce its schema.

        :raises ValueError: If the cell types are not unique or not numeric.
        :raises ConfigurationError: If a sample name occurs more than once or a
            cell type uses the reserved name `genotype`.

        """
        if value.index.has_duplicates:
            raise ConfigurationError(
                "Duplicate sample names in the cell count data: "
                f"{sorted(set(value.index[value.index.duplicated()]))[:5]}"
            )
        if value.columns.has_duplicates:
            raise ValueError(f"Cell type names must be unique: {list(value.columns)}")
        if GENOTYPE_COLUMN in value.columns:
            raise ConfigurationError(
                f"'{GENOTYPE_COLUMN}' is reserved and cannot be used as a cell type."
            )
        non_numeric = value.columns.difference(
            value.select_dtypes(include="number").columns
        )
        if len(non_numeric) > 0:
            raise ValueError(f"Cell count columns must be numeric: {list(non_numeric)}")

        self._cellcount_df = value

    @property
    def cell_types(self) -> list[str]:
        return [str(col) for col in self._cellcount_df.columns]

    @property
    def samples(self) -> list[str]:
        return list(self._cellcount_df.index)

    def _set_common_samples_and_order(self) -> None:
        """Subset the three DataFrames to their shared samples, in the order of the
        cell count DataFrame."""
        expression_samples = set(self._expression_df.columns)
        genotype_samples = set(self._genotype_df.columns)
        common = [
            sample
            for sample in self._cellcount_df.index
            if sample in expression_samples and sample in genotype_samples
        ]

        if not common:
            raise ConfigurationError(
                "No common samples found between the expression, genotype "
                "and cell count data."
            )

        dropped = {
            "expression": len(self._expression_df.columns) - len(common),
            "genotype": len(self._genotype_df.columns) - len(common),
            "cell counts": len(self._cellcount_df.index) - len(common),
        }
        logger.info(f"Samples shared by all input data: {len(common)}.")
        if any(dropped.values()):
            logger.warning(f"Samples not shared by all input data removed: {dropped}")

        self._expression_df = self._expression_df.loc[:, common]
        self._genotype_df = self._genotype_df.loc[:, common]
        self._cellcount_df = self._cellcount_df.loc[common]

    def has_genotypes(self, snp: str) -> bool:
        return snp in self._genotype_df.index

    def has_expression(self, gene: str) -> bool:
        return gene in self._expression_df.index

    def genotypes(self, snp: str) -> pd.Series:
        """
        Dosages of `snp`, indexed by sample.

        :raises KeyError: If the SNP is not in the genotype data.

        """
        if snp not in self._genotype_df.index:
            raise KeyError(f"SNP '{snp}' not found in the genotype data.")
        return self._genotype_df.loc[snp].astype(float).rename(snp)

    def expression(self, gene: str) -> pd.Series:
        """
        Expression of `gene`, indexed by sample.

        :raises KeyError: If the gene is not in the expression data.

        """
        if gene not in self._expression_df.index:
            raise KeyError(f"Gene '{gene}' not found in the expression data.")
        return self._expression_df.loc[gene].astype(float).rename(gene)

    def validate_pairs(
        self,
        pairs: list[tuple[str, str]],
        skip_missing_genotypes: bool = False,
    ) -> set[str]:
        """
        Check that every gene and SNP of `pairs` is present.

        :param pairs: Ordered (gene, SNP) pairs.
        :param skip_missing_genotypes: Only warn about missing SNPs instead of
            failing. Their pairs are skipped when the run reaches them.
        :return: The SNPs of `pairs` that are not in the genotype data.
        :raises ConfigurationError: If a gene is missing, or a SNP is missing and
            `skip_missing_genotypes` is False.

        """
        missing_genes = sorted({g for g, _ in pairs if not self.has_expression(g)})
        if missing_genes:
            raise ConfigurationError(
                f"{len(missing_genes)} gene(s) in the gene-SNP pairs are not in the "
                f"expression data, eg {missing_genes[:5]}"
            )

        missing_snps = sorted({s for _, s in pairs if not self.has_genotypes(s)})
        if missing_snps and not skip_missing_genotypes:
            raise ConfigurationError(
                f"{len(missing_snps)} SNP(s) in the gene-SNP pairs are not in the "
                f"genotype data, eg {missing_snps[:5]}. Use --skip_genotypes to "
                "skip them."
            )
        if missing_snps:
            logger.warning(
                f"Skipping pairs of {len(missing_snps)} SNP(s) not in the genotype data."
            )

        return set(missing_snps)

    @classmethod
    def from_files(
        cls,
        expression_path: str,
        genotype_path: str,
        cellcount_path: str,
        use_relative_cellcounts: bool = False,
        sep: str = "\t",
    ) -> "DeconvolutionInputData":
        """
        Load the input data from delimited text files. In each file the first column
        holds the row names and the header holds the column names.

        :param expression_path: Genes x samples expression file.
        :param genotype_path: SNPs x samples dosage file.
        :param cellcount_path: Samples x cell types cell count file.
        :param use_relative_cellcounts: See __init__.
        :param sep: Column delimiter.
        :return: An instance of DeconvolutionInputData.
        :raises ConfigurationError: If a file is missing.

        """
        for label, path in (
            ("Expression", expression_path),
            ("Genotype", genotype_path),
            ("Cellcount", cellcount_path),
        ):
            if not os.path.isfile(path):
                raise ConfigurationError(f"{label} file '{path}' does not exist.")

        expression_df = pd.read_csv(expression_path, sep=sep, index_col=0)
        genotype_df = pd.read_csv(genotype_path, sep=sep, index_col=0)
        cellcount_df = pd.read_csv(cellcount_path, sep=sep, index_col=0)

        logger.info(
            f"Read expression {expression_df.shape}, genotypes {genotype_df.shape}, "
            f"cell counts {cellcount_df.shape}"
        )

        return cls(
            expression_df,
            genotype_df,
            cellcount_df,
            use_relative_cellcounts=use_relative_cellcounts,
        )


def read_gene_snp_pairs(path: str) -> list[tuple[str, str]]:
    """
    Read the gene-SNP pairs to test.

    The file is tab delimited without a header: gene name in the first column and
    SNP name in the second. Lines starting with `#` are ignored.

    :param path: Path to the pair file.
    :return: Ordered list of (gene, SNP) tuples.
    :raises ConfigurationError: If the file is missing or has fewer than two
        columns.

    """
    if not os.path.isfile(path):
        raise ConfigurationError(f"Gene-SNP pair file '{path}' does not exist.")

    try:
        pairs_df = pd.read_csv(path, sep="\t", header=None, comment="#", dtype=str)
    except pd.errors.EmptyDataError:
        logger.warning(f"Gene-SNP pair file '{path}' is empty.")
        return []

    if pairs_df.shape[1] < 2:
        raise ConfigurationError(
            f"Gene-SNP pair file '{path}' must have a gene and a SNP column."
        )

    return list(zip(pairs_df.iloc[:, 0], pairs_df.iloc[:, 1]))


def read_cell_type_reference(path: str) -> pd.DataFrame:
    """
    Read cell type specific eQTL effects to validate the deconvolution against.

    The file is tab delimited with a header. The first two columns hold the gene
    and SNP names, every further column holds the effects measured in one cell
    type, named as in the cell count file.

    :param path: Path to the reference file.
    :return: DataFrame indexed by (gene, snp), one column per cell type.
    :raises ConfigurationError: If the file is missing or has no cell type column.

    """
    if not os.path.isfile(path):
        raise ConfigurationError(f"Validation file '{path}' does not exist.")

    reference_df = pd.read_csv(path, sep="\t", comment="#")
    if reference_df.shape[1] < 3:
        raise ConfigurationError(
            f"Validation file '{path}' must have gene, SNP and at least one cell "
            "type column."
        )

    gene_column, snp_column = reference_df.columns[:2]
    reference_df[gene_column] = reference_df[gene_column].astype(str)
    reference_df[snp_column] = reference_df[snp_column].astype(str)
    reference_df = reference_df.set_index([gene_column, snp_column])
    reference_df.index.names = ["gene", "snp"]
    if reference_df.index.has_duplicates:
        logger.warning(
            f"Validation file '{path}' lists some gene-SNP pairs more than once, "
            "only the first occurrence is used"
        )
        reference_df = reference_df[~reference_df.index.duplicated()]

    logger.info(
        f"Read {len(reference_df)} reference pairs for cell types "
        f"{list(reference_df.columns)} from {path}"
    )
    return reference_df
