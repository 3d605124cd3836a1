import numpy as np
import pandas as pd
import pytest

from deconvqtl.config import DeconvolutionConfig
from deconvqtl.deconvolution_input_data import DeconvolutionInputData


@pytest.fixture
def three_samples():
    """Three samples, one cell type, expression exactly linear in the genotype."""
    samples = ["s1", "s2", "s3"]
    genotypes = pd.Series([0.0, 1.0, 2.0], index=samples)
    expression = pd.Series([1.0, 2.0, 3.0], index=samples)
    cell_counts = pd.DataFrame({"neut": [1.0, 1.0, 1.0]}, index=samples)
    return genotypes, expression, cell_counts


@pytest.fixture
def random_input_frames():
    """
    Generates 80 samples with two cell types and three SNPs.

    gene1 depends on snp1 through the neutrophil interaction only, gene2 does not
    depend on any SNP. snp3 has only 3 samples with genotype 2.

    """
    rng = np.random.default_rng(42)
    n_samples = 80
    samples = [f"sample{i+1}" for i in range(n_samples)]

    neut = rng.uniform(0.4, 0.8, n_samples)
    lymph = 1 - neut + rng.normal(0, 0.02, n_samples)
    cellcount_df = pd.DataFrame({"neut": neut, "lymph": lymph}, index=samples)

    snp1 = rng.choice([0.0, 1.0, 2.0], size=n_samples, p=[0.4, 0.4, 0.2])
    snp2 = rng.choice([0.0, 1.0, 2.0], size=n_samples, p=[0.3, 0.4, 0.3])
    snp3 = np.zeros(n_samples)
    snp3[:40] = 1.0
    snp3[40:43] = 2.0
    genotype_df = pd.DataFrame(
        [snp1, snp2, snp3], index=["snp1", "snp2", "snp3"], columns=samples
    )

    gene1 = 2 * neut + lymph + 1.5 * neut * snp1 + rng.normal(0, 0.1, n_samples)
    gene2 = 3 * neut + 0.5 * lymph + rng.normal(0, 0.1, n_samples)
    expression_df = pd.DataFrame(
        [gene1, gene2], index=["gene1", "gene2"], columns=samples
    )

    return expression_df, genotype_df, cellcount_df


@pytest.fixture
def input_data(random_input_frames):
    expression_df, genotype_df, cellcount_df = random_input_frames
    return DeconvolutionInputData(expression_df, genotype_df, cellcount_df)


@pytest.fixture
def default_config():
    return DeconvolutionConfig()


@pytest.fixture
def input_files(random_input_frames, tmp_path):
    """Writes the random input frames and a gene-SNP pair file to tmp_path."""
    expression_df, genotype_df, cellcount_df = random_input_frames

    expression_path = tmp_path / "expression.txt"
    genotype_path = tmp_path / "genotypes.txt"
    cellcount_path = tmp_path / "cellcounts.txt"
    pairs_path = tmp_path / "pairs.txt"

    expression_df.to_csv(expression_path, sep="\t", index_label="gene")
    genotype_df.to_csv(genotype_path, sep="\t", index_label="snp")
    cellcount_df.to_csv(cellcount_path, sep="\t", index_label="sample")
    pairs_path.write_text("gene1\tsnp1\ngene2\tsnp2\n# a comment\ngene1\tsnp3\n")

    return {
        "expression": str(expression_path),
        "genotype": str(genotype_path),
        "cellcount": str(cellcount_path),
        "pairs": str(pairs_path),
    }
