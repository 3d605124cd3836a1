import pandas as pd
import pytest

from deconvqtl.deconvolution_input_data import (
    DeconvolutionInputData,
    read_cell_type_reference,
    read_gene_snp_pairs,
)
from deconvqtl.errors import ConfigurationError


def test_init_valid_data(input_data):
    assert input_data.cell_types == ["neut", "lymph"]
    assert len(input_data.samples) == 80
    assert list(input_data.genotypes("snp1").index) == input_data.samples
    assert list(input_data.expression("gene1").index) == input_data.samples


def test_samples_are_intersected_and_ordered(random_input_frames):
    expression_df, genotype_df, cellcount_df = random_input_frames
    # reverse the expression samples and drop one genotype sample
    expression_df = expression_df.iloc[:, ::-1]
    genotype_df = genotype_df.drop(columns="sample3")

    data = DeconvolutionInputData(expression_df, genotype_df, cellcount_df)

    assert "sample3" not in data.samples
    assert len(data.samples) == 79
    assert data.expression("gene1").index.equals(data.cell_counts.index)
    assert data.genotypes("snp2").index.equals(data.cell_counts.index)


def test_no_common_samples_raises(random_input_frames):
    expression_df, genotype_df, cellcount_df = random_input_frames
    cellcount_df = cellcount_df.rename(index=lambda s: f"other_{s}")

    with pytest.raises(ConfigurationError, match="No common samples"):
        DeconvolutionInputData(expression_df, genotype_df, cellcount_df)


def test_reserved_cell_type_name(random_input_frames):
    expression_df, genotype_df, cellcount_df = random_input_frames
    cellcount_df = cellcount_df.rename(columns={"lymph": "genotype"})

    with pytest.raises(ConfigurationError, match="reserved"):
        DeconvolutionInputData(expression_df, genotype_df, cellcount_df)


def test_non_numeric_cell_counts(random_input_frames):
    expression_df, genotype_df, cellcount_df = random_input_frames
    cellcount_df = cellcount_df.assign(label="x")

    with pytest.raises(ValueError, match="numeric"):
        DeconvolutionInputData(expression_df, genotype_df, cellcount_df)


def test_invalid_input_types(random_input_frames):
    expression_df, genotype_df, cellcount_df = random_input_frames

    with pytest.raises(ValueError, match="expression_df must be a DataFrame"):
        DeconvolutionInputData(expression_df.values, genotype_df, cellcount_df)


def test_duplicate_snps_raise(random_input_frames):
    expression_df, genotype_df, cellcount_df = random_input_frames
    genotype_df = pd.concat([genotype_df, genotype_df])

    with pytest.raises(ConfigurationError, match="feature names in the genotype"):
        DeconvolutionInputData(expression_df, genotype_df, cellcount_df)


def test_duplicate_genes_raise(random_input_frames):
    expression_df, genotype_df, cellcount_df = random_input_frames
    expression_df = expression_df.rename(index={"gene2": "gene1"})

    with pytest.raises(ConfigurationError, match=r"expression data, eg \['gene1'\]"):
        DeconvolutionInputData(expression_df, genotype_df, cellcount_df)


def test_duplicate_samples_raise(random_input_frames):
    expression_df, genotype_df, cellcount_df = random_input_frames

    with pytest.raises(ConfigurationError, match="sample names in the genotype"):
        DeconvolutionInputData(
            expression_df,
            pd.concat([genotype_df, genotype_df[["sample1"]]], axis=1),
            cellcount_df,
        )
    with pytest.raises(ConfigurationError, match="cell count data"):
        DeconvolutionInputData(
            expression_df, genotype_df, pd.concat([cellcount_df, cellcount_df])
        )


def test_relative_cellcounts(random_input_frames):
    expression_df, genotype_df, cellcount_df = random_input_frames

    data = DeconvolutionInputData(
        expression_df, genotype_df, cellcount_df, use_relative_cellcounts=True
    )

    assert data.cell_counts.mean(axis=0).tolist() == pytest.approx([1.0, 1.0])


def test_missing_features_raise_key_error(input_data):
    with pytest.raises(KeyError):
        input_data.genotypes("snp_unknown")
    with pytest.raises(KeyError):
        input_data.expression("gene_unknown")


def test_validate_pairs(input_data):
    pairs = [("gene1", "snp1"), ("gene2", "snp_unknown")]

    with pytest.raises(ConfigurationError, match="not in the genotype data"):
        input_data.validate_pairs(pairs)

    missing = input_data.validate_pairs(pairs, skip_missing_genotypes=True)
    assert missing == {"snp_unknown"}

    with pytest.raises(ConfigurationError, match="expression data"):
        input_data.validate_pairs([("gene_unknown", "snp1")])


def test_from_files(input_files):
    data = DeconvolutionInputData.from_files(
        input_files["expression"], input_files["genotype"], input_files["cellcount"]
    )

    assert data.cell_types == ["neut", "lymph"]
    assert data.has_genotypes("snp3")
    assert data.has_expression("gene2")
    assert isinstance(data.genotypes("snp1"), pd.Series)


def test_from_files_missing_file(input_files, tmp_path):
    with pytest.raises(ConfigurationError, match="does not exist"):
        DeconvolutionInputData.from_files(
            str(tmp_path / "missing.txt"),
            input_files["genotype"],
            input_files["cellcount"],
        )


def test_read_gene_snp_pairs(input_files):
    pairs = read_gene_snp_pairs(input_files["pairs"])
    assert pairs == [("gene1", "snp1"), ("gene2", "snp2"), ("gene1", "snp3")]


def test_read_gene_snp_pairs_empty(tmp_path):
    path = tmp_path / "pairs.txt"
    path.write_text("")
    assert read_gene_snp_pairs(str(path)) == []


def test_read_gene_snp_pairs_one_column(tmp_path):
    path = tmp_path / "pairs.txt"
    path.write_text("gene1\ngene2\n")

    with pytest.raises(ConfigurationError, match="gene and a SNP column"):
        read_gene_snp_pairs(str(path))


def test_read_cell_type_reference(tmp_path):
    path = tmp_path / "reference.txt"
    path.write_text(
        "gene\tsnp\tneut\tlymph\n"
        "gene1\tsnp1\t0.8\t0.1\n"
        "# a comment\n"
        "gene2\tsnp2\t-0.2\t0.0\n"
        "gene2\tsnp2\t5.0\t5.0\n"
    )

    reference_df = read_cell_type_reference(str(path))

    assert reference_df.index.names == ["gene", "snp"]
    assert list(reference_df.columns) == ["neut", "lymph"]
    assert len(reference_df) == 2
    assert reference_df.at[("gene1", "snp1"), "neut"] == pytest.approx(0.8)
    # the first occurrence of a repeated pair is kept
    assert reference_df.at[("gene2", "snp2"), "neut"] == pytest.approx(-0.2)


def test_read_cell_type_reference_invalid(tmp_path):
    with pytest.raises(ConfigurationError, match="does not exist"):
        read_cell_type_reference(str(tmp_path / "missing.txt"))

    path = tmp_path / "reference.txt"
    path.write_text("gene\tsnp\ngene1\tsnp1\n")
    with pytest.raises(ConfigurationError, match="at least one cell type"):
        read_cell_type_reference(str(path))
