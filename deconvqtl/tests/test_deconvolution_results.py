import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402
import pytest  # noqa: E402

from deconvqtl.deconvolution_results import (  # noqa: E402
    FILTERED_PVALUE,
    DeconvolutionResults,
    QtlResult,
)
from deconvqtl.errors import AccessBeforeSetError, ConfigurationError  # noqa: E402


def make_result(pair_index, neut, lymph, gene="gene1", snp="snp1"):
    return QtlResult(
        pair_index=pair_index,
        gene=gene,
        snp=snp,
        sample_size=50,
        pvalues={"neut": neut, "lymph": lymph},
        coefficients={"neut": 1.0, "lymph": 0.5, "neut:GT": 0.2, "lymph:GT": 0.0},
        best_full_model="raw",
    )


@pytest.fixture
def results():
    results = DeconvolutionResults(["neut", "lymph"])
    results.add_result(make_result(2, 0.5, 0.2, snp="snp3"))
    results.add_result(make_result(0, 0.001, 0.9))
    results.add_skipped(1, "gene2", "snp2", "genotype_filter", "too few samples")
    results.add_result(make_result(3, 0.04, 0.02, gene="gene2"))
    return results


def test_bonferroni_correction(results):
    results.apply_multiple_testing_correction("bonferroni")

    assert results.n_tests == 3
    by_index = {r.pair_index: r for r in results.results}
    assert by_index[0].corrected_pvalues["neut"] == pytest.approx(0.003)
    assert by_index[0].significant == {"neut": True, "lymph": False}
    # corrected p-values are capped at 1
    assert by_index[2].corrected_pvalues["neut"] == 1.0
    assert by_index[3].significant == {"neut": False, "lymph": False}
    for result in results.results:
        for ct, p in result.pvalues.items():
            assert p <= result.corrected_pvalues[ct] <= 1.0


def test_bonferroni_misspelling_is_accepted(results):
    results.apply_multiple_testing_correction("Bonferonni")
    assert results.correction_method == "bonferroni"


def test_unknown_correction_method(results):
    with pytest.raises(ConfigurationError, match="Unknown multiple testing"):
        results.apply_multiple_testing_correction("fdr")


def test_alpha_threshold():
    results = DeconvolutionResults(["neut"], alpha=0.01)
    results.add_result(
        QtlResult(pair_index=0, gene="g", snp="s", sample_size=10, pvalues={"neut": 0.02})
    )
    results.apply_multiple_testing_correction()

    assert results.results[0].significant == {"neut": False}


def test_duplicate_pair_index(results):
    with pytest.raises(ValueError, match="already reported"):
        results.add_result(make_result(1, 0.1, 0.1))


def test_adding_a_result_resets_the_correction(results):
    results.apply_multiple_testing_correction()
    results.add_result(make_result(4, 0.1, 0.1))

    with pytest.raises(AccessBeforeSetError):
        results.to_dataframe()


def test_to_dataframe_before_correction(results):
    with pytest.raises(AccessBeforeSetError):
        results.to_dataframe()


def test_to_dataframe_keeps_input_order(results):
    results.apply_multiple_testing_correction()

    df = results.to_dataframe()

    assert list(df["snp"]) == ["snp1", "snp2", "snp3", "snp1"]
    assert list(df["gene"]) == ["gene1", "gene2", "gene1", "gene2"]
    for column in [
        "neut_pvalue",
        "neut_corrected_pvalue",
        "neut_significant",
        "lymph_pvalue",
        "beta_neut:GT",
        "best_full_model",
        "sample_size",
    ]:
        assert column in df.columns


def test_filtered_pairs_are_reported_with_placeholder(results):
    results.apply_multiple_testing_correction()

    filtered = results.to_dataframe().iloc[1]

    assert filtered["neut_pvalue"] == FILTERED_PVALUE
    assert filtered["lymph_corrected_pvalue"] == FILTERED_PVALUE
    assert not filtered["neut_significant"]


def test_filter_samples_removes_filtered_pairs():
    results = DeconvolutionResults(["neut"], filter_samples=True)
    results.add_result(
        QtlResult(pair_index=0, gene="g", snp="s", sample_size=10, pvalues={"neut": 0.5})
    )
    results.add_skipped(1, "g", "s2", "genotype_filter")
    results.apply_multiple_testing_correction()

    assert list(results.to_dataframe()["snp"]) == ["s"]


def test_other_skips_are_not_reported(results):
    results.add_skipped(5, "gene1", "snp9", "degenerate_model")
    results.apply_multiple_testing_correction()

    assert "snp9" not in set(results.to_dataframe()["snp"])


def test_significant_only(results):
    results.apply_multiple_testing_correction()

    df = results.to_dataframe(significant_only=True)

    assert list(zip(df["gene"], df["snp"])) == [("gene1", "snp1")]


def test_empirical_and_whole_blood_columns():
    result = QtlResult(
        pair_index=0,
        gene="g",
        snp="s",
        sample_size=10,
        pvalues={"neut": 0.5},
        empirical_pvalues={"neut": 0.4},
        whole_blood_correlation=0.3,
        whole_blood_beta=0.25,
        whole_blood_pvalue=0.2,
    )
    results = DeconvolutionResults(["neut"])
    results.add_result(result)
    results.apply_multiple_testing_correction()

    row = results.to_dataframe().iloc[0]

    assert row["neut_empirical_pvalue"] == 0.4
    assert row["whole_blood_r"] == 0.3
    assert row["whole_blood_beta"] == 0.25
    assert row["whole_blood_pvalue"] == 0.2


def test_summary(results):
    results.add_skipped(4, "gene1", "snp8", "degenerate_model")
    results.n_not_dispatched = 2
    results.apply_multiple_testing_correction()

    summary = results.summary()

    assert summary == {
        "attempted": 5,
        "reported": 3,
        "skipped": 2,
        "not_dispatched": 2,
        "skip_reasons": {"genotype_filter": 1, "degenerate_model": 1},
        "significant": 1,
    }
    assert [s.pair_index for s in results.skipped] == [1, 4]


def test_serialize(results, tmp_path):
    results.apply_multiple_testing_correction()
    output_file = tmp_path / "results.txt"

    results.serialize(str(output_file))

    df = pd.read_csv(output_file, sep="\t")
    assert len(df) == 4
    assert df["neut_pvalue"].iloc[1] == FILTERED_PVALUE


def test_serialize_missing_directory(results, tmp_path):
    results.apply_multiple_testing_correction()

    with pytest.raises(FileNotFoundError):
        results.serialize(str(tmp_path / "missing" / "results.txt"))


def test_visualize_pvalue_distribution(results):
    fig = results.visualize_pvalue_distribution()

    assert isinstance(fig, plt.Figure)
    plt.close(fig)


def test_visualize_without_results():
    assert DeconvolutionResults(["neut"]).visualize_pvalue_distribution() is None


def make_effect_result(pair_index, gene, neut_beta, lymph_beta, model="raw"):
    return QtlResult(
        pair_index=pair_index,
        gene=gene,
        snp="snp1",
        sample_size=50,
        pvalues={"neut": 0.5, "lymph": 0.5},
        coefficients={"neut:GT": neut_beta, "lymph:GT": lymph_beta},
        best_full_model=model,
    )


def test_interaction_effect_is_in_raw_coding():
    raw = make_effect_result(0, "gene1", 0.3, 0.1)
    swapped = make_effect_result(1, "gene1", 0.3, 0.1, model="swapped")

    assert raw.interaction_effect("neut") == 0.3
    assert swapped.interaction_effect("neut") == -0.3
    assert np.isnan(raw.interaction_effect("mono"))


def test_validate_against_reference_effects():
    results = DeconvolutionResults(["neut", "lymph", "mono"])
    results.add_result(make_effect_result(0, "gene1", 0.1, 0.5))
    results.add_result(make_effect_result(1, "gene2", 0.2, 0.1))
    results.add_result(make_effect_result(2, "gene3", -0.3, -0.2, model="swapped"))
    results.add_result(make_effect_result(3, "gene4", 0.4, 0.3))
    # not in the reference
    results.add_result(make_effect_result(4, "gene5", 9.0, 9.0))
    reference_df = pd.DataFrame(
        {"neut": [1.0, 2.0, 3.0, 4.0], "lymph": [1.0, np.nan, np.nan, 2.0]},
        index=pd.MultiIndex.from_tuples(
            [(f"gene{i}", "snp1") for i in range(1, 5)],
            names=["gene", "snp"],
        ),
    )

    validation = results.validate(reference_df).set_index("cell_type")

    # mono has no reference effects
    assert list(validation.index) == ["neut", "lymph"]
    assert validation.at["neut", "n_pairs"] == 4
    assert validation.at["neut", "pearson_r"] == pytest.approx(1.0)
    assert validation.at["neut", "spearman_r"] == pytest.approx(1.0)
    # too few pairs to correlate
    assert validation.at["lymph", "n_pairs"] == 2
    assert np.isnan(validation.at["lymph", "pearson_r"])
    assert np.isnan(validation.at["lymph", "spearman_r"])
