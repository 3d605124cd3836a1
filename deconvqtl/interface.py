import argparse
import logging
import os

from deconvqtl.config import DeconvolutionConfig
from deconvqtl.deconvolution import DeconvolutionEngine
from deconvqtl.deconvolution_input_data import (
    DeconvolutionInputData,
    read_cell_type_reference,
    read_gene_snp_pairs,
)
from deconvqtl.errors import ConfigurationError

logger = logging.getLogger("main")


class CustomHelpFormatter(argparse.HelpFormatter):
    """
    This could be used to customize the help message formatting for the argparse parser.

    Left as a placeholder.

    """


def config_from_args(args: argparse.Namespace) -> DeconvolutionConfig:
    """
    Build the run configuration from parsed command line arguments.

    :raises ConfigurationError: If an option value is invalid.

    """
    return DeconvolutionConfig(
        minimum_samples_per_genotype=args.minimum_samples_per_genotype,
        force_normal_expression=args.force_normal_expression,
        force_normal_cellcount=args.force_normal_cellcount,
        normalization_type=args.normalization_type,
        round_dosage=args.round_dosage,
        all_dosages_required=args.all_dosages,
        permutation_count=args.permute,
        permutation_type=args.permutation_type,
        multiple_testing_method=args.multiple_testing_correction_method,
        output_significant_only=args.output_significant_only,
        use_relative_cellcounts=args.use_relative_cellcounts,
        whole_blood_qtl=args.whole_blood_qtl,
        test_run=args.test_run,
        filter_samples=args.filter_samples,
        skip_missing_genotypes=args.skip_genotypes,
        alpha=args.alpha,
        random_state=args.random_state,
        n_jobs=args.n_cpus,
        validate_output=args.validate_output,
    )


def deconvolution(args: argparse.Namespace) -> None:
    """
    Run the cell type deconvolution of every gene-SNP pair and write the results.

    :param args: Command-line arguments containing input file paths and parameters.
    :raises ConfigurationError: If an input file is missing or an option is
        invalid. Nothing is tested in that case.

    """
    logger.info("Step 1: Preprocessing")

    # validate input files before anything is read
    for label, path in (
        ("expression", args.expression),
        ("genotype", args.genotype),
        ("cellcount", args.cellcount),
        ("gene-SNP pair", args.snps_to_test),
    ):
        if not os.path.isfile(path):
            raise ConfigurationError(f"The {label} file {path} does not exist.")
    if args.validate_output is not None and not os.path.isfile(args.validate_output):
        raise ConfigurationError(
            f"The validation file {args.validate_output} does not exist."
        )

    config = config_from_args(args)

    if os.path.exists(args.outfolder):
        logger.warning(f"Output directory {args.outfolder} already exists.")
    else:
        os.makedirs(args.outfolder, exist_ok=True)
        logger.info(f"Output directory created at {args.outfolder}")

    output_file = os.path.join(args.outfolder, args.outfile)
    logger.info(f"Writing output to {output_file}")

    config.log_settings(logger)

    input_data = DeconvolutionInputData.from_files(
        expression_path=args.expression,
        genotype_path=args.genotype,
        cellcount_path=args.cellcount,
        use_relative_cellcounts=config.use_relative_cellcounts,
    )
    pairs = read_gene_snp_pairs(args.snps_to_test)
    logger.info(f"Read {len(pairs)} gene-SNP pairs from {args.snps_to_test}")
    reference_df = (
        read_cell_type_reference(config.validate_output)
        if config.validate_output is not None
        else None
    )

    logger.info("Step 2: Deconvolution of the gene-SNP pairs")
    engine = DeconvolutionEngine(input_data, config=config, logger=logger)
    results = engine.run(pairs)

    logger.info("Step 3: Writing results")
    results.serialize(
        output_file,
        significant_only=config.output_significant_only,
        sep=args.sep,
    )

    if reference_df is not None:
        validation_file = os.path.splitext(output_file)[0] + "_validation.txt"
        results.validate(reference_df).to_csv(validation_file, sep="\t", index=False)
        logger.info(f"Wrote the validation of the results to {validation_file}")

    if args.plot_pvalues:
        fig = results.visualize_pvalue_distribution()
        if fig is not None:
            plot_file = os.path.splitext(output_file)[0] + "_pvalues.png"
            fig.savefig(plot_file, bbox_inches="tight")
            logger.info(f"Saved the p-value distribution plot to {plot_file}")


def add_general_arguments_to_subparsers(subparsers, general_arguments):
    for subparser in subparsers.choices.values():
        for arg in general_arguments:
            subparser._add_action(arg)


def common_deconvolution_input_arguments(parser: argparse._ArgumentGroup) -> None:
    """Add the input file arguments."""
    parser.add_argument(
        "-e",
        "--expression",
        type=str,
        required=True,
        help=(
            "Path to the tab delimited expression file. The first column holds the "
            "gene names, the header holds the sample names."
        ),
    )
    parser.add_argument(
        "-g",
        "--genotype",
        type=str,
        required=True,
        help=(
            "Path to the tab delimited genotype dosage file. The first column holds "
            "the SNP names, the header holds the sample names. Negative or empty "
            "dosages are treated as missing."
        ),
    )
    parser.add_argument(
        "-c",
        "--cellcount",
        type=str,
        required=True,
        help=(
            "Path to the tab delimited cell count file. The first column holds the "
            "sample names, the header holds the cell type names."
        ),
    )
    parser.add_argument(
        "--sn",
        "--snps_to_test",
        dest="snps_to_test",
        type=str,
        required=True,
        help=(
            "Tab delimited file without header: gene name in the first column, SNP "
            "name in the second. Names must match the genotype and expression files."
        ),
    )


def common_deconvolution_filter_arguments(parser: argparse._ArgumentGroup) -> None:
    """Add the QTL filtering and transformation arguments."""
    parser.add_argument(
        "-m",
        "--minimum_samples_per_genotype",
        type=int,
        default=0,
        help=(
            "The minimum number of samples needed for each genotype of a QTL for the "
            "QTL to be tested. Default is 0"
        ),
    )
    parser.add_argument(
        "--ad",
        "--all_dosages",
        dest="all_dosages",
        action="store_true",
        help="Filter out QTLs where not all dosages are present in at least 1 sample",
    )
    parser.add_argument(
        "-r",
        "--round_dosage",
        action="store_true",
        help="Round the dosage to the closest integer",
    )
    parser.add_argument(
        "--ne",
        "--force_normal_expression",
        dest="force_normal_expression",
        action="store_true",
        help="Force normal on the expression data",
    )
    parser.add_argument(
        "-n",
        "--normalization_type",
        type=str,
        default="normalizeAddMean",
        choices=["normalizeAddMean", "normalize"],
        help=(
            "How --ne normalizes the expression. normalizeAddMean adds the mean of "
            "the original expression back after the force normal. Default is "
            "normalizeAddMean"
        ),
    )
    parser.add_argument(
        "--nc",
        "--force_normal_cellcount",
        dest="force_normal_cellcount",
        action="store_true",
        help="Force normal on the cell count data",
    )
    parser.add_argument(
        "--cc",
        "--use_relative_cellcounts",
        dest="use_relative_cellcounts",
        action="store_true",
        help=(
            "Divide each cell count by the average count of its cell type and use "
            "that ratio in the model"
        ),
    )
    parser.add_argument(
        "-f",
        "--filter_samples",
        action="store_true",
        help=(
            "Remove QTLs that fail -m or --ad from the output. By default their "
            "p-values are reported as 333.0"
        ),
    )
    parser.add_argument(
        "--sg",
        "--skip_genotypes",
        dest="skip_genotypes",
        action="store_true",
        help=(
            "Skip pairs whose SNP is in the gene-SNP pair file but not in the "
            "genotype file"
        ),
    )
    parser.add_argument(
        "-t",
        "--test_run",
        action="store_true",
        help="Only run the deconvolution for the first 100 QTLs for a quick test run",
    )


def common_deconvolution_significance_arguments(
    parser: argparse._ArgumentGroup,
) -> None:
    """Add the permutation and multiple testing arguments."""
    parser.add_argument(
        "-p",
        "--permute",
        type=int,
        default=0,
        help="Number of permutations per QTL. Default is 0 (no permutations)",
    )
    parser.add_argument(
        "--pt",
        "--permutation_type",
        dest="permutation_type",
        type=str,
        default="genotype",
        choices=["genotype", "expression"],
        help="Vector to permute. Default is genotype",
    )
    parser.add_argument(
        "--random_state",
        type=int,
        default=None,
        help=(
            "Set this to an integer to make the permutations reproducible. Default "
            "is None (no fixed seed)"
        ),
    )
    parser.add_argument(
        "--mt",
        "--multiple_testing_correction_method",
        dest="multiple_testing_correction_method",
        type=str,
        default="bonferroni",
        help="Method used for multiple testing correction (currently only bonferroni)",
    )
    parser.add_argument(
        "--alpha",
        type=float,
        default=0.05,
        help="Significance threshold on the corrected p-values. Default is 0.05",
    )
    parser.add_argument(
        "-w",
        "--whole_blood_qtl",
        action="store_true",
        help="Add the whole blood eQTL (pearson correlation of genotypes and expression)",
    )
