import argparse
import logging
import sys
import time
from typing import Literal

from deconvqtl.errors import ConfigurationError, RunAbortedError
from deconvqtl.interface import (
    CustomHelpFormatter,
    add_general_arguments_to_subparsers,
    common_deconvolution_filter_arguments,
    common_deconvolution_input_arguments,
    common_deconvolution_significance_arguments,
    deconvolution,
)
from deconvqtl.utils.configure_logger import LogLevel, configure_logger

logger = logging.getLogger("main")


def configure_logging(
    log_level: int, handler_type: Literal["console", "file"] = "console"
) -> logging.Logger:
    """
    Configure the logging for the application.

    :param log_level: The logging level to set.
    :param handler_type: Log to the console or to a timestamped file.
    :return: The main logger.

    """
    # add a timestamp to the log file name
    log_file = f"deconvqtl_{time.strftime('%Y%m%d-%H%M%S')}.log"
    main_logger = configure_logger(
        "main", level=log_level, handler_type=handler_type, log_file=log_file
    )
    return main_logger


def main() -> None:
    """Main entry point for the deconvqtl application."""
    parser = argparse.ArgumentParser(
        prog="deconvqtl",
        description="deconvqtl Main Entry Point",
        usage="deconvqtl --help",
        formatter_class=CustomHelpFormatter,
    )

    formatter = parser._get_formatter()

    # Shared parameter for logging level
    log_level_argument = parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level",
    )
    log_handler_argument = parser.add_argument(
        "--log-handler",
        type=str,
        default="console",
        choices=["console", "file"],
        help="Set the logging handler",
    )
    formatter.add_arguments([log_level_argument, log_handler_argument])

    # Define subparsers for different commands
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    deconvolution_parser = subparsers.add_parser(
        "deconvolution",
        help="Test cell type specific eQTL effects",
        description=(
            "For each gene-SNP pair, fits expression ~ cell types + cell types:GT "
            "and tests every cell type's interaction term with an ANOVA against the "
            "model without it. Optionally adds permutation based empirical "
            "p-values and the whole blood eQTL."
        ),
        formatter_class=CustomHelpFormatter,
    )

    input_group = deconvolution_parser.add_argument_group("Input")
    common_deconvolution_input_arguments(input_group)

    filter_group = deconvolution_parser.add_argument_group("Filter Options")
    common_deconvolution_filter_arguments(filter_group)

    significance_group = deconvolution_parser.add_argument_group("Significance")
    common_deconvolution_significance_arguments(significance_group)

    output_group = deconvolution_parser.add_argument_group("Output")
    output_group.add_argument(
        "-o",
        "--outfolder",
        type=str,
        required=True,
        help="Path to the folder to write the output to",
    )
    output_group.add_argument(
        "--of",
        "--outfile",
        dest="outfile",
        type=str,
        default="deconvolutionResults.csv",
        help=(
            "File name of the deconvolution results, written in the outfolder. "
            "Default is deconvolutionResults.csv"
        ),
    )
    output_group.add_argument(
        "--sep",
        type=str,
        default="\t",
        help="Column delimiter of the results file. Default is a tab",
    )
    output_group.add_argument(
        "-s",
        "--output_significant_only",
        action="store_true",
        help="Only output results that are significant in at least one cell type.",
    )
    output_group.add_argument(
        "--plot_pvalues",
        action="store_true",
        help="Save a plot of the p-value distribution next to the results file.",
    )
    output_group.add_argument(
        "-v",
        "--validate_output",
        type=str,
        default=None,
        help=(
            "Tab separated file with cell type specific eQTL effects: gene, SNP and "
            "one column per cell type. The interaction effects are correlated with "
            "it and the correlations written next to the results file"
        ),
    )

    system_group = deconvolution_parser.add_argument_group("System")
    system_group.add_argument(
        "--n_cpus",
        type=int,
        default=1,
        help="Number of threads testing gene-SNP pairs in parallel. Default is 1",
    )

    deconvolution_parser.set_defaults(func=deconvolution)

    # Add the general arguments to the subcommand parsers
    add_general_arguments_to_subparsers(subparsers, [log_level_argument])

    # Parse arguments
    args = parser.parse_args()

    # Configure logging
    try:
        log_level = LogLevel.from_string(args.log_level)
    except ValueError as e:
        print(e)
        parser.print_help()
        return

    _ = configure_logging(log_level, handler_type=args.log_handler)

    # Run the appropriate command
    if args.command is None:
        parser.print_help()
        return

    try:
        args.func(args)
    except ConfigurationError as exc:
        logger.error(f"Invalid configuration: {exc}")
        sys.exit(1)
    except RunAbortedError as exc:
        logger.error(str(exc))
        sys.exit(2)


if __name__ == "__main__":
    main()
