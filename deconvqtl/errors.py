class DeconvolutionError(Exception):
    """Base class for all deconvolution errors."""


class ConfigurationError(DeconvolutionError):
    """Raised when a required input file or option is missing or invalid.

    This is fatal: it is raised before any gene-SNP pair is tested.

    """


class AccessBeforeSetError(DeconvolutionError):
    """Raised when a field of the data model is read before it was set, or after it
    was released."""


class RunAbortedError(DeconvolutionError):
    """Raised when a run was stopped before every pair was dispatched."""


class QtlSkipError(DeconvolutionError):
    """
    Base class for errors that skip a single gene-SNP pair without stopping the run.

    :param message: Human readable description of the problem.
    :param reason: Category used to tally skipped pairs in the run summary.

    """

    reason = "skipped"

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class AlignmentError(QtlSkipError):
    """The genotype, expression and cell count vectors of a pair do not share the
    same samples in the same order."""

    reason = "alignment"


class DegenerateModelError(QtlSkipError):
    """The design matrix is rank deficient or has no residual degrees of freedom."""

    reason = "degenerate_model"


class GenotypeFilterError(QtlSkipError):
    """The pair does not pass the configured genotype filters."""

    reason = "genotype_filter"
