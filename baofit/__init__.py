from baofit.exceptions import (
    BaofitError,
    ShapeMismatchError,
    InactiveBinError,
    NonPositiveDefiniteError,
    InvalidStateError,
    BinningError,
    ConfigurationError,
    DataFormatError,
    FitError,
)
from baofit.binning import (
    AbsBinning,
    UniformBinning,
    UniformSampling,
    NonUniformSampling,
    two_step_sampling,
)
from baofit.linalg.covariance import CovarianceMatrix
from baofit.data.binned_data import BinnedData, SharedBinnedData
from baofit.data.correlation import (
    AbsCorrelationData,
    ComovingCorrelationData,
    QuasarCorrelationData,
)
from baofit.data.loaders import load_cosmolib, load_plates, combine_samples
from baofit.resample.accumulator import ResampledAccumulator
from baofit.resample.bootstrap import (
    BootstrapDistribution,
    BootstrapResult,
    draw_repeat_counts,
    run_bootstrap,
)
from baofit.likelihood import CorrelationLikelihood, apply_theory_offsets
from baofit.config import FitConfig

__version__ = "0.1.0"
