from .accumulator import AccumulatorState, ResampledAccumulator
from .bootstrap import (
    BootstrapDistribution,
    BootstrapResult,
    BootstrapTrial,
    draw_repeat_counts,
    run_bootstrap,
)
