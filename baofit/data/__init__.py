from .binned_data import BinnedData, SharedBinnedData
from .correlation import AbsCorrelationData, ComovingCorrelationData, QuasarCorrelationData
from .loaders import load_cosmolib, load_plates, combine_samples
