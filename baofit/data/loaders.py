# data/loaders.py
"""
Readers for correlation measurements stored in the cosmolib text format.

A measurement `<name>` is stored in two files:

* `<name>.params`, one line per bin with data::

      <data> <cinvData> | Lya covariance 3D (<ll>,<sep>,<z>)

  where `cinvData` is the inverse-covariance weighted value.
* `<name>.cov` (or `<name>.icov`), one line per stored matrix element::

      <offset1> <offset2> <value>

  where offsets are ranks of the bins in ascending global index.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Iterator

from ..exceptions import DataFormatError, NonPositiveDefiniteError
from .binned_data import BinnedData
from .correlation import AbsCorrelationData

logger = logging.getLogger(__name__)

__all__ = [
    "load_cosmolib",
    "load_plates",
    "combine_samples",
]

_NUMBER = r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?"
_INTEGER = r"[-+]?\d+"

PARAMS_LINE = re.compile(
    rf"^\s*({_NUMBER})\s+({_NUMBER})\s*\|\s*Lya covariance 3D\s*"
    rf"\(\s*({_NUMBER})\s*,\s*({_NUMBER})\s*,\s*({_NUMBER})\s*\)\s*$"
)
COV_LINE = re.compile(rf"^\s*({_INTEGER})\s+({_INTEGER})\s+({_NUMBER})\s*$")


def _numbered_lines(path: str) -> Iterator[tuple[int, str]]:
    """Yield (line number, line) for the non-blank lines of a text file."""
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if line.strip():
                yield lineno, line


def load_cosmolib(name: str, prototype: BinnedData, *, icov: bool = False, weighted: bool = False,
                  negate_icov: bool = True, check_pos_def: bool = False,
                  compress: bool = True) -> BinnedData:
    """Load one measurement into a new dataset with the binning of `prototype`.

    Args:
        name: path without extension.
        prototype: dataset providing the axes (and cuts) of the result.
        icov: read `<name>.icov` (inverse covariance) instead of `<name>.cov`.
        weighted: store the weighted `cinvData` column instead of `data`.
        negate_icov: flip the sign of inverse covariance values, as this
            format stores them negated.
        check_pos_def: force an inversion after loading and log a warning if
            the matrix is not positive definite.
        compress: compress the covariance of the returned dataset, stored as
            its inverse so that combining samples needs no further inversion.

    Returns:
        A finalized dataset. Final cuts are not applied, so samples can be
        combined first.

    Raises:
        DataFormatError: on a line that does not match the expected format.
    """
    data = prototype.clone(binning_only=True)

    params_name = name + ".params"
    for lineno, line in _numbered_lines(params_name):
        match = PARAMS_LINE.match(line)
        if match is None:
            raise DataFormatError(
                "load_cosmolib: badly formatted line.",
                details={"file": params_name, "line": lineno},
            )
        value, cinv_value, ll, sep, z = (float(g) for g in match.groups())
        index = data.get_index((ll, sep, z))
        data.set_data(index, cinv_value if weighted else value, weighted)
    logger.info("Read %d of %d data values from %s", data.n_bins_with_data, data.n_bins_total, params_name)

    cov_name = name + (".icov" if icov else ".cov")
    n_lines = 0
    for lineno, line in _numbered_lines(cov_name):
        match = COV_LINE.match(line)
        if match is None:
            raise DataFormatError(
                "load_cosmolib: badly formatted line.",
                details={"file": cov_name, "line": lineno},
            )
        offset1, offset2 = int(match.group(1)), int(match.group(2))
        value = float(match.group(3))
        try:
            index1 = data.index_at_offset(offset1)
            index2 = data.index_at_offset(offset2)
        except IndexError as e:
            raise DataFormatError(
                "load_cosmolib: covariance offset out of range.",
                details={"file": cov_name, "line": lineno, "n_bins": data.n_bins_with_data},
            ) from e
        if icov:
            if negate_icov:
                value = -value
            data.set_inverse_covariance(index1, index2, value)
        else:
            data.set_covariance(index1, index2, value)
        n_lines += 1
    n_data = data.n_bins_with_data
    logger.info("Read %d of %d covariance values from %s", n_lines, (n_data * (n_data + 1)) // 2, cov_name)

    if isinstance(data, AbsCorrelationData):
        data.finalize(apply_cuts=False)
    else:
        data.finalize()

    if check_pos_def:
        first = data.index_at_offset(0)
        try:
            if icov:
                data.get_covariance(first, first)
            else:
                data.get_inverse_covariance(first, first)
        except NonPositiveDefiniteError:
            logger.warning("Covariance not positive-definite: %s", cov_name)

    if compress:
        try:
            data.compress(store_inverse=True)
        except NonPositiveDefiniteError:
            logger.warning("Covariance cannot be inverted, compressed as read: %s", cov_name)
            data.compress()
    return data


def load_plates(platelist: str, prototype: BinnedData, *, plateroot: str = "",
                max_plates: int = 0, **kwargs) -> list[BinnedData]:
    """Load every measurement named in a plate list file.

    The list file is `plateroot + platelist`; each whitespace-separated name
    in it is loaded from `plateroot + name` with `load_cosmolib(**kwargs)`.
    At most `max_plates` are loaded if it is positive.
    """
    list_name = plateroot + platelist
    with open(list_name, "r", encoding="utf-8") as f:
        names = f.read().split()
    if max_plates > 0:
        names = names[:max_plates]
    samples = [load_cosmolib(plateroot + plate, prototype, **kwargs) for plate in names]
    logger.info("Loaded %d plates listed in %s", len(samples), os.path.basename(list_name))
    return samples


def combine_samples(samples: list[BinnedData]) -> BinnedData:
    """Information-weighted combination of finalized samples (no repeats).

    Returns a new owned dataset; the samples are not modified.
    """
    if not samples:
        raise ValueError("combine_samples: no samples to combine.")
    combined = samples[0].clone(binning_only=True)
    for sample in samples:
        combined += sample
    return combined
