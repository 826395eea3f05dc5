"""
Configuration of a correlation-function fit.

`FitConfig` collects the binning of the input measurements, the final cuts,
the loader options and the bootstrap options. It can be built from keyword
arguments, a dictionary, or an ini file whose keys use hyphens
(``ll-min = 0.003``) and ``#`` comments.
"""

from __future__ import annotations

import configparser
import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np

from .binning import AbsBinning, NonUniformSampling, UniformBinning, UniformSampling, two_step_sampling
from .custom_types import PRNG
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["FitConfig"]

# Alternative spellings accepted in ini files and dictionaries.
_ALIASES = {
    "llmin": "ll_min",
    "naive_cov": "naive_covariance",
}

_DEFAULT_SECTION = "baofit"


@dataclass
class FitConfig:
    """Settings for loading, combining and resampling correlation measurements."""

    # Input data
    data: str = ""
    platelist: str = ""
    plateroot: str = ""
    max_plates: int = 0

    # Binning in log(lam2/lam1)
    nll: int = 14
    minll: float = 0.0002
    dll: float = 0.004
    dll2: float = 0.0
    # Binning in separation (arcmin)
    nsep: int = 14
    minsep: float = 0.0
    dsep: float = 10.0
    # Binning in redshift
    nz: int = 2
    minz: float = 1.7
    dz: float = 1.0

    # Final cuts
    rmin: float = 0.0
    rmax: float = 200.0
    ll_min: float = 0.0

    # Loader options
    icov: bool = False
    weighted: bool = False
    negate_icov: bool = True
    check_pos_def: bool = False
    compress: bool = True
    zero_variance: float = 1e40
    zero_precision: float = 1e-30

    # Continuum-fitting covariance term
    fix_cov: bool = False
    fix_cov_k1: float = 150.0
    fix_cov_k2: float = 300.0
    fix_cov_c: float = 1e-3

    # Bootstrap
    bootstrap_trials: int = 0
    bootstrap_size: int = 0
    naive_covariance: bool = False
    random_seed: int = 1966

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate configuration parameters.

        Raises
        ------
        ConfigurationError
            If any configuration parameter is invalid
        """
        errors = []

        for name in ("nll", "nsep", "nz"):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")
        for name in ("dll", "dsep", "dz"):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive")
        if self.dll2 < 0:
            errors.append("dll2 must be non-negative (0 selects uniform binning)")
        if self.dll2 > 0 and self.minll <= 0:
            errors.append("minll must be positive for two-step binning")

        if self.rmin >= self.rmax:
            errors.append("rmin must be less than rmax")

        for name in ("max_plates", "bootstrap_trials", "bootstrap_size"):
            if getattr(self, name) < 0:
                errors.append(f"{name} must be non-negative")

        if self.zero_variance <= 0 or self.zero_precision <= 0:
            errors.append("zero_variance and zero_precision must be positive")
        if not 0 <= self.fix_cov_k1 < self.fix_cov_k2:
            errors.append("fix_cov_k1 and fix_cov_k2 must satisfy 0 <= k1 < k2")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FitConfig":
        """Create configuration from a dictionary.

        Keys may use hyphens or underscores. Unknown keys are ignored (and
        logged), so a dictionary can also carry settings for other stages of
        an analysis.
        """
        types = {f.name: f.type for f in dataclasses.fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = key.strip().replace("-", "_")
            name = _ALIASES.get(name, name)
            if name not in types:
                logger.debug("Ignoring unknown configuration key %r", key)
                continue
            kwargs[name] = _convert(name, value, types[name])
        return cls(**kwargs)

    @classmethod
    def from_ini(cls, path: Union[str, Path], section: Optional[str] = None) -> "FitConfig":
        """Read an ini file.

        Files without section headers are read as a single section. Repeated
        keys keep their last value.
        """
        parser = configparser.ConfigParser(inline_comment_prefixes=("#",), strict=False,
                                           interpolation=None)
        text = Path(path).read_text(encoding="utf-8")
        if section is None:
            parser.read_string(f"[{_DEFAULT_SECTION}]\n" + text, source=str(path))
            section = _DEFAULT_SECTION
        else:
            parser.read_string(text, source=str(path))
        if not parser.has_section(section):
            raise ConfigurationError(f"Section [{section}] not found in {path}")
        return cls.from_dict(dict(parser.items(section)))

    def update(self, **kwargs) -> None:
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                raise ConfigurationError(f"Unknown configuration parameter: {key}")
        self.validate()

    # ---- Builders ----

    def build_axes(self) -> tuple[AbsBinning, AbsBinning, AbsBinning]:
        """(log-lambda ratio, separation, redshift) binnings of the input measurements."""
        if self.dll2 == 0:
            ll_bins = UniformBinning(self.minll, self.minll + self.nll * self.dll, self.nll)
        else:
            ll_bins = NonUniformSampling(two_step_sampling(self.nll, self.minll, self.dll, self.dll2))
        sep_bins = UniformBinning(self.minsep, self.minsep + self.nsep * self.dsep, self.nsep)
        z_bins = UniformSampling(self.minz + 0.5 * self.dz, self.minz + (self.nz - 0.5) * self.dz, self.nz)
        return ll_bins, sep_bins, z_bins

    def build_prototype(self, cosmology):
        """Empty `QuasarCorrelationData` with this binning, cuts and clamps."""
        from .data.correlation import QuasarCorrelationData

        prototype = QuasarCorrelationData(
            self.build_axes(), cosmology,
            r_min=self.rmin, r_max=self.rmax, ll_min=self.ll_min,
            fix_cov=self.fix_cov,
            fix_cov_params={"k1": self.fix_cov_k1, "k2": self.fix_cov_k2, "c": self.fix_cov_c},
        )
        prototype.zero_variance = self.zero_variance
        prototype.zero_precision = self.zero_precision
        return prototype

    def loader_options(self) -> Dict[str, bool]:
        """Keyword arguments for `load_cosmolib`."""
        return {
            "icov": self.icov,
            "weighted": self.weighted,
            "negate_icov": self.negate_icov,
            "check_pos_def": self.check_pos_def,
            "compress": self.compress,
        }

    def make_rng(self) -> PRNG:
        return np.random.default_rng(self.random_seed)


_BOOLEAN_STATES = configparser.ConfigParser.BOOLEAN_STATES


def _convert(name: str, value: Any, type_name: Any) -> Any:
    """Convert a raw (usually string) value to the type of field `name`."""
    type_name = getattr(type_name, "__name__", type_name)
    try:
        if type_name == "bool":
            if isinstance(value, str):
                key = value.strip().lower()
                if key not in _BOOLEAN_STATES:
                    raise ValueError(f"not a boolean: {value!r}")
                return _BOOLEAN_STATES[key]
            return bool(value)
        if type_name == "int":
            if isinstance(value, str):
                return int(value.strip())
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(f"not an integer: {value!r}")
            return int(value)
        if type_name == "float":
            return float(value)
        return str(value).strip()
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {value!r}") from e
