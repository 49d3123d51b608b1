"""
Bin policy configuration and validation.

Two layers:

* :class:`BinningConfig` holds raw, user-supplied values (byte counts or
  strings such as ``"10 MB"``, seconds or strings such as ``"5 mins"``)
  and is checked by the pure :func:`validate_binning_config` function,
  which returns a list of problems instead of raising.
* :class:`BinPolicy` holds resolved numbers and is what
  :class:`~binflow.binning.manager.BinManager` consumes.
"""

import logging
import re
from typing import Callable, Iterable, List, Optional, Union

from pydantic import BaseModel

from binflow.config import BinningSettings
from binflow.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Data sizes and durations
# ---------------------------------------------------------------------------

_DATA_UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024 ** 2,
    "GB": 1024 ** 3,
    "TB": 1024 ** 4,
}

_DATA_SIZE_PATTERN = re.compile(
    r"^\s*(\d+(?:\.\d+)?)\s*(B|KB|MB|GB|TB)?\s*$", re.IGNORECASE
)

_TIME_UNITS = {
    "ns": 1e-9, "nano": 1e-9, "nanos": 1e-9, "nanosecond": 1e-9, "nanoseconds": 1e-9,
    "ms": 1e-3, "milli": 1e-3, "millis": 1e-3, "millisecond": 1e-3, "milliseconds": 1e-3,
    "s": 1.0, "sec": 1.0, "secs": 1.0, "second": 1.0, "seconds": 1.0,
    "m": 60.0, "min": 60.0, "mins": 60.0, "minute": 60.0, "minutes": 60.0,
    "h": 3600.0, "hr": 3600.0, "hrs": 3600.0, "hour": 3600.0, "hours": 3600.0,
    "d": 86400.0, "day": 86400.0, "days": 86400.0,
    "w": 604800.0, "wk": 604800.0, "wks": 604800.0, "week": 604800.0, "weeks": 604800.0,
}

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]+)?\s*$")

MIN_BIN_AGE_SECONDS = 1.0


def parse_data_size(value: Union[int, str]) -> int:
    """Convert a byte count or a ``"<number> <unit>"`` string to bytes.

    Units are binary multiples: ``KB`` is 1024 bytes.  A bare number is
    read as bytes.

    Raises:
        ValueError: If the value is negative or not in a supported format.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid data size: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Data size cannot be negative: {value}")
        return value
    match = _DATA_SIZE_PATTERN.match(str(value))
    if match is None:
        raise ValueError(f"Invalid data size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _DATA_UNITS[(unit or "B").upper()])


def parse_duration(value: Union[float, int, str]) -> float:
    """Convert seconds or a ``"<number> <unit>"`` string to seconds.

    Raises:
        ValueError: If the value is negative, the unit is unknown, or the
            format is not supported.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration cannot be negative: {value}")
        return float(value)
    match = _DURATION_PATTERN.match(str(value))
    if match is None:
        raise ValueError(f"Invalid duration: {value!r}")
    number, unit = match.groups()
    multiplier = _TIME_UNITS.get((unit or "s").lower())
    if multiplier is None:
        raise ValueError(f"Unknown time unit in duration: {value!r}")
    return float(number) * multiplier


# ---------------------------------------------------------------------------
# Raw configuration and validation
# ---------------------------------------------------------------------------


class BinningConfig(BaseModel):
    """User-facing binning configuration.

    Values are loose; :func:`validate_binning_config` reports
    every problem at once.

    Attributes:
        min_size: Minimum bundle size (bytes or data-size string).
        max_size: Maximum bundle size; ``None`` means unbounded.
        min_entries: Minimum number of items per bin.
        max_entries: Maximum number of items per bin; ``None`` means
            unbounded.
        max_bin_count: Maximum number of bins open at any one time.
        max_bin_age: Age after which a bin is complete (seconds or
            duration string); ``None`` means bins never age out.
    """

    min_size: Union[int, str] = "0 B"
    max_size: Optional[Union[int, str]] = None
    min_entries: int = 1
    max_entries: Optional[int] = 1000
    max_bin_count: int = 5
    max_bin_age: Optional[Union[float, str]] = None

    @classmethod
    def from_settings(cls, settings: BinningSettings) -> "BinningConfig":
        """Build a config from the ``binning`` settings section."""
        return cls(
            min_size=settings.min_size,
            max_size=settings.max_size,
            min_entries=settings.min_entries,
            max_entries=settings.max_entries,
            max_bin_count=settings.max_bin_count,
            max_bin_age=settings.max_bin_age,
        )


class ValidationResult(BaseModel):
    """A single configuration problem.

    Attributes:
        subject: Name of the offending setting.
        input: The value as supplied.
        valid: Always ``False`` for reported problems.
        explanation: Human-readable reason.
    """

    subject: str
    input: Optional[str] = None
    valid: bool = False
    explanation: str

    def __str__(self) -> str:
        return f"'{self.subject}' is invalid because {self.explanation}"


AdditionalValidation = Callable[[BinningConfig], Iterable[ValidationResult]]


def validate_binning_config(
    config: BinningConfig,
    additional_validation: Optional[AdditionalValidation] = None,
) -> List[ValidationResult]:
    """Check a configuration and return every problem found.

    Args:
        config: The configuration to check.
        additional_validation: Optional hook returning extra problems
            for consumer-specific settings.

    Returns:
        List of problems; empty when the configuration is valid.
    """
    problems: List[ValidationResult] = []

    min_size: Optional[int] = None
    max_size: Optional[int] = None
    try:
        min_size = parse_data_size(config.min_size)
    except ValueError:
        problems.append(ValidationResult(
            subject="min_size",
            input=str(config.min_size),
            explanation=(
                "must be of format <data size> <data unit> where <data size> "
                "is a non-negative number and <data unit> is one of "
                "B, KB, MB, GB, TB"
            ),
        ))
    if config.max_size is not None:
        try:
            max_size = parse_data_size(config.max_size)
        except ValueError:
            problems.append(ValidationResult(
                subject="max_size",
                input=str(config.max_size),
                explanation=(
                    "must be of format <data size> <data unit> where <data size> "
                    "is a non-negative number and <data unit> is one of "
                    "B, KB, MB, GB, TB"
                ),
            ))
    if min_size is not None and max_size is not None and max_size < min_size:
        problems.append(ValidationResult(
            subject="max_size",
            input=str(config.max_size),
            explanation="max_size cannot be smaller than min_size",
        ))

    if config.min_entries <= 0:
        problems.append(ValidationResult(
            subject="min_entries",
            input=str(config.min_entries),
            explanation="min_entries cannot be negative or zero",
        ))
    if config.max_entries is not None:
        if config.max_entries <= 0:
            problems.append(ValidationResult(
                subject="max_entries",
                input=str(config.max_entries),
                explanation="max_entries cannot be negative or zero",
            ))
        if config.max_entries < config.min_entries:
            problems.append(ValidationResult(
                subject="max_entries",
                input=str(config.max_entries),
                explanation="max_entries cannot be smaller than min_entries",
            ))

    if config.max_bin_count <= 0:
        problems.append(ValidationResult(
            subject="max_bin_count",
            input=str(config.max_bin_count),
            explanation="max_bin_count cannot be negative or zero",
        ))

    if config.max_bin_age is not None:
        try:
            age = parse_duration(config.max_bin_age)
        except ValueError:
            problems.append(ValidationResult(
                subject="max_bin_age",
                input=str(config.max_bin_age),
                explanation=(
                    "must be of format <duration> <time unit> where <duration> "
                    "is a non-negative number and <time unit> is one of "
                    "nanos, millis, secs, mins, hrs, days, weeks"
                ),
            ))
        else:
            if age < MIN_BIN_AGE_SECONDS:
                problems.append(ValidationResult(
                    subject="max_bin_age",
                    input=str(config.max_bin_age),
                    explanation="max_bin_age must be at least 1 second",
                ))

    if additional_validation is not None:
        problems.extend(additional_validation(config))

    return problems


# ---------------------------------------------------------------------------
# Resolved policy
# ---------------------------------------------------------------------------


class BinPolicy(BaseModel):
    """Resolved thresholds consumed by the bin manager.

    ``None`` for ``max_size``, ``max_entries`` or ``max_bin_age`` means
    unbounded.

    Attributes:
        min_size: Minimum bin size in bytes.
        max_size: Maximum bin size in bytes.
        min_entries: Minimum items per bin.
        max_entries: Maximum items per bin.
        max_bin_count: Maximum open bins.
        max_bin_age: Maximum bin age in seconds.
    """

    model_config = {"frozen": True}

    min_size: int = 0
    max_size: Optional[int] = None
    min_entries: int = 1
    max_entries: Optional[int] = 1000
    max_bin_count: int = 5
    max_bin_age: Optional[float] = None

    @classmethod
    def from_config(
        cls,
        config: BinningConfig,
        additional_validation: Optional[AdditionalValidation] = None,
    ) -> "BinPolicy":
        """Validate *config* and resolve it into a policy.

        Raises:
            ConfigurationError: Listing every validation problem.
        """
        problems = validate_binning_config(config, additional_validation)
        if problems:
            logger.error(
                "Binning configuration rejected",
                extra={"problems": [str(p) for p in problems]},
            )
            raise ConfigurationError(
                "Invalid binning configuration: "
                + "; ".join(str(p) for p in problems)
            )
        return cls(
            min_size=parse_data_size(config.min_size),
            max_size=(
                parse_data_size(config.max_size)
                if config.max_size is not None else None
            ),
            min_entries=config.min_entries,
            max_entries=config.max_entries,
            max_bin_count=config.max_bin_count,
            max_bin_age=(
                parse_duration(config.max_bin_age)
                if config.max_bin_age is not None else None
            ),
        )

    @classmethod
    def from_settings(cls, settings: BinningSettings) -> "BinPolicy":
        """Validate and resolve the ``binning`` settings section."""
        return cls.from_config(BinningConfig.from_settings(settings))

    def inconsistencies(self) -> List[str]:
        """Describe bounds that contradict each other (empty if none)."""
        issues: List[str] = []
        if self.max_size is not None and self.max_size < self.min_size:
            issues.append(f"max_size {self.max_size} < min_size {self.min_size}")
        if self.max_entries is not None and self.max_entries < self.min_entries:
            issues.append(
                f"max_entries {self.max_entries} < min_entries {self.min_entries}"
            )
        if self.max_entries is not None and self.max_entries <= 0:
            issues.append(f"max_entries {self.max_entries} is not positive")
        if self.max_bin_count <= 0:
            issues.append(f"max_bin_count {self.max_bin_count} is not positive")
        return issues
