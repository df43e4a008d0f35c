"""
Options of a bundle adjustment run.

Options are a validated dataclass; they can also be built from a dict or a
YAML file, using either the snake_case field names or the CamelCase names
(MaxIterations, AbsoluteTolerance, ...).
"""

import logging
import math
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, FrozenSet, Hashable, Optional, Union

import yaml

logger = logging.getLogger(__name__)

CAMEL_CASE_ALIASES = {
    'MaxIterations': 'max_iterations',
    'AbsoluteTolerance': 'absolute_tolerance',
    'RelativeTolerance': 'relative_tolerance',
    'FixedViewIDs': 'fixed_view_ids',
    'FixedViewIds': 'fixed_view_ids',
    'PointsUndistorted': 'points_are_undistorted',
    'Verbose': 'verbose',
    'FixFirstPose': 'fix_first_pose',
    'GradientTolerance': 'gradient_tolerance',
    'StepTolerance': 'step_tolerance',
    'InitialDampingScale': 'initial_damping_scale',
    'MaxConditionNumber': 'max_condition_number',
}


@dataclass
class BundleAdjustmentOptions:
    """Configuration of one bundle adjustment run."""
    max_iterations: int = 50
    absolute_tolerance: float = 1.0  # mean squared reprojection error, pixels^2
    relative_tolerance: float = 1e-5
    fixed_view_ids: FrozenSet[Hashable] = field(default_factory=frozenset)
    points_are_undistorted: bool = False
    verbose: bool = False
    fix_first_pose: bool = False

    # Internal thresholds
    gradient_tolerance: float = 1e-12
    step_tolerance: float = 1e-12
    initial_damping_scale: float = 1e-3
    max_condition_number: Optional[float] = None  # None disables the check

    def __post_init__(self) -> None:
        """Validate configuration."""
        if isinstance(self.max_iterations, bool) or int(self.max_iterations) != self.max_iterations:
            raise ValueError(f"max_iterations must be an integer, got {self.max_iterations!r}")
        self.max_iterations = int(self.max_iterations)
        if self.max_iterations < 0:
            raise ValueError("max_iterations must be non-negative")

        for name in ('absolute_tolerance', 'relative_tolerance', 'gradient_tolerance', 'step_tolerance'):
            value = float(getattr(self, name))
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be a finite non-negative number, got {value}")
            setattr(self, name, value)

        self.initial_damping_scale = float(self.initial_damping_scale)
        if not math.isfinite(self.initial_damping_scale) or self.initial_damping_scale <= 0:
            raise ValueError("initial_damping_scale must be positive")

        if self.max_condition_number is not None:
            self.max_condition_number = float(self.max_condition_number)
            if not self.max_condition_number > 0:
                raise ValueError("max_condition_number must be positive or None")

        if self.fixed_view_ids is None:
            self.fixed_view_ids = frozenset()
        elif isinstance(self.fixed_view_ids, (str, bytes)) or not hasattr(self.fixed_view_ids, '__iter__'):
            self.fixed_view_ids = frozenset([self.fixed_view_ids])
        else:
            self.fixed_view_ids = frozenset(self.fixed_view_ids)

        self.points_are_undistorted = bool(self.points_are_undistorted)
        self.verbose = bool(self.verbose)
        self.fix_first_pose = bool(self.fix_first_pose)

    @classmethod
    def from_dict(cls, values: Optional[Dict[str, Any]]) -> 'BundleAdjustmentOptions':
        """Build options from a dict of snake_case or CamelCase keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (values or {}).items():
            name = CAMEL_CASE_ALIASES.get(key, key)
            if name not in known:
                raise ValueError(f"Unknown bundle adjustment option: {key}")
            if name in kwargs:
                raise ValueError(f"Option {name} given more than once")
            kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        values = asdict(self)
        values['fixed_view_ids'] = _sorted_ids(self.fixed_view_ids)
        return values

    def with_overrides(self, **overrides) -> 'BundleAdjustmentOptions':
        """Copy with some fields replaced; CamelCase names are accepted."""
        if not overrides:
            return self
        merged = self.to_dict()
        merged.update({CAMEL_CASE_ALIASES.get(key, key): value for key, value in overrides.items()})
        return type(self).from_dict(merged)


def _sorted_ids(view_ids):
    try:
        return sorted(view_ids)
    except TypeError:
        return sorted(view_ids, key=repr)


def load_options(path: Union[str, Path]) -> BundleAdjustmentOptions:
    """Load options from a YAML file. An empty file gives the defaults."""
    path = Path(path)
    with open(path, 'r') as f:
        values = yaml.safe_load(f) or {}
    if not isinstance(values, dict):
        raise ValueError(f"Expected a mapping of options in {path}")
    logger.debug("Loaded bundle adjustment options from %s", path)
    return BundleAdjustmentOptions.from_dict(values)


def save_options(options: BundleAdjustmentOptions, path: Union[str, Path]) -> None:
    """Write options to a YAML file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        yaml.safe_dump(options.to_dict(), f, default_flow_style=False, sort_keys=False)
    logger.debug("Saved bundle adjustment options to %s", path)
