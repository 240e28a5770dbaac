"""Time-varying inputs: demand and split-ratio profiles.

A *profile* is either a constant, a sequence sampled on a fixed interval or a
callable.  Profiles are piecewise constant: the value of sample ``k`` holds
on ``[start_time + k * dt, start_time + (k + 1) * dt)`` and the last sample
holds forever after the end of a sequence.

UNIT CONVENTIONS
----------------
Demand profiles return vehicles per *second*.  A profile that returns
veh/h by mistake inflates the demand by a factor of 3600; the constructor of
:class:`DemandProfile` warns when a sample looks like veh/h.
"""

from __future__ import annotations

import inspect
import math
import warnings
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional, Sequence, Union

from .errors import ConfigurationError

NumberLike = Union[float, int]
Profile = Union[
    NumberLike,
    Sequence[NumberLike],
    Callable[..., NumberLike],
]

_SECONDS_PARAM_NAMES = {"t_s", "time_s", "time_seconds", "seconds", "t"}
_HOURS_PARAM_NAMES = {"t_h", "time_h", "time_hours", "hours"}
_STEP_PARAM_NAMES = {"step", "k", "index", "iteration", "idx"}

# Largest plausible demand on a single link, veh/s (36000 veh/h).
_MAX_PLAUSIBLE_VPS = 10.0


def _get_profile_value(profile: Profile, step: int, dt_sec: float) -> float:
    """Return the value of a profile at sample ``step``.

    Parameters
    ----------
    profile:
        Either a constant (``int`` or ``float``), a sequence indexed by the
        sample number, or a callable.  Callables may accept the time (in
        seconds or hours) or the sample index; the first positional parameter
        name decides which, and the sample index is used otherwise.
    step:
        Zero-based sample number.
    dt_sec:
        Sampling interval of the profile in seconds.

    Sequences return the element at ``step`` when available, otherwise the
    last element (hold-last behaviour).
    """
    if callable(profile):  # type: ignore[arg-type]
        time_seconds = step * dt_sec
        time_hours = time_seconds / 3600.0

        try:
            signature = inspect.signature(profile)
        except (TypeError, ValueError):
            signature = None

        if signature is not None:
            positional = [
                parameter
                for parameter in signature.parameters.values()
                if parameter.kind
                   in (
                       inspect.Parameter.POSITIONAL_ONLY,
                       inspect.Parameter.POSITIONAL_OR_KEYWORD,
                   )
            ]
            if positional:
                param_name = positional[0].name
                if param_name in _SECONDS_PARAM_NAMES:
                    return float(profile(time_seconds))
                if param_name in _HOURS_PARAM_NAMES:
                    return float(profile(time_hours))
        return float(profile(step))
    if isinstance(profile, Sequence):  # type: ignore[arg-type]
        if not profile:
            raise ValueError("Profile sequences cannot be empty.")
        if step < len(profile):
            return float(profile[step])
        return float(profile[-1])
    return float(profile)


def _sample_index(time_sec: float, start_time: float, dt: Optional[float]) -> int:
    if dt is None or dt <= 0:
        return 0
    # Small epsilon so that t = start + k*dt lands on sample k despite rounding.
    return max(0, int(math.floor((time_sec - start_time) / dt + 1e-9)))


@dataclass
class DemandProfile:
    """Arrival-rate curve of one commodity entering at one source link.

    Fields
    ------
    commodity_id, link_id:
        Commodity and source link of the demand.
    profile:
        Arrival rate in veh/s (constant, sequence or callable).
    dt:
        Sampling interval of a sequence/callable profile in seconds.  ``None``
        means the profile is constant.
    start_time:
        Time of the first sample.  Demand is zero before it.
    path_id:
        Path followed by the vehicles of a path-full commodity.
    """

    commodity_id: int
    link_id: int
    profile: Profile
    dt: Optional[float] = None
    start_time: float = 0.0
    path_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.dt is not None and self.dt <= 0:
            raise ValueError("Demand profile dt must be positive.")
        if self.start_time < 0:
            raise ValueError("Demand profile start_time cannot be negative.")
        self._diagnose_units()

    def _diagnose_units(self) -> None:
        """Warn if the first sample looks like veh/h instead of veh/s."""
        try:
            sample = _get_profile_value(self.profile, 0, self.dt or 0.0)
        except (TypeError, ValueError):
            return
        if sample > _MAX_PLAUSIBLE_VPS:
            warnings.warn(
                f"Demand profile for commodity {self.commodity_id} on link "
                f"{self.link_id} returns {sample:.1f} veh/s ({sample * 3600.0:.0f} veh/h).\n"
                f"Profiles are expected in veh/s; divide veh/h values by 3600.",
                UserWarning,
            )

    def get_value(self, time_sec: float) -> float:
        """Arrival rate (veh/s) at ``time_sec``; never negative."""
        if time_sec < self.start_time:
            return 0.0
        step = _sample_index(time_sec, self.start_time, self.dt)
        return max(0.0, _get_profile_value(self.profile, step, self.dt or 0.0))


@dataclass
class SplitProfile:
    """Turning proportions of one commodity leaving ``link_id``.

    ``outlink2profile`` maps a downstream link id to a profile of the
    (unnormalised) proportion of the commodity that takes it.
    """

    link_id: int
    commodity_id: int
    outlink2profile: Dict[int, Profile]
    dt: Optional[float] = None
    start_time: float = 0.0
    _warned: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.outlink2profile:
            raise ConfigurationError(
                "Split profile has no outlinks.",
                link_id=self.link_id,
                commodity_id=self.commodity_id,
            )
        if self.dt is not None and self.dt <= 0:
            raise ValueError("Split profile dt must be positive.")

    def get_splits(self, time_sec: float) -> Dict[int, float]:
        """Return the normalised outlink -> proportion mapping at ``time_sec``."""
        step = _sample_index(time_sec, self.start_time, self.dt)
        raw = {
            outlink_id: _get_profile_value(profile, step, self.dt or 0.0)
            for outlink_id, profile in sorted(self.outlink2profile.items())
        }
        return normalize_splits(raw, self.link_id, self.commodity_id, warn=not self._warned, owner=self)

    def may_be_positive(self, outlink_id: int) -> bool:
        """Whether any sample sends a share of the commodity to ``outlink_id``.

        Callables cannot be inspected ahead of time and always count as positive.
        """
        profile = self.outlink2profile.get(outlink_id)
        if profile is None:
            return False
        if callable(profile):
            return True
        if isinstance(profile, Sequence):
            return any(float(value) > 0 for value in profile)
        return float(profile) > 0


def normalize_splits(
        raw: Mapping[int, float],
        link_id: int,
        commodity_id: int,
        warn: bool = True,
        owner: Optional[SplitProfile] = None,
) -> Dict[int, float]:
    """Normalise split ratios so that they sum to one.

    Negative ratios and an all-zero split are configuration errors.
    """
    if any(value < 0 for value in raw.values()):
        raise ConfigurationError(
            "Split ratios cannot be negative.",
            link_id=link_id,
            commodity_id=commodity_id,
        )
    total = sum(raw.values())
    if total <= 0:
        raise ConfigurationError(
            "Split ratios sum to zero.",
            link_id=link_id,
            commodity_id=commodity_id,
        )
    if warn and abs(total - 1.0) > 1e-6:
        warnings.warn(
            f"Split ratios for commodity {commodity_id} on link {link_id} sum to "
            f"{total:.4f}; they are normalised to one.",
            UserWarning,
        )
        if owner is not None:
            owner._warned = True
    return {outlink_id: value / total for outlink_id, value in raw.items()}


__all__ = [
    "DemandProfile",
    "Profile",
    "SplitProfile",
    "normalize_splits",
]
