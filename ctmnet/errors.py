"""Error taxonomy of the flow-propagation engine.

Three kinds of failure exist and none of them is recoverable inside a step:

* :class:`ConfigurationError` - the scenario handed to the engine is
  inconsistent (for example a positive split ratio towards a link that cannot
  be reached).  Raised while the scenario is assembled or, at the latest, the
  first time the inconsistent data is used.
* :class:`InvariantViolation` - a numerical invariant broke during a step
  (negative vehicle counts, flow above supply).  This signals a defect in
  topology construction or in the allocator.
* :class:`UnimplementedFeatureError` - a recognised but unimplemented model
  or actuator variant was requested.
"""

from __future__ import annotations

from typing import Optional


class ConfigurationError(ValueError):
    """Inconsistent scenario configuration.

    The offending entity ids are kept as attributes so that callers can
    report them, and they are appended to the message.
    """

    def __init__(
            self,
            message: str,
            *,
            link_id: Optional[int] = None,
            outlink_id: Optional[int] = None,
            commodity_id: Optional[int] = None,
            subnetwork_id: Optional[int] = None,
    ) -> None:
        self.link_id = link_id
        self.outlink_id = outlink_id
        self.commodity_id = commodity_id
        self.subnetwork_id = subnetwork_id

        ids = [
            f"{name}={value}"
            for name, value in (
                ("link", link_id),
                ("outlink", outlink_id),
                ("commodity", commodity_id),
                ("subnetwork", subnetwork_id),
            )
            if value is not None
        ]
        if ids:
            message = f"{message} [{', '.join(ids)}]"
        super().__init__(message)


class InvariantViolation(RuntimeError):
    """A conservation or capacity invariant does not hold."""


class UnimplementedFeatureError(NotImplementedError):
    """A recognised feature that has no implementation."""

    def __init__(self, feature: str) -> None:
        self.feature = feature
        super().__init__(f"'{feature}' is recognised but not implemented.")


__all__ = [
    "ConfigurationError",
    "InvariantViolation",
    "UnimplementedFeatureError",
]
