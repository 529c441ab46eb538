from __future__ import annotations


class FleetError(Exception):
    pass


class ValidationError(FleetError):
    """Malformed project; raised before any resource is touched."""


class ResolutionError(FleetError):
    """A service's artifact could not be found, pulled, built or packaged."""


class AdapterError(FleetError):
    """A platform, network or catalog driver call failed."""


class StreamError(FleetError):
    """Reading an instance's state-change stream failed."""


class StreamEndedOnNonEvent(StreamError):
    """The stream closed without delivering a state-bearing event."""
