"""Error taxonomy of the tool ordering engine."""


class ToolOrderingError(Exception):
    """Base class for fatal tool ordering errors."""


class GroupingInfeasible(ToolOrderingError):
    """No filament to extruder assignment satisfies the hard constraints."""


class ConfigurationInconsistent(ToolOrderingError):
    """User supplied configuration (e.g. a manual filament map) is invalid."""


class EmptyFirstLayer(UserWarning):
    """The first layer prints nothing, so no skirt is generated."""
