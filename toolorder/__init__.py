"""
Tool Ordering Package

Plans which extruder prints which filament on every layer of a multi-material
print, and in which order.

Key features:
- Filament grouping: assigns filaments to physical nozzles for the least flush,
  honouring feed slot capacity, nozzle hardness, reachability and TPU rules
- Per-layer sequencing: orders each layer's filaments so that purging stays
  minimal and consecutive layers continue with the loaded filament
- Wipe tower and skirt planning, custom G-code placement
- Purging into infill, perimeters and support of the objects themselves
- Flush statistics for single-nozzle, automatic and manual grouping
"""

from .config import (
    FilamentMapMode,
    TimelapseType,
    PrintSequence,
    RegionConfig,
    ObjectConfig,
    PrintConfig,
    build_flush_matrices,
    group_capacities,
)

from .errors import (
    ToolOrderingError,
    GroupingInfeasible,
    ConfigurationInconsistent,
    EmptyFirstLayer,
)

from .model import (
    ExtrusionRole,
    ExtrusionEntity,
    ExtrusionCollection,
    LayerRegion,
    Layer,
    SupportLayer,
    PrintObject,
    CustomGCodeType,
    CustomGCodeMode,
    CustomGCodeItem,
    CustomGCodeInfo,
    Print,
)

from .layer_tools import LayerTools
from .wiping import WipingExtrusions
from .sequencer import FilamentChangeStats
from .tool_ordering import FilamentChangeMode, ToolOrdering
from .project_io import ProjectIO
from .log_utils import configure_logging, get_logger

__version__ = "1.0.0"
__all__ = [
    "FilamentMapMode",
    "TimelapseType",
    "PrintSequence",
    "RegionConfig",
    "ObjectConfig",
    "PrintConfig",
    "build_flush_matrices",
    "group_capacities",
    "ToolOrderingError",
    "GroupingInfeasible",
    "ConfigurationInconsistent",
    "EmptyFirstLayer",
    "ExtrusionRole",
    "ExtrusionEntity",
    "ExtrusionCollection",
    "LayerRegion",
    "Layer",
    "SupportLayer",
    "PrintObject",
    "CustomGCodeType",
    "CustomGCodeMode",
    "CustomGCodeItem",
    "CustomGCodeInfo",
    "Print",
    "LayerTools",
    "WipingExtrusions",
    "FilamentChangeStats",
    "FilamentChangeMode",
    "ToolOrdering",
    "ProjectIO",
    "configure_logging",
    "get_logger",
]
