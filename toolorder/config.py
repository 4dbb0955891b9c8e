"""
Print, object and region configuration records.

Filament and extruder ids coming from the configuration are one-based, as a
user sees them. Everything handed out of the engine is zero-based; the
conversion happens in ``ToolOrdering``.
"""

import math
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Dict, List, Tuple

import numpy as np

from .errors import ConfigurationInconsistent
from .utils import DEFAULT_GROUP_CAPACITY


class FilamentMapMode(str, Enum):
    AUTO = 'auto'
    MANUAL = 'manual'


class TimelapseType(str, Enum):
    TRADITIONAL = 'traditional'
    SMOOTH = 'smooth'


class PrintSequence(str, Enum):
    BY_LAYER = 'by_layer'
    BY_OBJECT = 'by_object'


# Nozzle hardness in HRC by nozzle type.
NOZZLE_HRC = {
    'undefine': 0,
    'brass': 2,
    'stainless_steel': 20,
    'hardened_steel': 55,
}

# (first layer, last layer) -> filament order, all one-based
LayerPrintSequence = Tuple[Tuple[int, int], List[int]]

_ENUM_FIELDS = {
    'filament_map_mode': FilamentMapMode,
    'timelapse_type': TimelapseType,
    'print_sequence': PrintSequence,
}


def _from_dict(cls, data):
    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in data.items():
        if key not in known:
            continue
        if key in _ENUM_FIELDS:
            value = _ENUM_FIELDS[key](value)
        kwargs[key] = value
    return cls(**kwargs)


def get_hrc_by_nozzle_type(nozzle_type: str) -> int:
    return NOZZLE_HRC.get(nozzle_type, 0)


def get_extruder_ams_count(values: List[str]) -> List[Dict[int, int]]:
    """
    Parse per-extruder feed slot descriptions.

    Each string looks like ``"4#1|1#0"``: one AMS with four slots and no single
    slot unit. Returns one ``{slots: count}`` dict per extruder.
    """
    result = []
    for value in values:
        counts = {}
        for item in filter(None, (part.strip() for part in value.split('|'))):
            try:
                slots, count = item.split('#')
                counts[int(slots)] = counts.get(int(slots), 0) + int(count)
            except ValueError:
                raise ConfigurationInconsistent(f"Invalid extruder_ams_count entry {item!r}")
        result.append(counts)
    return result


def get_other_layers_print_sequence(sequence_nums: int, sequence: List[int]) -> List[LayerPrintSequence]:
    """Split the flattened ``[begin, end, f1, f2, ...]`` blocks into layer ranges."""
    if sequence_nums <= 0 or not sequence:
        return []
    item_nums = len(sequence) // sequence_nums
    if item_nums <= 2 or item_nums * sequence_nums != len(sequence):
        raise ConfigurationInconsistent(
            f"other_layers_print_sequence of length {len(sequence)} does not split into {sequence_nums} ranges")
    result = []
    for i in range(sequence_nums):
        item = sequence[i * item_nums:(i + 1) * item_nums]
        result.append(((item[0], item[1]), list(item[2:])))
    return result


@dataclass
class RegionConfig:
    wall_filament: int = 1
    sparse_infill_filament: int = 1
    solid_infill_filament: int = 1

    @classmethod
    def from_dict(cls, data: dict) -> 'RegionConfig':
        return _from_dict(cls, data)


@dataclass
class ObjectConfig:
    layer_height: float = 0.2
    line_width: float = 0.42
    support_filament: int = 0  # 0 = auto-select, print with whatever is loaded
    support_interface_filament: int = 0
    flush_into_objects: bool = False
    flush_into_infill: bool = False
    flush_into_support: bool = True
    support_interface_not_for_body: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> 'ObjectConfig':
        return _from_dict(cls, data)


@dataclass
class PrintConfig:
    # per nozzle
    nozzle_diameter: List[float] = field(default_factory=lambda: [0.4])
    max_layer_height: List[float] = field(default_factory=list)
    nozzle_type: List[str] = field(default_factory=list)
    flush_multiplier: List[float] = field(default_factory=list)
    extruder_ams_count: List[str] = field(default_factory=list)
    extruder_printable_area: List[List[List[float]]] = field(default_factory=list)
    master_extruder_id: int = 1

    # per filament
    filament_type: List[str] = field(default_factory=lambda: ['PLA'])
    filament_colour: List[str] = field(default_factory=lambda: ['#FFFFFF'])
    filament_density: List[float] = field(default_factory=list)
    filament_soluble: List[bool] = field(default_factory=list)
    filament_is_support: List[bool] = field(default_factory=list)
    required_nozzle_hrc: List[int] = field(default_factory=list)
    flush_volumes_matrix: List[float] = field(default_factory=list)

    filament_map_mode: FilamentMapMode = FilamentMapMode.AUTO
    filament_map: List[int] = field(default_factory=list)

    first_layer_print_sequence: List[int] = field(default_factory=list)
    other_layers_print_sequence: List[int] = field(default_factory=list)
    other_layers_print_sequence_nums: int = 0

    enable_prime_tower: bool = True
    timelapse_type: TimelapseType = TimelapseType.TRADITIONAL
    is_infill_first: bool = False
    print_sequence: PrintSequence = PrintSequence.BY_LAYER
    initial_layer_line_width: float = 0.5

    def __post_init__(self):
        n = self.filament_count
        defaults = {
            'filament_density': 1.24,
            'filament_soluble': False,
            'filament_is_support': False,
            'required_nozzle_hrc': 0,
        }
        for name, default in defaults.items():
            values = getattr(self, name)
            if not values:
                setattr(self, name, [default] * n)
            elif len(values) != n:
                raise ConfigurationInconsistent(f"{name} has {len(values)} entries, expected {n}")
        if len(self.filament_type) != n:
            raise ConfigurationInconsistent(f"filament_type has {len(self.filament_type)} entries, expected {n}")

        m = self.extruder_count
        if not self.nozzle_type:
            self.nozzle_type = ['undefine'] * m
        if not self.flush_multiplier:
            self.flush_multiplier = [1.0] * m
        if not self.max_layer_height:
            self.max_layer_height = [0.0] * m
        if not self.filament_map:
            self.filament_map = [1] * n

    @classmethod
    def from_dict(cls, data: dict) -> 'PrintConfig':
        return _from_dict(cls, data)

    @property
    def filament_count(self) -> int:
        return len(self.filament_colour)

    @property
    def extruder_count(self) -> int:
        return len(self.nozzle_diameter)

    @property
    def master_extruder(self) -> int:
        """Zero-based master extruder index."""
        return self.master_extruder_id - 1

    def other_layers_sequences(self) -> List[LayerPrintSequence]:
        return get_other_layers_print_sequence(self.other_layers_print_sequence_nums,
                                               self.other_layers_print_sequence)


def calc_max_layer_height(config: PrintConfig, max_object_layer_height: float) -> float:
    """Smallest allowed layer height over all nozzles, but never below the object's own."""
    max_layer_height = math.inf
    for nozzle_diameter, mlh in zip(config.nozzle_diameter, config.max_layer_height):
        if mlh == 0.:
            mlh = 0.75 * nozzle_diameter
        max_layer_height = min(max_layer_height, mlh)
    return max(max_layer_height, max_object_layer_height)


def build_flush_matrices(config: PrintConfig) -> np.ndarray:
    """
    Build the per-nozzle flush volume matrices.

    Returns:
        Array of shape (nozzles, filaments, filaments); entry [n, a, b] is the
        volume purged on nozzle n when switching from filament a to b.
    """
    n_nozzles = config.extruder_count
    n_filaments = config.filament_count
    values = np.asarray(config.flush_volumes_matrix, dtype=float)
    if values.size == 0:
        return np.zeros((n_nozzles, n_filaments, n_filaments))

    block = n_filaments * n_filaments
    if values.size == block and n_nozzles > 1:
        # one matrix shared by every nozzle
        values = np.tile(values, n_nozzles)
    if values.size != block * n_nozzles:
        raise ConfigurationInconsistent(
            f"flush_volumes_matrix has {values.size} values, expected {block * n_nozzles}")

    matrices = values.reshape(n_nozzles, n_filaments, n_filaments).copy()
    matrices *= np.asarray(config.flush_multiplier, dtype=float)[:, None, None]
    return matrices


def group_capacities(config: PrintConfig) -> List[int]:
    """Maximum number of filaments each extruder can hold."""
    capacities = [DEFAULT_GROUP_CAPACITY] * config.extruder_count
    ams_counts = get_extruder_ams_count(config.extruder_ams_count)
    if not ams_counts:
        return capacities
    if len(ams_counts) != config.extruder_count:
        raise ConfigurationInconsistent(
            f"extruder_ams_count describes {len(ams_counts)} extruders, expected {config.extruder_count}")
    for idx, counts in enumerate(ams_counts):
        size = sum(slots * count for slots, count in counts.items())
        # Without any feed slot only the external spool can be used.
        capacities[idx] = size if size > 0 else 1
    return capacities
