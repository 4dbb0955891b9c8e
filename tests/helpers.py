from typing import List, Optional, Sequence

from shapely.geometry import box

from toolorder.config import ObjectConfig, PrintConfig, RegionConfig
from toolorder.model import (ExtrusionCollection, ExtrusionEntity, ExtrusionRole, Layer, LayerRegion, Print,
                             PrintObject, SupportLayer)

COLOURS = ['#FF0000', '#00FF00', '#0000FF', '#FFFF00', '#FF00FF', '#00FFFF', '#000000', '#FFFFFF']


def uniform_flush(n_filaments: int, volume: float = 100.0) -> List[float]:
    """Flattened flush matrix with ``volume`` between any two distinct filaments."""
    return [0.0 if a == b else volume for a in range(n_filaments) for b in range(n_filaments)]


def make_config(n_filaments: int = 2, n_extruders: int = 1, **kwargs) -> PrintConfig:
    values = dict(
        nozzle_diameter=[0.4] * n_extruders,
        filament_colour=[COLOURS[i % len(COLOURS)] for i in range(n_filaments)],
        filament_type=['PLA'] * n_filaments,
    )
    values.update(kwargs)
    return PrintConfig(**values)


def make_region(filament: int, sparse: Optional[int] = None, island_size: float = 10.0, offset: float = 0.0,
                infill_role: ExtrusionRole = ExtrusionRole.INTERNAL_INFILL, infill_volume: float = 20.0,
                perimeter_volume: float = 10.0) -> LayerRegion:
    return LayerRegion(
        region=RegionConfig(wall_filament=filament,
                            sparse_infill_filament=sparse or filament,
                            solid_infill_filament=sparse or filament),
        perimeters=[ExtrusionCollection([ExtrusionEntity(ExtrusionRole.PERIMETER, perimeter_volume)])],
        fills=[ExtrusionCollection([ExtrusionEntity(infill_role, infill_volume)])],
        raw_slices=[box(offset, 0.0, offset + island_size, island_size)],
    )


def make_layer(print_z: float, filaments: Sequence[int], height: float = 0.2,
               island_sizes: Optional[Sequence[float]] = None) -> Layer:
    """Layer with one region per one-based filament, islands side by side."""
    regions = []
    for idx, filament in enumerate(filaments):
        size = island_sizes[idx] if island_sizes else 10.0
        regions.append(make_region(filament, island_size=size, offset=idx * 30.0))
    return Layer(print_z=print_z, height=height, regions=regions)


def make_object(obj_id: int, layer_filaments: Sequence[Sequence[int]], layer_height: float = 0.2,
                config: Optional[ObjectConfig] = None, **kwargs) -> PrintObject:
    layers = [make_layer(round((i + 1) * layer_height, 6), filaments, layer_height)
              for i, filaments in enumerate(layer_filaments)]
    return PrintObject(id=obj_id, config=config or ObjectConfig(layer_height=layer_height), layers=layers, **kwargs)


def support_layer(print_z: float, role: ExtrusionRole = ExtrusionRole.SUPPORT_MATERIAL,
                  volume: float = 5.0, height: float = 0.2) -> SupportLayer:
    return SupportLayer(print_z=print_z, height=height,
                        support_fills=ExtrusionCollection([ExtrusionEntity(role, volume)]))


def make_print(config: PrintConfig, objects: Sequence[PrintObject], **kwargs) -> Print:
    return Print(config=config, objects=list(objects), **kwargs)
