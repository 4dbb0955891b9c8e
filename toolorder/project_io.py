"""
JSON job files.

A job holds the print configuration, the sliced objects and the plate's custom
G-code timeline::

    {
      "config": {"nozzle_diameter": [0.4, 0.4], "filament_colour": ["#FF0000", ...], ...},
      "objects": [{
        "id": 1,
        "config": {"layer_height": 0.2, "flush_into_infill": true},
        "instances": 1,
        "layers": [{
          "print_z": 0.2, "height": 0.2,
          "regions": [{
            "region": {"wall_filament": 1, "sparse_infill_filament": 2},
            "perimeters": [[{"role": "external_perimeter", "volume": 12.5}]],
            "fills": [[{"role": "internal_infill", "volume": 30.0}]],
            "islands": [[[0, 0], [20, 0], [20, 20], [0, 20]]]
          }]
        }],
        "support_layers": [{"print_z": 0.2, "height": 0.2, "fills": [{"role": "support_material", "volume": 3.0}]}]
      }],
      "custom_gcodes": {"mode": "multi_extruder", "gcodes": [{"print_z": 5.0, "type": "color_change", "extruder": 2}]},
      "extruder_filament_colours": [["#FF0000"], ["#00FF00"]],
      "unprintable_filament_ids": [[], [3]]
    }
"""

import json
from typing import List

from shapely.geometry import Polygon

from .config import ObjectConfig, PrintConfig, RegionConfig
from .errors import ConfigurationInconsistent
from .log_utils import get_logger
from .model import (CustomGCodeInfo, CustomGCodeItem, CustomGCodeMode, CustomGCodeType, ExtrusionCollection,
                    ExtrusionEntity, ExtrusionRole, Layer, LayerRegion, Print, PrintObject, SupportLayer)
from .tool_ordering import FilamentChangeMode, ToolOrdering

logger = get_logger(__name__)


def _entities(data) -> List[ExtrusionEntity]:
    return [ExtrusionEntity(role=ExtrusionRole(e['role']), volume=float(e.get('volume', 0.0))) for e in data]


def _island(data) -> Polygon:
    if isinstance(data, dict):
        return Polygon(data['contour'], data.get('holes', []))
    return Polygon(data)


def _layer_region(data) -> LayerRegion:
    return LayerRegion(
        region=RegionConfig.from_dict(data.get('region', {})),
        perimeters=[ExtrusionCollection(_entities(c)) for c in data.get('perimeters', [])],
        fills=[ExtrusionCollection(_entities(c)) for c in data.get('fills', [])],
        raw_slices=[_island(i) for i in data.get('islands', [])],
    )


def _print_object(data, default_id: int) -> PrintObject:
    return PrintObject(
        id=int(data.get('id', default_id)),
        config=ObjectConfig.from_dict(data.get('config', {})),
        layers=[Layer(print_z=float(l['print_z']), height=float(l.get('height', 0.0)),
                      regions=[_layer_region(r) for r in l.get('regions', [])])
                for l in data.get('layers', [])],
        support_layers=[SupportLayer(print_z=float(l['print_z']), height=float(l.get('height', 0.0)),
                                     support_fills=ExtrusionCollection(_entities(l.get('fills', []))))
                        for l in data.get('support_layers', [])],
        instances=int(data.get('instances', 1)),
    )


def _custom_gcodes(data) -> CustomGCodeInfo:
    return CustomGCodeInfo(
        mode=CustomGCodeMode(data.get('mode', CustomGCodeMode.SINGLE_EXTRUDER.value)),
        gcodes=[CustomGCodeItem(print_z=float(g['print_z']), type=CustomGCodeType(g['type']),
                                extruder=int(g.get('extruder', 0)), color=g.get('color', ''),
                                extra=g.get('extra', ''))
                for g in data.get('gcodes', [])],
    )


class ProjectIO:
    """Load jobs from JSON and turn tool orderings back into plain data."""

    def __init__(self):
        self.last_loaded_path = None

    def load_project(self, content: str) -> Print:
        try:
            project = json.loads(content)
            print_ = Print(
                config=PrintConfig.from_dict(project.get('config', {})),
                objects=[_print_object(o, idx + 1) for idx, o in enumerate(project.get('objects', []))],
                custom_gcodes=_custom_gcodes(project.get('custom_gcodes', {})),
                extruder_filament_colours=project.get('extruder_filament_colours', []),
                unprintable_filament_ids=project.get('unprintable_filament_ids'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationInconsistent(f"Invalid job: {e}") from e
        logger.info(f"Loaded job with {len(print_.objects)} objects and {print_.config.filament_count} filaments")
        return print_

    def load_file(self, path: str) -> Print:
        with open(path, 'r') as f:
            content = f.read()
        print_ = self.load_project(content)
        self.last_loaded_path = path
        return print_

    @staticmethod
    def plan_to_dict(ordering: ToolOrdering) -> dict:
        """Per-layer plan, filament map and statistics of a ``ToolOrdering``."""
        layers = []
        for lt in ordering.layer_tools:
            layers.append({
                'print_z': round(lt.print_z, 6),
                'extruders': list(lt.extruders),
                'wipe_tower_partitions': lt.wipe_tower_partitions,
                'wipe_tower_layer_height': round(lt.wipe_tower_layer_height, 6),
                'has_wipe_tower': lt.has_wipe_tower,
                'has_object': lt.has_object,
                'has_support': lt.has_support,
                'has_skirt': lt.has_skirt,
                'custom_gcode': None if lt.custom_gcode is None else {
                    'print_z': lt.custom_gcode.print_z,
                    'type': lt.custom_gcode.type.value,
                    'extruder': lt.custom_gcode.extruder,
                },
            })
        stats = {}
        for mode in FilamentChangeMode:
            s = ordering.get_filament_change_stats(mode)
            stats[mode.value] = {'filament_change_count': s.filament_change_count,
                                 'filament_flush_weight': s.filament_flush_weight}
        return {
            'filament_maps': list(ordering.filament_maps),
            'first_printing_extruder': ordering.first_printing_extruder,
            'last_printing_extruder': ordering.last_printing_extruder,
            'all_printing_extruders': list(ordering.all_printing_extruders),
            'layers': layers,
            'stats': stats,
            'warnings': [str(w) for w in ordering.warnings],
        }

    def dump_plan(self, ordering: ToolOrdering) -> str:
        return json.dumps(self.plan_to_dict(ordering), indent=2)
