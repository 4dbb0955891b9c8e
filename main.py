# macOS packaging support
import sys
from multiprocessing import freeze_support  # noqa
freeze_support()  # noqa

import logging
import multiprocessing
multiprocessing.set_start_method("spawn", force=True)

from toolorder import (FilamentChangeMode, PrintSequence, ProjectIO, ToolOrdering, ToolOrderingError,
                       configure_logging)

USAGE = "usage: python main.py -p <job.json> [--verbose] [--json]"


def print_plan(ordering: ToolOrdering) -> None:
    print(f"Filament map (zero-based extruder per filament): {ordering.filament_maps}")
    for lt in ordering.layer_tools:
        flags = ''.join(c for c, on in (('W', lt.has_wipe_tower), ('S', lt.has_skirt),
                                        ('O', lt.has_object), ('U', lt.has_support)) if on)
        line = f"z={lt.print_z:8.3f}  extruders={lt.extruders!s:16s} partitions={lt.wipe_tower_partitions} [{flags}]"
        if lt.custom_gcode is not None:
            line += f"  {lt.custom_gcode.type.value}"
        print(line)
    for mode in FilamentChangeMode:
        stats = ordering.get_filament_change_stats(mode)
        print(f"{mode.value:18s} changes={stats.filament_change_count:4d}  flush={stats.filament_flush_weight} g")
    for warning in ordering.warnings:
        print(f"warning: {warning}")


def main() -> int:
    if '-p' not in sys.argv and '--project' not in sys.argv:
        print(USAGE)
        return 2

    # define project with -p or --project
    project_index = sys.argv.index('-p') if '-p' in sys.argv else sys.argv.index('--project')
    if project_index + 1 >= len(sys.argv):
        print(USAGE)
        return 2
    project_path = sys.argv[project_index + 1]

    configure_logging(logging.DEBUG if '--verbose' in sys.argv else logging.INFO)

    project_io = ProjectIO()
    try:
        print_ = project_io.load_file(project_path)
        if print_.config.print_sequence == PrintSequence.BY_OBJECT:
            orderings = [ToolOrdering.for_object(obj) for obj in print_.objects]
        else:
            orderings = [ToolOrdering.for_print(print_)]
    except (OSError, ToolOrderingError) as e:
        print(f"Error planning {project_path}: {str(e)}")
        return 1

    for ordering in orderings:
        if '--json' in sys.argv:
            print(project_io.dump_plan(ordering))
        else:
            print_plan(ordering)
    return 0


if __name__ == '__main__':
    sys.exit(main())
