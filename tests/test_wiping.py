from toolorder.config import ObjectConfig
from toolorder.layer_tools import LayerTools
from toolorder.model import ExtrusionCollection, ExtrusionRole

from helpers import make_config, make_object, make_print, support_layer


def setup_layer(extruders, config=None, **object_config):
    """One object with a single wall-1 region at 0.2 and a layer plan printing ``extruders``."""
    config = config or make_config(n_filaments=2)
    obj = make_object(1, [[1]], config=ObjectConfig(**object_config))
    print_ = make_print(config, [obj])
    lt = LayerTools(0.2)
    lt.extruders = list(extruders)
    return print_, obj, lt, obj.layers[0].regions[0]


def test_is_extruder_order():
    lt = LayerTools(0.2)
    lt.extruders = [2, 0, 1]
    assert lt.is_extruder_order(2, 0)
    assert not lt.is_extruder_order(0, 2)
    assert not lt.is_extruder_order(0, 0)
    # the second extruder does not have to print on the layer
    assert lt.is_extruder_order(1, 3)
    assert not lt.is_extruder_order(3, 1)


def test_region_filaments_follow_layer_override():
    _, _, lt, layerm = setup_layer([0, 1])
    fill = layerm.fills[0]
    assert lt.extruder(fill, layerm.region) == 0
    lt.extruder_override = 2
    assert lt.extruder(fill, layerm.region) == 1
    assert lt.wall_filament(layerm.region) == 1


def test_infill_takes_purge():
    print_, obj, lt, layerm = setup_layer([0, 1], flush_into_infill=True)
    wiping = lt.wiping_extrusions()
    fill = layerm.fills[0]
    assert wiping.is_overriddable_and_mark(fill, print_.config, obj, layerm.region)

    assert wiping.mark_wiping_extrusions(print_, 0, 1, 15.0) == 0.0
    assert wiping.is_anything_overridden()
    assert wiping.get_extruder_overrides(fill, obj, 0, 1) == [(1, True)]


def test_remaining_volume_goes_to_wipe_tower():
    print_, obj, lt, layerm = setup_layer([0, 1], flush_into_infill=True)
    wiping = lt.wiping_extrusions()
    wiping.is_overriddable_and_mark(layerm.fills[0], print_.config, obj, layerm.region)
    # 20 mm3 of infill, perimeters are not allowed
    assert wiping.mark_wiping_extrusions(print_, 0, 1, 50.0) == 30.0
    assert wiping.get_extruder_overrides(layerm.perimeters[0], obj, 0, 1) is None


def test_infill_waits_for_its_perimeter():
    # the wall filament prints after the new one, its infill cannot be used
    print_, obj, lt, layerm = setup_layer([1, 0], flush_into_infill=True)
    wiping = lt.wiping_extrusions()
    wiping.is_overriddable_and_mark(layerm.fills[0], print_.config, obj, layerm.region)
    assert wiping.mark_wiping_extrusions(print_, 0, 1, 15.0) == 15.0
    assert not wiping.is_entity_overridden(layerm.fills[0], obj, 0)


def test_soluble_filament_is_not_purged_into_objects():
    config = make_config(n_filaments=2, filament_soluble=[True, False])
    print_, obj, lt, layerm = setup_layer([0, 1], config=config, flush_into_objects=True)
    wiping = lt.wiping_extrusions()
    wiping.something_overridable = True
    assert wiping.mark_wiping_extrusions(print_, 0, 1, 15.0) == 15.0
    assert not wiping.is_anything_overridden()


def test_nothing_overridable_without_opt_in():
    print_, obj, lt, layerm = setup_layer([0, 1])
    wiping = lt.wiping_extrusions()
    assert not wiping.is_overriddable_and_mark(layerm.fills[0], print_.config, obj, layerm.region)
    assert not wiping.something_overridable
    assert wiping.mark_wiping_extrusions(print_, 0, 1, 15.0) == 15.0


def test_purge_object_perimeters_are_used():
    print_, obj, lt, layerm = setup_layer([0, 1], flush_into_objects=True)
    wiping = lt.wiping_extrusions()
    assert wiping.is_overriddable_and_mark(layerm.perimeters[0], print_.config, obj, layerm.region)
    # 20 mm3 infill and 10 mm3 perimeter
    assert wiping.mark_wiping_extrusions(print_, 0, 1, 25.0) == 0.0
    assert wiping.is_entity_overridden(layerm.fills[0], obj, 0)
    assert wiping.is_entity_overridden(layerm.perimeters[0], obj, 0)


def test_support_overridability():
    _, obj, lt, _ = setup_layer([0, 1])
    wiping = lt.wiping_extrusions()
    assert wiping.is_support_overriddable(ExtrusionRole.SUPPORT_MATERIAL, obj)
    assert wiping.is_support_overriddable(ExtrusionRole.SUPPORT_MATERIAL_INTERFACE, obj)

    obj.config.support_filament = 2
    assert not wiping.is_support_overriddable(ExtrusionRole.SUPPORT_MATERIAL, obj)
    assert wiping.is_support_overriddable(ExtrusionRole.MIXED, obj)

    obj.config.flush_into_support = False
    assert not wiping.is_support_overriddable(ExtrusionRole.SUPPORT_MATERIAL_INTERFACE, obj)
    assert not wiping.is_support_overriddable_and_mark(ExtrusionRole.MIXED, obj)
    assert not wiping.something_overridable


def test_auto_support_takes_purge():
    print_, obj, lt, _ = setup_layer([0, 1])
    obj.support_layers = [support_layer(0.2, volume=5.0)]
    wiping = lt.wiping_extrusions()
    assert wiping.is_support_overriddable_and_mark(ExtrusionRole.SUPPORT_MATERIAL, obj)

    assert wiping.mark_wiping_extrusions(print_, 0, 1, 20.0) == 15.0
    assert wiping.is_support_overridden(obj)
    assert wiping.get_support_extruder_overrides(obj) == 1
    assert wiping.get_support_interface_extruder_overrides(obj) == 1


def test_pinned_interface_filament_keeps_support_body():
    print_, obj, lt, _ = setup_layer([0, 1], support_interface_filament=2)
    obj.support_layers = [support_layer(0.2, volume=5.0)]
    wiping = lt.wiping_extrusions()
    wiping.is_support_overriddable_and_mark(ExtrusionRole.SUPPORT_MATERIAL, obj)
    assert wiping.mark_wiping_extrusions(print_, 0, 1, 20.0) == 20.0
    assert not wiping.is_support_overridden(obj)


def test_unused_purge_infill_follows_last_filament():
    print_, obj, lt, layerm = setup_layer([0, 1], flush_into_infill=True)
    wiping = lt.wiping_extrusions()
    fill = layerm.fills[0]
    wiping.is_overriddable_and_mark(fill, print_.config, obj, layerm.region)

    wiping.ensure_perimeters_infills_order(print_)
    assert wiping.get_extruder_overrides(fill, obj, 0, 1) == [(1, True)]
    assert wiping.get_extruder_overrides(layerm.perimeters[0], obj, 0, 1) is None


def test_overrides_per_copy():
    print_, obj, lt, layerm = setup_layer([0, 1], flush_into_infill=True)
    obj.instances = 2
    wiping = lt.wiping_extrusions()
    fill = layerm.fills[0]
    wiping.is_overriddable_and_mark(fill, print_.config, obj, layerm.region)
    # only the first copy's infill is needed
    assert wiping.mark_wiping_extrusions(print_, 0, 1, 10.0) == 0.0
    assert wiping.get_extruder_overrides(fill, obj, 0, 2) == [(1, True), (0, False)]


def test_overriding_twice_is_logged(caplog):
    _, obj, lt, layerm = setup_layer([0, 1])
    wiping = lt.wiping_extrusions()
    fill = layerm.fills[0]
    wiping.set_extruder_override(fill, obj, 0, 1, 1)
    wiping.set_extruder_override(fill, obj, 0, 0, 1)
    assert "overridden multiple times" in caplog.text
    assert wiping.get_extruder_overrides(fill, obj, 1, 1) == [(0, True)]


def test_unknown_entity_has_no_overrides():
    _, obj, lt, _ = setup_layer([0, 1])
    assert lt.wiping_extrusions().get_extruder_overrides(ExtrusionCollection(), obj, 0, 1) is None
