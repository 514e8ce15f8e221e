import dataclasses

import pytest

from breakscan.config import SvCallerConfig


def test_defaults():
    cfg = SvCallerConfig()
    assert cfg.bin_size == 1000
    assert cfg.min_depth_z_score == 2.5
    assert cfg.min_cnv_size == 10_000
    assert cfg.insert_size_z_threshold == 4.0
    assert cfg.min_map_q == 20
    assert cfg.max_cluster_distance == 500
    assert (cfg.min_paired_end_support, cfg.min_split_read_support, cfg.min_total_support) == (2, 1, 3)
    assert cfg.min_quality == 10.0


def test_config_is_immutable():
    cfg = SvCallerConfig()
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.bin_size = 10  # type: ignore[misc]
    assert dataclasses.replace(cfg, bin_size=500).bin_size == 500
    assert cfg.bin_size == 1000


@pytest.mark.parametrize(
    "kwargs",
    [{"bin_size": 0}, {"max_cluster_distance": -1}, {"min_map_q": -1}, {"min_total_support": -2}],
)
def test_invalid_values_rejected(kwargs):
    with pytest.raises(ValueError):
        SvCallerConfig(**kwargs)


def test_from_mapping_round_trip_and_unknown_keys():
    cfg = SvCallerConfig.from_mapping({"bin_size": 500, "min_quality": 20.0})
    assert cfg.bin_size == 500
    assert SvCallerConfig.from_mapping(cfg.to_dict()) == cfg
    with pytest.raises(ValueError, match="bin_sz"):
        SvCallerConfig.from_mapping({"bin_sz": 500})
