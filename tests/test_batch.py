"""Tests for the batch detection, aggregation and derived R-M quantities."""

import numpy as np
import pandas as pd
import pytest

import rmc


@pytest.fixture
def front_crossings(make_track):
    return [
        make_track([5.0, 4.0, 3.0, 1.5, 1.0, 1.0, 1.0, 1.0]),
        make_track([5.0, 6.0, 3.0, 2.5, 2.4, 2.3, 2.2, 2.1]),
        make_track([5.0, 4.0, 5.2, 4.5, 4.4, 4.3, 4.2, 4.1], cycle="11"),
        make_track([5.0, 4.0, 3.0], h_b=np.nan),
        make_track([2.0, 3.0, 4.0, 5.0], direction="A", index_b=3, cycle="04"),
        make_track([3.0, 4.0, 5.0], direction="?", index_b=2, cycle=None),
    ]


def test_one_row_per_profile_in_order(front_crossings) -> None:
    rm_obs = rmc.detect_rm_features(front_crossings)

    assert len(rm_obs) == len(front_crossings)
    assert list(rm_obs.columns[:len(rmc.RM_KEYS)]) == list(rmc.RM_KEYS)
    assert rm_obs["rm_flag"].tolist() == [True, False, True, False, True, True]
    assert rm_obs["track_node"].tolist() == [2, 2, 2, 2, 1, 0]
    assert rm_obs["cycle_number"].tolist() == [3, 3, 11, 3, 4, 0]
    assert rm_obs.loc[0, "moat_h"] == 3.0
    assert rm_obs.loc[2, "rampart_h"] == pytest.approx(5.2)
    assert rm_obs.loc[4, "moat_h"] == 3.0
    assert rm_obs.loc[4, "moat_index"] == 1


def test_no_rampart_without_moat(front_crossings) -> None:
    rm_obs = rmc.detect_rm_features(front_crossings)

    no_moat = rm_obs[~rm_obs["rm_flag"]]
    assert no_moat[list(rmc.MOAT_KEYS + rmc.RAMPART_KEYS)].isna().all().all()


def test_accepts_dataframe(front_crossings) -> None:
    from_list = rmc.detect_rm_features(front_crossings)
    from_frame = rmc.detect_rm_features(pd.DataFrame(front_crossings))

    pd.testing.assert_frame_equal(from_list, from_frame)


def test_detection_is_repeatable(front_crossings) -> None:
    first = rmc.detect_rm_features(front_crossings)
    second = rmc.detect_rm_features(front_crossings)

    pd.testing.assert_frame_equal(first, second)


def test_pool_matches_serial(front_crossings) -> None:
    serial = rmc.detect_rm_features(front_crossings, nproc=1)
    parallel = rmc.detect_rm_features(front_crossings, nproc=2)

    pd.testing.assert_frame_equal(serial, parallel)


def test_summary_is_printed(front_crossings, capsys) -> None:
    rmc.detect_rm_features(front_crossings)
    out = capsys.readouterr().out

    assert "Searched 6 ground track profiles." in out
    assert "Found 4 rampart-moat structures (2 short beams)." in out


def test_custom_criteria(front_crossings) -> None:
    # with a 3.5 m floor the first profile stops at 4 m
    rm_obs = rmc.detect_rm_features(front_crossings, moat_h_lower_limit=3.5)

    assert rm_obs.loc[0, "moat_h"] == 4.0


def test_empty_input() -> None:
    rm_obs = rmc.detect_rm_features([])

    assert len(rm_obs) == 0
    assert set(rmc.RM_KEYS) <= set(rm_obs.columns)


def test_split_results(front_crossings) -> None:
    rm_obs = rmc.detect_rm_features(front_crossings)
    moat_obs, rampart_obs = rmc.split_results(rm_obs)

    assert len(moat_obs) == len(rampart_obs) == len(rm_obs)
    assert "moat_h" in moat_obs and "rampart_h" not in moat_obs
    assert "rampart_h" in rampart_obs and "moat_h" not in rampart_obs
    for table in (moat_obs, rampart_obs):
        assert table["rm_flag"].tolist() == rm_obs["rm_flag"].tolist()
        assert table["track_node"].tolist() == rm_obs["track_node"].tolist()


def test_rm_dimensions(front_crossings) -> None:
    rm_obs = rmc.rm_dimensions(rmc.detect_rm_features(front_crossings))

    assert rm_obs.loc[0, "dh_rm"] == pytest.approx(2.0)
    assert rm_obs.loc[0, "dx_rm"] == pytest.approx(40.0)
    assert rm_obs.loc[2, "dh_rm"] == pytest.approx(1.2)
    assert rm_obs.loc[2, "dx_rm"] == pytest.approx(20.0)
    assert np.isnan(rm_obs.loc[1, "dh_rm"])
    assert np.isnan(rm_obs.loc[3, "dx_rm"])


def test_add_lat_lon() -> None:
    rm_obs = pd.DataFrame({
        "moat_x": [0.0, np.nan],
        "moat_y": [0.0, np.nan],
        "rampart_x": [-3.0e5, np.nan],
        "rampart_y": [-1.2e6, np.nan],
    })
    rm_obs = rmc.add_lat_lon(rm_obs)

    assert rm_obs.loc[0, "moat_lat"] == pytest.approx(-90.0)
    assert -90.0 < rm_obs.loc[0, "rampart_lat"] < -70.0
    assert -180.0 <= rm_obs.loc[0, "rampart_lon"] <= 180.0
    assert np.isnan(rm_obs.loc[1, "moat_lat"])
    assert np.isnan(rm_obs.loc[1, "rampart_lon"])


def test_delta_time_to_datetime() -> None:
    times = rmc.delta_time_to_datetime([0.0, 86400.0, np.nan])

    assert times[0] == pd.Timestamp("2018-01-01T00:00:00Z")
    assert times[1] == pd.Timestamp("2018-01-02T00:00:00Z")
    assert pd.isna(times[2])


def test_plot_rm_profile(make_track) -> None:
    import matplotlib.pyplot as plt

    profile = rmc.make_profile(make_track([5.0, 4.0, 5.2, 4.5, 4.4, 4.3, 4.2, 4.1]))
    result = rmc.detect_one_profile(2, 2000, 100, False, profile)
    ax = rmc.plot_rm_profile(profile, result)

    labels = [text.get_text() for text in ax.get_legend().get_texts()]
    assert labels == ["Point B", "moat", "rampart"]
    plt.close(ax.figure)


def test_unreadable_record_keeps_its_row(make_track, capsys) -> None:
    good = make_track([5.0, 4.0, 3.0, 1.5, 1.0, 1.0, 1.0, 1.0])
    missing_x_atc = make_track([5.0, 4.0, 3.0, 1.5, 1.0, 1.0, 1.0, 1.0], cycle="09")
    del missing_x_atc["x_atc"]
    bad_h_b = make_track([5.0, 4.0, 3.0], h_b="n/a")

    rm_obs = rmc.detect_rm_features([good, missing_x_atc, bad_h_b])

    assert len(rm_obs) == 3
    assert rm_obs["rm_flag"].tolist() == [True, False, False]
    assert rm_obs.loc[0, "moat_h"] == 3.0
    assert rm_obs.loc[1, "track_node"] == 2
    assert rm_obs.loc[1, "cycle_number"] == 9
    assert rm_obs.loc[1:, list(rmc.MOAT_KEYS + rmc.RAMPART_KEYS)].isna().all().all()
    assert "Skipping malformed profile" in capsys.readouterr().out
