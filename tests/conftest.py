# conftest.py
import os

# rmc imports pyplot, so the backend has to be set before the tests import it
os.environ.setdefault("MPLBACKEND", "Agg")

import numpy as np
import pytest


def _make_track(heights, direction="D", index_b=0, spacing=20.0, cycle="03", h_b=None, x_dist=None):
    """Front crossing record for a synthetic ground track profile.

    Point B sits at index_b; h_b defaults to the height there.
    """
    heights = np.asarray(heights, dtype=float)
    n = len(heights)
    if x_dist is None:
        x_dist = np.arange(n) * spacing
    x_dist = np.asarray(x_dist, dtype=float)
    return {
        "direction": direction,
        "cycle": cycle,
        "h_b": heights[index_b] if h_b is None else h_b,
        "index_b": index_b,
        "x_dist_b": x_dist[index_b],
        "h_ss": heights,
        "x": -3.0e5 + x_dist,
        "y": 1.2e6 - 0.5 * x_dist,
        "x_dist": x_dist,
        "x_atc": 2.7e7 + x_dist,
        "delta_time": 1.0e8 + x_dist / 7000.0,
    }


@pytest.fixture
def make_track():
    return _make_track
