"""Tests for polyline.py: distances, RDP simplification and point caps."""

import math

import pytest

from polyline import cap_points, closest_index_on_line, haversine_m, simplify_polyline, simplify_rdp


def _zigzag(n, amplitude_deg=0.001):
    """n points heading north, alternating ~100 m east/west."""
    return [(16.40 + i * 0.0001, 120.59 + (amplitude_deg if i % 2 else 0.0)) for i in range(n)]


class TestDistances:
    def test_one_degree_of_latitude(self):
        assert haversine_m((0.0, 0.0), (1.0, 0.0)) == pytest.approx(111195, rel=1e-3)

    def test_zero_distance(self):
        assert haversine_m((16.4, 120.5), (16.4, 120.5)) == 0.0

    def test_closest_index(self):
        line = [(16.40, 120.59), (16.41, 120.59), (16.42, 120.59)]
        idx, dist = closest_index_on_line(line, (16.4101, 120.59))
        assert idx == 1
        assert dist == pytest.approx(11.1, abs=0.5)

    def test_closest_index_empty_line(self):
        assert closest_index_on_line([], (0.0, 0.0)) == (-1, math.inf)


class TestSimplifyRdp:
    def test_collinear_points_collapse_to_endpoints(self):
        line = [(16.40 + i * 0.001, 120.59) for i in range(50)]
        assert simplify_rdp(line, 12) == [line[0], line[-1]]

    def test_keeps_significant_corner(self):
        line = [(16.40, 120.59), (16.401, 120.59), (16.402, 120.59), (16.402, 120.591), (16.402, 120.592)]
        out = simplify_rdp(line, 12)
        assert (16.402, 120.59) in out
        assert out[0] == line[0] and out[-1] == line[-1]

    def test_small_wiggles_removed(self):
        # ~1 m offsets are below a 12 m tolerance
        line = [(16.40 + i * 0.001, 120.59 + (0.00001 if i % 2 else 0.0)) for i in range(20)]
        assert len(simplify_rdp(line, 12)) == 2

    def test_short_inputs_unchanged(self):
        assert simplify_rdp([], 12) == []
        assert simplify_rdp([(1.0, 2.0)], 12) == [(1.0, 2.0)]
        assert simplify_rdp([(1.0, 2.0), (1.0, 2.1)], 12) == [(1.0, 2.0), (1.0, 2.1)]

    def test_output_is_ordered_subsequence(self):
        line = _zigzag(40)
        out = simplify_rdp(line, 12)
        positions = [line.index(p) for p in out]
        assert positions == sorted(positions)
        assert len(out) <= len(line)

    def test_long_line_does_not_recurse(self):
        line = _zigzag(1500)
        out = simplify_rdp(line, 12)
        assert out[0] == line[0] and out[-1] == line[-1]


class TestCap:
    def test_under_cap_unchanged(self):
        line = _zigzag(10)
        assert cap_points(line, 500) == line

    def test_stride_keeps_last_point(self):
        line = _zigzag(1001)
        out = cap_points(line, 500)
        assert out[0] == line[0]
        assert out[-1] == line[-1]
        assert len(out) == 335

    @pytest.mark.parametrize("n", [501, 999, 1000, 2000, 4999])
    def test_never_exceeds_cap(self, n):
        line = _zigzag(n)
        out = cap_points(line, 500)
        assert len(out) <= 500
        assert out[0] == line[0] and out[-1] == line[-1]

    def test_simplify_polyline_caps_after_rdp(self):
        line = _zigzag(1200)
        out = simplify_polyline(line, 12)
        assert len(out) <= 500
        assert out[0] == line[0] and out[-1] == line[-1]
