from __future__ import annotations

import math
import unittest

from timeclock.models import Location
from timeclock.services.geofence import (
    EARTH_RADIUS_M,
    check_radius,
    distance_m,
    evaluate_geofence,
    fence_is_enforceable,
)


def _north_of(lat: float, meters: float) -> float:
    return lat + math.degrees(meters / EARTH_RADIUS_M)


def _fence(**overrides) -> Location:  # type: ignore[no-untyped-def]
    values = {
        "name": "Tokyo",
        "latitude": 35.0,
        "longitude": 139.0,
        "radius_meters": 100.0,
        "geofence_enabled": True,
        "allow_clock_outside": True,
        "is_active": True,
    }
    values.update(overrides)
    return Location(**values)


class GeofenceTests(unittest.TestCase):
    def test_distance_along_meridian_matches_arc_length(self) -> None:
        self.assertAlmostEqual(distance_m(35.0, 139.0, _north_of(35.0, 150.0), 139.0), 150.0, places=6)

    def test_distance_is_symmetric_and_zero_for_same_point(self) -> None:
        self.assertEqual(distance_m(35.0, 139.0, 35.0, 139.0), 0.0)
        self.assertEqual(
            distance_m(35.0, 139.0, 35.01, 139.02),
            distance_m(35.01, 139.02, 35.0, 139.0),
        )

    def test_point_150m_away_is_outside_100m_fence(self) -> None:
        result = evaluate_geofence(_fence(), _north_of(35.0, 150.0), 139.0)

        self.assertIs(result.inside, False)
        self.assertAlmostEqual(result.distance_m or 0.0, 150.0, places=3)
        self.assertEqual(result.radius_m, 100.0)

    def test_point_50m_away_is_inside_100m_fence(self) -> None:
        result = evaluate_geofence(_fence(), _north_of(35.0, 50.0), 139.0)
        self.assertIs(result.inside, True)

    def test_boundary_counts_as_inside(self) -> None:
        result = check_radius(lat=35.0, lng=139.0, center_lat=35.0, center_lng=139.0, radius_m=0.0)
        self.assertIs(result.inside, True)

    def test_unknown_when_fence_disabled(self) -> None:
        result = evaluate_geofence(_fence(geofence_enabled=False), 35.0, 139.0)
        self.assertIsNone(result.inside)
        self.assertIsNone(result.distance_m)

    def test_unknown_when_coordinates_missing(self) -> None:
        self.assertIsNone(evaluate_geofence(_fence(), None, 139.0).inside)
        self.assertIsNone(evaluate_geofence(_fence(), 35.0, None).inside)

    def test_unknown_when_fence_has_no_center_or_radius(self) -> None:
        self.assertFalse(fence_is_enforceable(_fence(radius_meters=None)))
        self.assertIsNone(evaluate_geofence(_fence(latitude=None), 35.0, 139.0).inside)
        self.assertIsNone(evaluate_geofence(None, 35.0, 139.0).inside)

    def test_flags_round_distance(self) -> None:
        flags = evaluate_geofence(_fence(), _north_of(35.0, 150.0), 139.0).to_flags()
        self.assertEqual(flags["inside"], False)
        self.assertEqual(flags["distance_m"], 150.0)
        self.assertEqual(flags["radius_m"], 100.0)


if __name__ == "__main__":
    unittest.main()
