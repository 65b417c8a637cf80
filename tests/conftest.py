import geopandas as gpd
import pytest
from shapely.geometry import Point, box

CRS = "EPSG:27700"


def make_zones(rows, crs=CRS):
    """rows: (zone_id, population, (minx, miny, maxx, maxy))"""
    return gpd.GeoDataFrame(
        {"zone_id": [r[0] for r in rows], "age_4_10": [r[1] for r in rows]},
        geometry=[box(*r[2]) for r in rows],
        crs=crs,
    )


def make_sites(rows, crs=CRS):
    """rows: (supply_id, x, y, places)"""
    return gpd.GeoDataFrame(
        {"URN": [r[0] for r in rows], "places": [r[3] for r in rows]},
        geometry=[Point(r[1], r[2]) for r in rows],
        crs=crs,
    )


@pytest.fixture
def zones():
    # A and B share the edge x = 10, C is far away and empty
    return make_zones(
        [
            ("A", 100, (0, 0, 10, 10)),
            ("B", 200, (10, 0, 20, 10)),
            ("C", 0, (100, 0, 110, 10)),
        ]
    )


@pytest.fixture
def one_school():
    return make_sites([("S1", 10, 5, 30)])
