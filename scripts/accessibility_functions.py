import logging
import math
import warnings
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor

import geopandas as gpd
import numpy as np
import pandas as pd
from shapely.geometry import box

logger = logging.getLogger(__name__)

DEMAND_GEOM_TYPES = ["Polygon", "MultiPolygon"]
SUPPLY_GEOM_TYPES = ["Point"]
EMPTY_POLICIES = ("warn", "raise")

AccessibilityResult = namedtuple("AccessibilityResult", ["scores", "supply_table", "skipped"])
SupplyCatchment = namedtuple(
    "SupplyCatchment", ["supply_id", "n_zones", "catchment_population", "ratio", "contributions"]
)


class AccessibilityError(ValueError):
    """Base class for every error raised by the accessibility engine."""


class GeometryError(AccessibilityError):
    """Missing, malformed or mismatched geometry. Raised before any computation."""


class ParameterError(AccessibilityError):
    """Invalid threshold, population field, capacity, identifiers or bands."""


class EmptyCatchmentError(AccessibilityError):
    def __init__(self, supply_id):
        self.supply_id = supply_id
        super().__init__(f"Supply point {supply_id!r} has no demand within its catchment")


class EmptyCatchmentWarning(UserWarning):
    pass


########################################################################
# INPUT CHECKS #########################################################
########################################################################

def check_geometries(gdf, kind):
    """
    Makes sure a layer can enter the engine.
    Args:
        gdf (GeoDataFrame): demand zones or supply points
        kind (str): 'demand' (polygons) or 'supply' (points)
    Raises:
        GeometryError: on missing, empty, wrongly typed, invalid or non finite geometries
    """
    if kind not in ("demand", "supply"):
        raise ValueError("kind must be either 'demand' or 'supply'")
    if not isinstance(gdf, gpd.GeoDataFrame):
        raise GeometryError(f"The {kind} layer must be a GeoDataFrame, got {type(gdf).__name__}")
    expected = DEMAND_GEOM_TYPES if kind == "demand" else SUPPLY_GEOM_TYPES
    geoms = gdf.geometry

    missing = geoms.isna() | geoms.is_empty
    if missing.any():
        raise GeometryError(f"There are {int(missing.sum())} {kind} features without geometry")

    wrong_type = ~geoms.geom_type.isin(expected)
    if wrong_type.any():
        found = sorted(geoms[wrong_type].geom_type.unique())
        raise GeometryError(f"The {kind} layer must contain {' or '.join(expected)} geometries, found {found}")

    coords = geoms.get_coordinates().to_numpy()
    if not np.isfinite(coords).all():
        raise GeometryError(f"The {kind} layer has non finite coordinates")

    invalid = ~geoms.is_valid
    if invalid.any():
        raise GeometryError(f"There are {int(invalid.sum())} invalid {kind} geometries")


def check_crs(demand, supply):
    """Both layers must share one projected frame. Two layers without CRS are taken as planar."""
    if demand.crs is None and supply.crs is None:
        logger.debug("No CRS on either layer, assuming a shared planar frame")
        return
    if demand.crs is None or supply.crs is None or demand.crs != supply.crs:
        raise GeometryError(f"CRS do not match: demand {demand.crs}, supply {supply.crs}")
    if demand.crs.is_geographic:
        raise GeometryError(f"CRS {demand.crs.to_string()} is geographic, distances need a projected CRS")


def check_threshold(maxdist):
    if isinstance(maxdist, bool) or not isinstance(maxdist, (int, float, np.number)):
        raise ParameterError(f"The distance threshold must be a number, got {maxdist!r}")
    if not math.isfinite(maxdist) or maxdist <= 0:
        raise ParameterError(f"The distance threshold must be positive and finite, got {maxdist}")


def check_bands(weights, maxdist):
    """
    Turns the distance decay weights into two sorted arrays.
    Args:
        weights (dict): {band upper bound: weight}, e.g. {330: 1, 660: 0.44, 1000: 0.03}
        maxdist (float): catchment threshold, must be the largest band bound
    Returns:
        tuple: (bounds, band_weights) as numpy arrays, or None when weights is None
    """
    if weights is None:
        return None
    if not isinstance(weights, dict) or not weights:
        raise ParameterError("weights must be a non empty dictionary {band upper bound: weight}")
    bounds = np.array(sorted(weights), dtype=float)
    band_weights = np.array([weights[b] for b in sorted(weights)], dtype=float)
    if not np.isfinite(bounds).all() or (bounds <= 0).any():
        raise ParameterError(f"Band bounds must be positive distances, got {list(bounds)}")
    if not np.isfinite(band_weights).all() or (band_weights <= 0).any() or (band_weights > 1).any():
        raise ParameterError(f"Band weights must be in (0, 1], got {list(band_weights)}")
    if bounds[-1] != maxdist:
        raise ParameterError(f"The largest band ({bounds[-1]}) must equal the distance threshold ({maxdist})")
    return bounds, band_weights


def _indexed(gdf, id_col, kind):
    # layers are keyed by their identifier from here on
    if id_col is not None:
        if id_col not in gdf.columns:
            raise ParameterError(f"Identifier column {id_col!r} not found in the {kind} layer")
        gdf = gdf.set_index(id_col)
    if not gdf.index.is_unique:
        duplicated = gdf.index[gdf.index.duplicated()].unique().tolist()
        raise ParameterError(f"The {kind} identifiers are not unique: {duplicated[:10]}")
    return gdf


def get_population(zones, population_col):
    if population_col not in zones.columns:
        raise ParameterError(
            f"Population field {population_col!r} not found. Available: {list(zones.columns.drop(zones.geometry.name))}"
        )
    population = zones[population_col]
    if not pd.api.types.is_numeric_dtype(population):
        raise ParameterError(f"Population field {population_col!r} is not numeric")
    if population.isna().any() or (population < 0).any():
        raise ParameterError(f"Population field {population_col!r} has missing or negative values")
    return population.astype(float)


def get_capacity(sites, capacity_col):
    """Supply capacities, all 1 when capacity_col is None (uncapacitated analysis)."""
    if capacity_col is None:
        return pd.Series(1.0, index=sites.index)
    if capacity_col not in sites.columns:
        raise ParameterError(f"Capacity field {capacity_col!r} not found in the supply layer")
    capacity = sites[capacity_col]
    if not pd.api.types.is_numeric_dtype(capacity):
        raise ParameterError(f"Capacity field {capacity_col!r} is not numeric")
    capacity = capacity.astype(float)
    if not np.isfinite(capacity).all() or (capacity <= 0).any():
        bad = capacity[~(np.isfinite(capacity) & (capacity > 0))].index.tolist()
        raise ParameterError(f"Capacity must be positive, check supply points {bad[:10]}")
    return capacity


########################################################################
# STEP 1: catchments and supply to population ratios ###################
########################################################################

def zone_distances(point, zones):
    """
    Planar distance from a point to each zone polygon.
    A point inside (or on the boundary of) a zone is at distance 0 from it.
    """
    return zones.geometry.distance(point)


def build_zone_index(zones):
    # geopandas builds the STRtree lazily: force it once, before any query thread starts
    sindex = zones.sindex
    logger.debug("Spatial index built over %d demand zones", len(zones))
    return sindex


def get_zone_neighbors(point, zones, maxdist, sindex=None):
    """
    Finds the demand zones within maxdist of a supply point.
    Args:
        point (Point): supply location
        zones (GeoDataFrame): demand zones indexed by their identifier
        maxdist (float): catchment threshold, inclusive
        sindex: spatial index of zones (built if not given)
    Returns:
        Series: {zone id: distance}, each zone within the threshold exactly once
    """
    if sindex is None:
        sindex = zones.sindex
    search_box = box(point.x - maxdist, point.y - maxdist, point.x + maxdist, point.y + maxdist)
    candidates = np.unique(sindex.query(search_box))  # bounding boxes touching the search box
    distances = zone_distances(point, zones.iloc[candidates])
    return distances[distances <= maxdist]


def get_band_weights(distances, bands):
    """Weight of the smallest band containing each distance, 1 everywhere without bands."""
    if bands is None:
        return np.ones(len(distances))
    bounds, band_weights = bands
    return band_weights[np.searchsorted(bounds, np.asarray(distances, dtype=float), side="left")]


def get_supply_ratio(capacity, neighbor_population, neighbor_weights=None, supply_id=None):
    """
    Supply to population ratio R_j of one supply point.
    Args:
        capacity (float): supply capacity S_j
        neighbor_population: population of the zones in the catchment
        neighbor_weights: distance decay weight of each zone (default 1)
        supply_id: used in the error message
    Returns:
        float: S_j / sum(W_kj * P_k)
    Raises:
        EmptyCatchmentError: when the catchment has no (weighted) population
    """
    population = np.asarray(neighbor_population, dtype=float)
    if neighbor_weights is not None:
        population = population * np.asarray(neighbor_weights, dtype=float)
    total_demand = population.sum()
    if total_demand <= 0:
        raise EmptyCatchmentError(supply_id)
    return capacity / total_demand


def get_supply_contributions(supply_id, point, capacity, zones, population, maxdist, bands=None, sindex=None):
    """
    Computes the catchment of one supply point and what it adds to each zone score.
    Only reads shared data, so supply points can run in parallel.

    Returns:
        SupplyCatchment: the contributions are (zone id, W_ij * R_j) pairs,
            empty (and the ratio NaN) when the catchment has no population
    """
    neighbors = get_zone_neighbors(point, zones, maxdist, sindex)
    weights = get_band_weights(neighbors.to_numpy(), bands)
    neighbor_population = population.loc[neighbors.index].to_numpy()
    catchment_population = float((neighbor_population * weights).sum())
    logger.debug("Supply %s: %d zones, population %s", supply_id, len(neighbors), catchment_population)
    try:
        ratio = get_supply_ratio(capacity, neighbor_population, weights, supply_id)
    except EmptyCatchmentError:
        # the run level policy decides between skipping and aborting
        return SupplyCatchment(supply_id, len(neighbors), catchment_population, np.nan, [])
    contributions = list(zip(neighbors.index, ratio * weights))
    return SupplyCatchment(supply_id, len(neighbors), catchment_population, ratio, contributions)


########################################################################
# STEP 2: for each zone, sum the ratios of the supply points reaching it
########################################################################

def merge_contributions(catchments, zone_ids):
    """
    Sums the contributions per zone in a single pass.
    Zones no catchment reaches keep a score of 0.
    """
    pairs = [pair for catchment in catchments for pair in catchment.contributions]
    if pairs:
        contributions = pd.DataFrame(pairs, columns=["zone_id", "contribution"])
        summed = contributions.groupby("zone_id")["contribution"].sum()
    else:
        summed = pd.Series(dtype=float)
    scores = summed.reindex(zone_ids, fill_value=0.0).astype(float)
    scores.name = "accessibility_score"
    scores.index.name = zone_ids.name
    return scores


def get_accessibility_index(
    demand,
    supply,
    population_col,
    maxdist,
    demand_id_col=None,
    supply_id_col=None,
    capacity_col=None,
    weights=None,
    on_empty="warn",
    max_workers=None,
):
    """
    Two step floating catchment area (2SFCA) accessibility index.

    Step 1: for every supply point j, R_j = S_j / sum of the population of the
    zones within maxdist. Step 2: for every zone i, A_i = sum of R_j over the
    supply points whose catchment includes i. With distance decay weights
    (enhanced 2SFCA) both sums are weighted by the band of each zone.

    Args:
        demand (GeoDataFrame): zone polygons with population fields
        supply (GeoDataFrame): supply points, same projected CRS as demand
        population_col (str): population field used as demand
        maxdist (float): catchment threshold in CRS units (inclusive)
        demand_id_col (str): zone identifier column (default: the index)
        supply_id_col (str): supply identifier column (default: the index)
        capacity_col (str): supply capacity field, None counts every supply point as 1
        weights (dict): optional {band upper bound: weight}, largest bound == maxdist
        on_empty (str): 'warn' skips supply points with no population in reach
            (EmptyCatchmentWarning), 'raise' aborts with EmptyCatchmentError
        max_workers (int): threads used for the catchments, None or 1 runs sequentially

    Returns:
        AccessibilityResult: scores (one per zone, in demand order), supply_table
            (n_zones, catchment_population, ratio per supply point) and the
            list of skipped supply ids
    """
    # nothing is computed before every input is checked
    if on_empty not in EMPTY_POLICIES:
        raise ParameterError(f"on_empty must be one of {EMPTY_POLICIES}, got {on_empty!r}")
    check_threshold(maxdist)
    bands = check_bands(weights, maxdist)
    check_geometries(demand, "demand")
    check_geometries(supply, "supply")
    check_crs(demand, supply)
    zones = _indexed(demand, demand_id_col, "demand")
    sites = _indexed(supply, supply_id_col, "supply")
    population = get_population(zones, population_col)
    capacity = get_capacity(sites, capacity_col)

    logger.info(
        "Computing accessibility for %d zones and %d supply points (threshold %s)", len(zones), len(sites), maxdist
    )
    sindex = build_zone_index(zones)

    def catchment_for(item):
        supply_id, point, supply_capacity = item
        return get_supply_contributions(supply_id, point, supply_capacity, zones, population, maxdist, bands, sindex)

    items = list(zip(sites.index, sites.geometry, capacity))
    if max_workers is not None and max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            catchments = list(executor.map(catchment_for, items))
    else:
        catchments = [catchment_for(item) for item in items]

    skipped = [c.supply_id for c in catchments if not c.contributions]
    if skipped and on_empty == "raise":
        raise EmptyCatchmentError(skipped[0])
    for supply_id in skipped:
        warnings.warn(
            f"Supply point {supply_id!r} has no population within {maxdist}, its contribution is skipped",
            EmptyCatchmentWarning,
        )
    if skipped:
        logger.warning("%d supply points skipped for empty catchments: %s", len(skipped), skipped[:20])

    supply_table = pd.DataFrame(
        [(c.supply_id, c.n_zones, c.catchment_population, c.ratio) for c in catchments],
        columns=["supply_id", "n_zones", "catchment_population", "ratio"],
    ).set_index("supply_id")
    supply_table.index.name = sites.index.name

    scores = merge_contributions(catchments, zones.index)
    logger.info("%d of %d zones reached by at least one supply point", int((scores > 0).sum()), len(scores))
    return AccessibilityResult(scores, supply_table, skipped)


########################################################################
# DISPLAY ##############################################################
########################################################################

def scale_scores(scores, factor=10000):
    """Rescaled copy for reporting (e.g. supply per 10,000 people). The stored scores are untouched."""
    if not factor > 0:
        raise ParameterError(f"The display factor must be positive, got {factor}")
    return scores * factor


def normalize_scores(scores):
    """Min-max normalization to [0, 1]. A constant series becomes all zeros."""
    min_val = scores.min()
    max_val = scores.max()
    if max_val == min_val:
        return pd.Series(0.0, index=scores.index, name=scores.name)
    return (scores - min_val) / (max_val - min_val)
