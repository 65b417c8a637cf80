"""Computes a 2SFCA accessibility index for the demand zones of a GeoPackage.

Demand zones (polygons with population counts) compete for the capacity of
supply points (e.g. schools and their places) reachable within a distance
threshold. The score of each zone is stored in ``accessibility_score``
(supply per person) and, rescaled for maps and tables, in
``accessibility_display``.

Typical inputs:
    - GeoPackage with a zone polygon layer and a supply point layer in one
      projected CRS (or a TARGET_CRS to move both to).
    - Optional CSV/spreadsheet of population counts keyed by zone identifier.
"""
import logging
import os
import sys

from accessibility_functions import AccessibilityError, get_accessibility_index, scale_scores
from data_import import join_population, load_layers, load_population_table

logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

DATA_PATH = os.path.join("..", "data", "final", "school_accessibility.gpkg")
DEMAND_LAYER = "lsoa"
SUPPLY_LAYER = "primary_schools"
DEMAND_ID = "LSOA11CD"
SUPPLY_ID = "URN"

# population counts already in the zone layer, or read from this table
POPULATION_TABLE = None  # e.g. os.path.join("..", "data", "raw", "population_by_age.csv")
POPULATION_TABLE_ID = "LSOA11CD"
POPULATION_COL = "age_4_10"

CAPACITY_COL = None  # None counts providers, e.g. "places" weights them by size
MAXDIST = 1000  # metres
WEIGHTS = None  # e.g. {330: 1, 660: 0.44, 1000: 0.03} for the enhanced 2SFCA
ON_EMPTY = "warn"
TARGET_CRS = "EPSG:27700"
DISPLAY_FACTOR = 10000  # supply per 10,000 people

OUTPUT_PATH = os.path.join("..", "data", "final", "school_accessibility.gpkg")
OUTPUT_LAYER = "lsoa_accessibility"


# =============================================================================
# FUNCTIONS
# =============================================================================

def run_accessibility(
    data_path=DATA_PATH,
    demand_layer=DEMAND_LAYER,
    supply_layer=SUPPLY_LAYER,
    demand_id=DEMAND_ID,
    supply_id=SUPPLY_ID,
    population_col=POPULATION_COL,
    maxdist=MAXDIST,
    capacity_col=CAPACITY_COL,
    weights=WEIGHTS,
    on_empty=ON_EMPTY,
    target_crs=TARGET_CRS,
    population_table=POPULATION_TABLE,
    population_table_id=POPULATION_TABLE_ID,
    display_factor=DISPLAY_FACTOR,
    max_workers=None,
):
    """
    Loads the layers, computes the index and attaches it to the zones.
    Returns:
        tuple: (zones GeoDataFrame with the score columns, AccessibilityResult)
    """
    demand, supply = load_layers(data_path, demand_layer, supply_layer, target_crs=target_crs)
    if population_table is not None:
        table = load_population_table(population_table)
        demand = join_population(demand, table, demand_id, population_table_id, [population_col])

    result = get_accessibility_index(
        demand,
        supply,
        population_col,
        maxdist,
        demand_id_col=demand_id,
        supply_id_col=supply_id,
        capacity_col=capacity_col,
        weights=weights,
        on_empty=on_empty,
        max_workers=max_workers,
    )

    # map the index to the zones layer
    demand = demand.copy()
    if demand_id is None:
        demand["accessibility_score"] = result.scores.to_numpy()  # same order as the zones
    else:
        demand["accessibility_score"] = demand[demand_id].map(result.scores)
    demand["accessibility_display"] = scale_scores(demand["accessibility_score"], display_factor)

    logger.info("Supply to population ratios:\n%s", result.supply_table["ratio"].describe())
    logger.info("Accessibility (x%s):\n%s", display_factor, demand["accessibility_display"].describe())
    if result.skipped:
        logger.info("Skipped supply points: %s", result.skipped)
    return demand, result


def export_scores(demand, path, layer=OUTPUT_LAYER):
    """Writes the scored zones to a GeoPackage layer, or to a CSV (no geometry)."""
    if path.lower().endswith(".csv"):
        demand.drop(columns=demand.geometry.name).to_csv(path, index=False)
    else:
        demand.to_file(path, layer=layer, driver="GPKG")
    logger.info("Wrote %d zones to %s", len(demand), path)


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(levelname)s | %(asctime)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        demand, _ = run_accessibility(data_path=DATA_PATH)
        export_scores(demand, OUTPUT_PATH)
    except (AccessibilityError, OSError) as exc:
        logger.error("Accessibility run failed: %s", exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
