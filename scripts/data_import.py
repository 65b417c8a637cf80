# DATA IMPORT
# Reads the demand zones and supply points from a GeoPackage and checks them
# before they reach the accessibility functions.
import logging
import os

import fiona
import geopandas as gpd
import pandas as pd

from accessibility_functions import GeometryError, ParameterError, check_crs, check_geometries

logger = logging.getLogger(__name__)


def list_layers(path):
    return fiona.listlayers(path)


def load_layers(path, demand_layer, supply_layer, target_crs=None):
    """
    Loads demand zones and supply points from the same GeoPackage.
    Args:
        path (str): GeoPackage path
        demand_layer (str): layer with the zone polygons
        supply_layer (str): layer with the supply points
        target_crs: optional projected CRS both layers are moved to
    Returns:
        tuple: (demand, supply) GeoDataFrames sharing one CRS
    Raises:
        GeometryError: missing layer, malformed geometry or mismatched CRS
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"No such GeoPackage: {path}")
    layers = list_layers(path)
    for layer in (demand_layer, supply_layer):
        if layer not in layers:
            raise GeometryError(f"Layer {layer!r} not found in {path}. Available layers: {layers}")

    demand = gpd.read_file(path, layer=demand_layer)
    supply = gpd.read_file(path, layer=supply_layer)
    logger.info("Loaded %d features from %s and %d from %s", len(demand), demand_layer, len(supply), supply_layer)

    if target_crs is not None:
        if demand.crs is None or supply.crs is None:
            raise GeometryError("Cannot reproject a layer without CRS")
        demand = demand.to_crs(target_crs)
        supply = supply.to_crs(target_crs)

    check_geometries(demand, "demand")
    check_geometries(supply, "supply")
    check_crs(demand, supply)
    return demand, supply


def load_population_table(path, sheet_name=0):
    """Reads population counts from a CSV file or a spreadsheet."""
    ext = os.path.splitext(path)[1].lower()
    if ext == ".csv":
        return pd.read_csv(path)
    if ext in (".xlsx", ".xls"):
        return pd.read_excel(path, sheet_name=sheet_name)
    raise ValueError(f"Unsupported population table format: {ext}")


def join_population(demand, table, demand_id_col, table_id_col, population_cols):
    """
    Attaches population fields to the demand zones by identifier.

    Parameters:
    - demand (GeoDataFrame): zones
    - table (DataFrame): population counts, one row per zone
    - demand_id_col (str): zone identifier in demand
    - table_id_col (str): zone identifier in table
    - population_cols (list): fields to copy; zones without a match get 0
    """
    missing_cols = [c for c in [table_id_col, *population_cols] if c not in table.columns]
    if missing_cols:
        raise ParameterError(f"Population table is missing columns {missing_cols}")
    if not table[table_id_col].is_unique:
        raise ParameterError(f"Population table identifiers in {table_id_col!r} are not unique")

    counts = table.set_index(table_id_col)[population_cols]
    joined = demand.drop(columns=[c for c in population_cols if c in demand.columns])
    joined = joined.join(counts, on=demand_id_col)
    unmatched = joined[population_cols].isna().any(axis=1)
    if unmatched.any():
        logger.warning("%d zones without population counts, set to 0", int(unmatched.sum()))
        joined[population_cols] = joined[population_cols].fillna(0)
    return joined
