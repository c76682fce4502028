"""
Utility functions for the local-authority house price clustering report.

This module provides loading of the ONS median price workbook, reshaping of
the wide time series into long observations, the price growth index, the
location x date matrix used for clustering, thin wrappers around the k-means
and hierarchical clustering library calls, and the integrity checks applied
between pipeline steps.
"""

import os
import re
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import linkage, cut_tree
from scipy.spatial.distance import pdist
from sklearn.cluster import KMeans
from tqdm import tqdm

# Workbook layout (HPSSA dataset 9, median price paid by local authority)
SHEET_NAME = "2a"
SKIP_ROWS = 6
ID_COLUMNS = ['region_code', 'region_name', 'la_code', 'la_name']

# Clustering defaults
DEFAULT_K = 4
ELBOW_K_VALUES = list(range(1, 11))
RANDOM_STATE = 42
N_INIT = 25
LINKAGE_METHOD = 'complete'

# Column names used throughout the pipeline
DATE_COL = 'date'
PRICE_COL = 'price'
INDEX_COL = 'price_index'
KMEANS_COL = 'kmeans_cluster'
HCLUST_COL = 'hclust_cluster'
CLUSTER_COLUMNS = {'kmeans': KMEANS_COL, 'hierarchical': HCLUST_COL}

BASELINE_VALUE = 100.0

# Directory structure
RESULTS_DIR = "./results"
SUBDIRS = {
    "figures": "figures",
    "maps": "maps",
}

_PERIOD_PREFIX = re.compile(r'^\s*year\s+ending\s+', re.IGNORECASE)

debug_logger = logging.getLogger('debug')


def load_price_workbook(path: str,
                        sheet_name: str = SHEET_NAME,
                        skiprows: int = SKIP_ROWS) -> pd.DataFrame:
    """
    Loads the wide-format median price sheet.

    The first four columns are renamed to the identifier columns in
    ID_COLUMNS; every remaining column is a reporting period.

    Args:
        path: Path to the .xls/.xlsx workbook
        sheet_name: Sheet holding the local authority table
        skiprows: Number of title rows above the header row

    Returns:
        Wide DataFrame with one row per local authority
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    print(f"📂 Loading workbook {path} (sheet {sheet_name}, skip {skiprows})...")
    wide = pd.read_excel(path, sheet_name=sheet_name, skiprows=skiprows)
    if wide.shape[1] <= len(ID_COLUMNS):
        raise ValueError(f"Sheet {sheet_name} has no period columns after the identifier columns")

    rename_map = dict(zip(wide.columns[:len(ID_COLUMNS)], ID_COLUMNS))
    wide = wide.rename(columns=rename_map)

    # Footnote rows under the table have no local authority code
    wide = wide.dropna(how='all')
    wide = wide[wide['la_code'].notna()].copy()
    # Blank identifiers stay missing rather than becoming the string 'nan'
    for col in ID_COLUMNS:
        wide[col] = wide[col].where(wide[col].isna(), wide[col].astype(str).str.strip())

    debug_logger.debug(f"Loaded workbook with shape {wide.shape}")
    print(f"Loaded {len(wide)} local authorities and {wide.shape[1] - len(ID_COLUMNS)} periods")
    return wide


def parse_period(label) -> pd.Timestamp:
    """
    Converts a period column header to a timestamp.

    Accepts "Year ending Dec 1995", "Dec 1995" and headers that the Excel
    reader already returned as datetimes.
    """
    if isinstance(label, (pd.Timestamp, np.datetime64)) or hasattr(label, 'year'):
        return pd.Timestamp(label)

    text = _PERIOD_PREFIX.sub('', str(label)).strip()
    for fmt in ('%b %Y', '%B %Y'):
        try:
            return pd.to_datetime(text, format=fmt)
        except ValueError:
            continue
    raise ValueError(f"Unrecognised period label: {label!r}")


def reshape_long(wide: pd.DataFrame) -> pd.DataFrame:
    """
    Melts the wide sheet into one row per (local authority, date).

    Args:
        wide: Output of load_price_workbook

    Returns:
        Long DataFrame with ID_COLUMNS, date and price, sorted by la_code and date
    """
    period_cols = [c for c in wide.columns if c not in ID_COLUMNS]
    long = wide.melt(id_vars=ID_COLUMNS,
                     value_vars=period_cols,
                     var_name='period',
                     value_name=PRICE_COL)

    period_dates = {p: parse_period(p) for p in period_cols}
    long[DATE_COL] = pd.to_datetime(long['period'].map(period_dates))
    # ONS marks suppressed values with ":"
    long[PRICE_COL] = pd.to_numeric(long[PRICE_COL], errors='coerce')
    long = long.drop(columns='period')

    dupes = long.duplicated(subset=['la_code', DATE_COL], keep=False)
    if dupes.any():
        sample = long.loc[dupes, ['la_code', DATE_COL]].drop_duplicates().head(5)
        raise ValueError(f"Duplicate (la_code, date) observations: {sample.to_dict('records')}")

    long = long.sort_values(['la_code', DATE_COL]).reset_index(drop=True)
    debug_logger.debug(f"Reshaped to long format: {long.shape}")
    return long[ID_COLUMNS + [DATE_COL, PRICE_COL]]


def filter_observations(long: pd.DataFrame,
                        start: Optional[str] = None,
                        end: Optional[str] = None,
                        month: Optional[int] = None,
                        drop_incomplete: bool = False) -> pd.DataFrame:
    """
    Restricts observations to a date window.

    Every location must have a price on every retained date. A gap raises
    unless drop_incomplete is set, in which case the affected locations are
    removed and logged.

    Args:
        long: Long observations
        start: First date to keep (inclusive), anything pd.Timestamp accepts
        end: Last date to keep (inclusive)
        month: Keep only this calendar month (e.g. 12 for year ending December)
        drop_incomplete: Drop locations with gaps instead of raising

    Returns:
        Filtered long DataFrame
    """
    mask = pd.Series(True, index=long.index)
    if start is not None:
        mask &= long[DATE_COL] >= pd.Timestamp(start)
    if end is not None:
        mask &= long[DATE_COL] <= pd.Timestamp(end)
    if month is not None:
        mask &= long[DATE_COL].dt.month == month
    window = long[mask]

    incomplete = sorted(window.loc[window[PRICE_COL].isna(), 'la_code'].unique())
    if incomplete:
        if not drop_incomplete:
            raise ValueError(f"Missing prices in the retained window for {len(incomplete)} "
                             f"local authorities: {', '.join(incomplete)}")
        debug_logger.warning(f"Dropping {len(incomplete)} local authorities with missing prices: "
                             f"{', '.join(incomplete)}")
        window = window[~window['la_code'].isin(incomplete)]

    if window.empty:
        raise ValueError("No observations left after filtering")

    print(f"Retained {window['la_code'].nunique()} local authorities over "
          f"{window[DATE_COL].nunique()} dates")
    return window.reset_index(drop=True)


def add_price_index(long: pd.DataFrame) -> pd.DataFrame:
    """
    Adds the growth index: price / price at the earliest retained date * 100.

    Args:
        long: Filtered long observations

    Returns:
        Copy of long with a price_index column
    """
    out = long.sort_values(['la_code', DATE_COL]).copy()
    baseline = out.groupby('la_code')[PRICE_COL].transform(lambda s: s.iloc[0])

    bad = out.loc[baseline.isna() | (baseline <= 0), 'la_code'].unique()
    if len(bad) > 0:
        raise ValueError(f"Missing or non-positive baseline price for: {', '.join(sorted(bad))}")

    out[INDEX_COL] = (out[PRICE_COL] / baseline) * BASELINE_VALUE
    return out.reset_index(drop=True)


def build_feature_matrix(long: pd.DataFrame, value: str = INDEX_COL) -> pd.DataFrame:
    """
    Pivots long observations into a location x date matrix.

    Args:
        long: Long observations carrying the value column
        value: Column to spread across dates

    Returns:
        DataFrame indexed by la_code with one column per date
    """
    matrix = long.pivot(index='la_code', columns=DATE_COL, values=value)
    matrix = matrix.sort_index(axis=1)
    check_complete_matrix(matrix)
    return matrix


def location_names(long: pd.DataFrame) -> pd.Series:
    """Maps la_code to la_name."""
    return long.drop_duplicates('la_code').set_index('la_code')['la_name']


def _validate_k(matrix: pd.DataFrame, k: int) -> None:
    n_rows = len(matrix)
    if k < 1 or k > n_rows:
        raise ValueError(f"k must be between 1 and {n_rows}, got {k}")


def elbow_table(matrix: pd.DataFrame,
                k_values: Iterable[int] = ELBOW_K_VALUES,
                random_state: int = RANDOM_STATE,
                n_init: int = N_INIT) -> pd.DataFrame:
    """
    Computes the k-means within-cluster sum of squares for each k.

    The chosen k is read off the resulting curve by eye; values of k larger
    than the number of locations are skipped.

    Returns:
        DataFrame with columns k and wss
    """
    check_complete_matrix(matrix)
    n_rows = len(matrix)
    k_values = list(k_values)
    usable = [k for k in k_values if 1 <= k <= n_rows]
    skipped = sorted(set(k_values) - set(usable))
    if skipped:
        debug_logger.warning(f"Skipping k values {skipped} for {n_rows} locations")

    rows = []
    for k in tqdm(usable, desc="Elbow k-means"):
        _, wss = run_kmeans(matrix, k, random_state=random_state, n_init=n_init)
        rows.append({'k': k, 'wss': wss})
    return pd.DataFrame(rows, columns=['k', 'wss'])


def run_kmeans(matrix: pd.DataFrame,
               k: int = DEFAULT_K,
               random_state: int = RANDOM_STATE,
               n_init: int = N_INIT) -> Tuple[pd.Series, float]:
    """
    Partitions the rows of the matrix with k-means.

    Args:
        matrix: Location x date matrix
        k: Number of clusters
        random_state: Seed for centroid initialisation
        n_init: Number of initialisations; the best inertia is kept

    Returns:
        Tuple of (labels 1..k indexed like the matrix, within-cluster sum of squares)
    """
    check_complete_matrix(matrix)
    _validate_k(matrix, k)

    kmeans = KMeans(n_clusters=k, n_init=n_init, random_state=random_state)
    labels = kmeans.fit_predict(matrix.to_numpy(dtype=float))
    debug_logger.debug(f"k-means k={k}: inertia={kmeans.inertia_:.3f}")
    return pd.Series(labels + 1, index=matrix.index, name=KMEANS_COL), float(kmeans.inertia_)


def run_hierarchical(matrix: pd.DataFrame,
                     k: int = DEFAULT_K,
                     method: str = LINKAGE_METHOD) -> Tuple[pd.Series, np.ndarray]:
    """
    Agglomerative clustering on Euclidean distances, cut at exactly k groups.

    Args:
        matrix: Location x date matrix
        k: Number of clusters
        method: Linkage method passed to scipy

    Returns:
        Tuple of (labels 1..k indexed like the matrix, linkage matrix)
    """
    check_complete_matrix(matrix)
    _validate_k(matrix, k)
    if len(matrix) < 2:
        return pd.Series(1, index=matrix.index, name=HCLUST_COL), np.empty((0, 4))

    distances = pdist(matrix.to_numpy(dtype=float), metric='euclidean')
    Z = linkage(distances, method=method)
    labels = cut_tree(Z, n_clusters=k).ravel()
    debug_logger.debug(f"Hierarchical ({method}) cut at k={k}")
    return pd.Series(labels + 1, index=matrix.index, name=HCLUST_COL), Z


def cluster_assignments(matrix: pd.DataFrame,
                        names: pd.Series,
                        k: int = DEFAULT_K,
                        random_state: int = RANDOM_STATE,
                        n_init: int = N_INIT,
                        method: str = LINKAGE_METHOD) -> Tuple[pd.DataFrame, float, np.ndarray]:
    """
    Runs both clustering algorithms on the same matrix.

    Returns:
        Tuple of (assignments DataFrame, k-means WSS, linkage matrix). The
        assignments hold la_code, la_name and one label column per algorithm.
    """
    kmeans_labels, wss = run_kmeans(matrix, k, random_state=random_state, n_init=n_init)
    hclust_labels, Z = run_hierarchical(matrix, k, method=method)

    assignments = pd.DataFrame({
        'la_code': matrix.index,
        'la_name': names.reindex(matrix.index).to_numpy(),
        KMEANS_COL: kmeans_labels.to_numpy(),
        HCLUST_COL: hclust_labels.to_numpy(),
    })
    return assignments, wss, Z


def attach_clusters(long: pd.DataFrame, assignments: pd.DataFrame) -> pd.DataFrame:
    """
    Joins cluster labels back onto the long observations.

    Raises:
        ValueError: if any observation has no matching assignment
    """
    label_cols = [c for c in CLUSTER_COLUMNS.values() if c in assignments.columns]
    merged = long.merge(assignments[['la_code'] + label_cols], on='la_code', how='left')

    missing = merged.loc[merged[label_cols].isna().any(axis=1), 'la_code'].unique()
    if len(missing) > 0:
        raise ValueError(f"No cluster assignment for: {', '.join(sorted(missing))}")
    for col in label_cols:
        merged[col] = merged[col].astype(int)
    return merged


# ---------------------------------------------------------------------------- #
# Integrity checks
# ---------------------------------------------------------------------------- #

def check_baseline_index(long: pd.DataFrame) -> None:
    """Every location's index equals exactly 100 at its earliest date."""
    first = long.sort_values(DATE_COL).groupby('la_code').head(1)
    bad = first.loc[first[INDEX_COL] != BASELINE_VALUE, 'la_code']
    if not bad.empty:
        raise ValueError(f"Baseline index differs from {BASELINE_VALUE} for: {', '.join(sorted(bad))}")


def check_complete_matrix(matrix: pd.DataFrame) -> None:
    """Every row has a value for every date column."""
    gaps = matrix.index[matrix.isna().any(axis=1)]
    if len(gaps) > 0:
        raise ValueError(f"Feature matrix has missing values for: {', '.join(map(str, gaps))}")
    if matrix.empty:
        raise ValueError("Feature matrix is empty")


def check_location_count(expected: int, frame: pd.DataFrame, stage: str) -> None:
    """The number of distinct la_code values is unchanged at this stage."""
    if 'la_code' in frame.columns:
        actual = frame['la_code'].nunique()
    else:
        actual = frame.index.nunique()
    debug_logger.debug(f"{stage}: {actual} local authorities (expected {expected})")
    if actual != expected:
        raise ValueError(f"{stage}: expected {expected} local authorities, found {actual}")


def check_label_count(labels: pd.Series, k: int) -> None:
    """A clustering run produced exactly k distinct labels."""
    n_labels = pd.Series(labels).nunique()
    if n_labels != k:
        raise ValueError(f"{labels.name}: expected {k} clusters, found {n_labels}")


# ---------------------------------------------------------------------------- #
# Exports
# ---------------------------------------------------------------------------- #

def save_cluster_assignments(assignments: pd.DataFrame, output_dir: str) -> Path:
    """Writes cluster_assignments.csv and returns its path."""
    os.makedirs(output_dir, exist_ok=True)
    path = Path(output_dir) / 'cluster_assignments.csv'
    assignments.sort_values('la_code').to_csv(path, index=False)
    print(f"Cluster assignments saved to {path}")
    return path


def save_elbow_table(elbow: pd.DataFrame, output_dir: str) -> Path:
    """Writes elbow_wss.csv and returns its path."""
    os.makedirs(output_dir, exist_ok=True)
    path = Path(output_dir) / 'elbow_wss.csv'
    elbow.to_csv(path, index=False)
    return path


def cluster_sizes(assignments: pd.DataFrame) -> Dict[str, List[int]]:
    """Sizes of each cluster per algorithm, ordered by label."""
    sizes = {}
    for method, col in CLUSTER_COLUMNS.items():
        if col in assignments.columns:
            sizes[method] = assignments[col].value_counts().sort_index().tolist()
    return sizes
