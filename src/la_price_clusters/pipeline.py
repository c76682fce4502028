"""
Local Authority House Price Clustering

This module runs the full report: it loads the ONS median price workbook,
reshapes and indexes the series, groups local authorities by price growth
trajectory with k-means and complete-linkage hierarchical clustering, and
renders trend charts and choropleth maps of the groupings.
"""

import os
import logging
import argparse
from datetime import datetime
from typing import Any, Dict, Optional

import la_price_clusters.utils as utils
from la_price_clusters.utils import (
    DEFAULT_K, ELBOW_K_VALUES, RANDOM_STATE, SHEET_NAME, SKIP_ROWS,
    RESULTS_DIR, SUBDIRS, CLUSTER_COLUMNS, INDEX_COL, PRICE_COL,
)
import la_price_clusters.plots as plots
from la_price_clusters.plots import CODE_FIELD

debug_logger = logging.getLogger('debug')


def configure_logging(logs_dir: Optional[str] = None) -> logging.Logger:
    """
    Sets up the shared debug logger.

    Debug output goes to a timestamped file under logs_dir; only warnings
    and errors reach the console.
    """
    logs_dir = logs_dir or os.path.join(os.getcwd(), 'logs')
    os.makedirs(logs_dir, exist_ok=True)

    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    log_file = os.path.join(logs_dir, f'debug_log_{timestamp}.txt')

    debug_logger.setLevel(logging.DEBUG)
    for handler in list(debug_logger.handlers):
        debug_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    debug_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    debug_logger.addHandler(console_handler)

    return debug_logger


def analyze_and_cluster(workbook: str,
                        boundaries: Optional[str] = None,
                        sheet_name: str = SHEET_NAME,
                        skiprows: int = SKIP_ROWS,
                        k: int = DEFAULT_K,
                        start: Optional[str] = None,
                        end: Optional[str] = None,
                        month: Optional[int] = None,
                        code_field: str = CODE_FIELD,
                        results_dir: str = RESULTS_DIR,
                        random_state: int = RANDOM_STATE,
                        make_plots: bool = True,
                        make_map: bool = True,
                        drop_incomplete: bool = False) -> Dict[str, Any]:
    """
    Runs the report end to end.

    Args:
        workbook: Path to the median price workbook
        boundaries: Optional boundary file for the choropleth maps
        sheet_name: Sheet holding the local authority table
        skiprows: Title rows above the header
        k: Number of clusters for both algorithms
        start: First date to keep
        end: Last date to keep
        month: Keep only this calendar month
        code_field: Boundary attribute holding the local authority code
        results_dir: Output directory
        random_state: Seed for k-means
        make_plots: Whether to render the PNG charts
        make_map: Whether to render the HTML maps (needs boundaries)
        drop_incomplete: Drop local authorities with missing prices in the
            window instead of aborting the run

    Returns:
        Dictionary with observations, matrix, assignments, elbow and linkage
    """
    debug_logger.info("Starting analyze_and_cluster")
    figures_dir = os.path.join(results_dir, SUBDIRS['figures'])
    maps_dir = os.path.join(results_dir, SUBDIRS['maps'])
    os.makedirs(results_dir, exist_ok=True)

    # Step 1: load and reshape
    wide = utils.load_price_workbook(workbook, sheet_name=sheet_name, skiprows=skiprows)
    n_locations = wide['la_code'].nunique()
    long = utils.reshape_long(wide)
    utils.check_location_count(n_locations, long, 'reshape')
    debug_logger.info(f"Reshaped {n_locations} local authorities to {len(long)} observations")

    # Step 2: filter and index
    observations = utils.filter_observations(long, start=start, end=end, month=month,
                                             drop_incomplete=drop_incomplete)
    if drop_incomplete:
        n_dropped = n_locations - observations['la_code'].nunique()
        if n_dropped:
            debug_logger.warning(f"{n_dropped} local authorities dropped for missing prices")
        n_locations -= n_dropped
    utils.check_location_count(n_locations, observations, 'filter')
    observations = utils.add_price_index(observations)
    utils.check_baseline_index(observations)
    utils.check_location_count(n_locations, observations, 'price index')

    # Step 3: location x date matrix
    matrix = utils.build_feature_matrix(observations, value=INDEX_COL)
    utils.check_location_count(n_locations, matrix, 'feature matrix')
    debug_logger.info(f"Feature matrix shape: {matrix.shape}")

    # Step 4: elbow table for choosing k
    print("\n📈 Computing k-means elbow table...")
    elbow = utils.elbow_table(matrix, k_values=ELBOW_K_VALUES, random_state=random_state)
    utils.save_elbow_table(elbow, results_dir)

    # Step 5: cluster
    print(f"\n🔎 Clustering {n_locations} local authorities with k={k}...")
    names = utils.location_names(observations)
    assignments, wss, Z = utils.cluster_assignments(matrix, names, k=k, random_state=random_state)
    for col in CLUSTER_COLUMNS.values():
        utils.check_label_count(assignments[col], k)
    utils.check_location_count(n_locations, assignments, 'cluster assignments')
    debug_logger.info(f"k-means WSS at k={k}: {wss:.3f}")
    debug_logger.info(f"Cluster sizes: {utils.cluster_sizes(assignments)}")

    # Step 6: join labels back
    clustered = utils.attach_clusters(observations, assignments)
    utils.check_location_count(n_locations, clustered, 'clustered observations')

    utils.save_cluster_assignments(assignments, results_dir)
    clustered.to_csv(os.path.join(results_dir, 'observations_clustered.csv'), index=False)

    # Step 7: charts
    if make_plots:
        print("\n🖼️ Rendering charts...")
        plots.plot_price_trends(clustered, os.path.join(figures_dir, 'price_by_region.png'),
                                value=PRICE_COL, facet='region_name')
        plots.plot_price_trends(clustered, os.path.join(figures_dir, 'index_by_region.png'),
                                value=INDEX_COL, facet='region_name')
        plots.plot_elbow(elbow, os.path.join(figures_dir, 'elbow.png'), selected_k=k)
        plots.plot_cluster_sizes(assignments, list(CLUSTER_COLUMNS.values()),
                                 os.path.join(figures_dir, 'cluster_sizes.png'))
        if len(Z) > 0:
            plots.plot_dendrogram(Z, assignments['la_name'].tolist(), k,
                                  os.path.join(figures_dir, 'dendrogram.png'))
        for method, col in CLUSTER_COLUMNS.items():
            plots.plot_cluster_trends(clustered, col,
                                      os.path.join(figures_dir, f'index_by_cluster_{method}.png'))

    # Step 8: maps
    if make_map:
        if boundaries is None:
            debug_logger.warning("No boundary file given; skipping cluster maps")
        else:
            print("\n🗺️ Rendering cluster maps...")
            geo = plots.load_boundaries(boundaries, code_field=code_field)
            for method, col in CLUSTER_COLUMNS.items():
                plots.build_cluster_map(geo, assignments, col, code_field=code_field,
                                        save_path=os.path.join(maps_dir, f'cluster_map_{method}.html'),
                                        title=f'{method.title()} cluster (k={k})')

    debug_logger.info("Analysis completed successfully")
    return {
        'observations': clustered,
        'matrix': matrix,
        'assignments': assignments,
        'elbow': elbow,
        'linkage': Z,
    }


def main():
    """Command line entry point."""
    parser = argparse.ArgumentParser(description='Cluster local authorities by house price growth')
    parser.add_argument('--workbook', required=True, help='Median price workbook (.xls/.xlsx)')
    parser.add_argument('--sheet', default=SHEET_NAME, help=f'Sheet name (default: {SHEET_NAME})')
    parser.add_argument('--skiprows', type=int, default=SKIP_ROWS, help=f'Title rows above the header (default: {SKIP_ROWS})')
    parser.add_argument('--boundaries', help='Local authority boundary file for the maps')
    parser.add_argument('--code-field', default=CODE_FIELD, help=f'Boundary code attribute (default: {CODE_FIELD})')
    parser.add_argument('--k', type=int, default=DEFAULT_K, help=f'Number of clusters (default: {DEFAULT_K})')
    parser.add_argument('--start', help='First date to keep (e.g. 1995-12-01)')
    parser.add_argument('--end', help='Last date to keep')
    parser.add_argument('--month', type=int, help='Keep only this calendar month (e.g. 12)')
    parser.add_argument('--results-dir', default=RESULTS_DIR, help=f'Output directory (default: {RESULTS_DIR})')
    parser.add_argument('--seed', type=int, default=RANDOM_STATE, help='Random seed for k-means')
    parser.add_argument('--no-plots', action='store_true', help='Skip the PNG charts')
    parser.add_argument('--no-map', action='store_true', help='Skip the HTML maps')
    parser.add_argument('--drop-incomplete', action='store_true',
                        help='Drop local authorities with missing prices instead of aborting')
    parser.add_argument('--logs-dir', help='Directory for debug logs (default: ./logs)')
    args = parser.parse_args()

    configure_logging(args.logs_dir)
    debug_logger.debug(f"Arguments: {vars(args)}")

    analyze_and_cluster(
        workbook=args.workbook,
        boundaries=args.boundaries,
        sheet_name=args.sheet,
        skiprows=args.skiprows,
        k=args.k,
        start=args.start,
        end=args.end,
        month=args.month,
        code_field=args.code_field,
        results_dir=args.results_dir,
        random_state=args.seed,
        make_plots=not args.no_plots,
        make_map=not args.no_map,
        drop_incomplete=args.drop_incomplete,
    )
    print("\nAnalysis completed!")


if __name__ == "__main__":
    main()
